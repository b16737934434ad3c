"""
CamerPulse Sentiment Processor
==============================
Scores public posts (Twitter, Facebook, WhatsApp forwards, polls comments)
for polarity, emotions, civic categories and threat level.

Two paths:
- AI: OpenAI chat completion returning a JSON verdict (when OPENAI_API_KEY is set)
- Rules: keyword scoring driven by the local context stored in
  camerpulse_intelligence_config (pidgin/French slang, political figures,
  regional crisis keywords, threat multipliers)

Any AI failure falls back to the rule-based path.
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg
import httpx

from civic_store import decode_json, insert_alert, sanitize_error
from location_mapper import detect_location

logger = logging.getLogger("camerpulse.sentiment")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_URL = "https://api.openai.com/v1/chat/completions"

CONTEXT_CACHE_SECONDS = 30 * 60

THREAT_LEVELS = ('none', 'low', 'medium', 'high', 'critical')
POLARITIES = ('positive', 'negative', 'neutral')

FRENCH_MARKERS = re.compile(r'\b(le|la|les|un|une|des|et|ou|mais|donc|car|ni|ce|cette|ces|mon|ma|mes)\b')

POSITIVE_WORDS = ['good', 'great', 'excellent', 'amazing', 'wonderful', 'love', 'happy', 'proud']
NEGATIVE_WORDS = ['bad', 'terrible', 'awful', 'hate', 'angry', 'sad', 'frustrated', 'disappointed']

DEFAULT_EMOTIONS = {
    'anger': ['angry', 'furious', 'mad', 'vex'],
    'joy': ['happy', 'glad', 'excited'],
    'fear': ['afraid', 'scared', 'worried'],
    'hope': ['hope', 'optimistic', 'faith'],
}


def default_context() -> Dict[str, Any]:
    """Local context used when the config table has none."""
    return {
        'cameroon_slang_patterns': {
            'pidgin': {
                'greetings': ['how far', 'how body', 'wetin dey happen', 'na so'],
                'agreement': ['na so', 'true talk', 'i agree sotay', 'na correct'],
                'disagreement': ['no be so', 'wey lie', 'dat na wash', 'fake news'],
            },
            'french': {
                'slang': ['wesh', 'genre', 'franchement', 'carrément'],
                'politics': ['les politiciens', 'le gouvernement', 'les élections'],
            },
        },
        'political_figures_dynamic': {
            'current_officials': {
                'president': ['paul biya', 'biya', 'le président'],
                'prime_minister': ['joseph dion ngute', 'dion ngute'],
            },
            'nicknames': {
                'paul_biya': ['le lion', 'pdb', 'boss'],
                'maurice_kamto': ['président élu', 'le professeur'],
            },
            'political_parties': ['cpdm', 'rdpc', 'mrc', 'sdf', 'undp', 'upc'],
        },
        'regional_context': {
            'regions': {
                'Northwest': {'keywords': ['ambazonia', 'amba boys', 'lockdown', 'ghost town'],
                              'emotions': ['fear']},
                'Far North': {'keywords': ['boko haram', 'kidnapping'], 'emotions': ['fear']},
            },
        },
        'sentiment_enhancement_rules': {
            'sarcasm_detection': {
                'patterns': ['yeah right', 'as if', 'sure sure'],
                'invert_sentiment': True,
            },
            'threat_escalation': {
                'keywords_multiplier': {
                    'bomb': 4, 'kill': 3, 'attack': 3, 'riot': 3, 'gunfire': 3,
                    'burn': 2, 'violence': 2, 'separatist': 2, 'kidnap': 2,
                    'protest': 1, 'strike': 1, 'tension': 1,
                },
            },
        },
    }


@dataclass
class SentimentResult:
    polarity: str = 'neutral'
    score: float = 0.0
    emotions: List[str] = field(default_factory=list)
    confidence: float = 0.5
    language: str = 'en'
    categories: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    hashtags: List[str] = field(default_factory=list)
    mentions: List[str] = field(default_factory=list)
    region: Optional[str] = None
    threat_level: str = 'none'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _str_list(value) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v) for v in value if v is not None]


def _float(value, default: float, low: float, high: float) -> float:
    try:
        return max(low, min(high, float(value if value is not None else default)))
    except (TypeError, ValueError):
        return default


def normalize_result(partial: Dict[str, Any]) -> SentimentResult:
    """Fill defaults for any field an analyzer left out (AI answers often do)."""
    if not isinstance(partial, dict):
        raise ValueError(f"Expected a JSON object, got {type(partial).__name__}")

    threat = partial.get('threat_level') or partial.get('threatLevel') or 'none'
    if threat not in THREAT_LEVELS:
        threat = 'none'
    polarity = partial.get('polarity')
    if polarity not in POLARITIES:
        polarity = 'neutral'
    language = partial.get('language')
    region = partial.get('region')
    return SentimentResult(
        polarity=polarity,
        score=_float(partial.get('score'), 0.0, -1.0, 1.0),
        emotions=_str_list(partial.get('emotions')),
        confidence=_float(partial.get('confidence'), 0.5, 0.0, 1.0),
        language=language if isinstance(language, str) and language else 'en',
        categories=_str_list(partial.get('categories')),
        keywords=_str_list(partial.get('keywords')),
        hashtags=_str_list(partial.get('hashtags')),
        mentions=_str_list(partial.get('mentions')),
        region=region if isinstance(region, str) and region else None,
        threat_level=threat,
    )


def _unique(items) -> List[str]:
    return list(dict.fromkeys(items))


def _any_in(text: str, patterns) -> bool:
    return any(p.lower() in text for p in patterns or [])


def detect_language(lower_text: str, slang: Dict[str, Any]) -> str:
    pidgin = slang.get('pidgin', {})
    if _any_in(lower_text, pidgin.get('greetings')) or _any_in(lower_text, pidgin.get('agreement')):
        return 'pidgin'
    if FRENCH_MARKERS.search(lower_text) or _any_in(lower_text, slang.get('french', {}).get('slang')):
        return 'fr'
    return 'en'


def threat_from_score(threat_score: float) -> str:
    if threat_score >= 6:
        return 'critical'
    if threat_score >= 4:
        return 'high'
    if threat_score >= 2:
        return 'medium'
    if threat_score > 0:
        return 'low'
    return 'none'


def basic_sentiment_analysis(text: str, context: Optional[Dict[str, Any]] = None) -> SentimentResult:
    """Rule-based sentiment analysis using the local Cameroon context."""
    context = context or default_context()
    lower_text = text.lower()
    slang = context.get('cameroon_slang_patterns') or {}
    rules = context.get('sentiment_enhancement_rules') or {}

    language = detect_language(lower_text, slang)

    positive = list(POSITIVE_WORDS)
    negative = list(NEGATIVE_WORDS)
    local_emotions = (slang.get(language) or {}).get('emotions') or {}
    positive.extend(local_emotions.get('joy', []))
    negative.extend(local_emotions.get('anger', []))

    score = 0.0
    for word in positive:
        score += lower_text.count(word.lower()) * 0.5
    for word in negative:
        score -= lower_text.count(word.lower()) * 0.5

    sarcasm = rules.get('sarcasm_detection') or {}
    if sarcasm.get('invert_sentiment') and _any_in(lower_text, sarcasm.get('patterns')):
        score = -score

    score = max(-1.0, min(1.0, score / 3))
    if score > 0.1:
        polarity = 'positive'
    elif score < -0.1:
        polarity = 'negative'
    else:
        polarity = 'neutral'

    emotions = []
    all_emotions = dict(DEFAULT_EMOTIONS)
    all_emotions.update(local_emotions)
    for emotion, patterns in all_emotions.items():
        if isinstance(patterns, list) and _any_in(lower_text, patterns):
            emotions.append(emotion)

    categories = []
    figures = context.get('political_figures_dynamic') or {}
    for names in (figures.get('current_officials') or {}).values():
        if _any_in(lower_text, names):
            categories.append('governance')
    if _any_in(lower_text, figures.get('political_parties')):
        categories.append('election')
    for region_data in ((context.get('regional_context') or {}).get('regions') or {}).values():
        if _any_in(lower_text, region_data.get('keywords')):
            categories.append('security')
            emotions.extend(region_data.get('emotions') or [])

    threat_score = 0.0
    multipliers = (rules.get('threat_escalation') or {}).get('keywords_multiplier') or {}
    for keyword, multiplier in multipliers.items():
        if keyword.lower() in lower_text:
            threat_score += float(multiplier)

    location = detect_location(text)
    region = location.region if location.region != 'Unknown' else None

    categories = _unique(categories)
    emotions = _unique(emotions)

    return SentimentResult(
        polarity=polarity,
        score=score,
        emotions=emotions,
        confidence=0.85,
        language=language,
        categories=categories,
        keywords=_unique(categories + emotions),
        hashtags=[tag[1:] for tag in re.findall(r'#\w+', text)],
        mentions=[m[1:] for m in re.findall(r'@\w+', text)],
        region=region,
        threat_level=threat_from_score(threat_score),
    )


SYSTEM_PROMPT = """You are CamerPulse Intelligence, an AI system analyzing public sentiment in Cameroon. Analyze the following text and respond with a JSON object containing:
{
  "polarity": "positive|negative|neutral",
  "score": number between -1.0 and 1.0,
  "emotions": array of detected emotions,
  "confidence": number between 0.0 and 1.0,
  "language": "en|fr|pidgin",
  "categories": array of relevant categories from [election, governance, security, economy, youth, infrastructure, corruption, education],
  "keywords": array of important keywords,
  "hashtags": array of hashtags found,
  "mentions": array of @mentions found,
  "region": detected Cameroon region if any,
  "threat_level": "none|low|medium|high|critical"
}

Consider Cameroon context, French/English/Pidgin languages, political climate, and regional tensions."""


async def analyze_with_ai(
    text: str,
    context: Optional[Dict[str, Any]] = None,
    client: Optional[httpx.AsyncClient] = None,
    api_key: Optional[str] = None
) -> SentimentResult:
    """Analyze with OpenAI; any failure falls back to the rule-based analysis."""
    api_key = OPENAI_API_KEY if api_key is None else api_key
    if not api_key:
        return basic_sentiment_analysis(text, context)

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=60)
    try:
        resp = await client.post(
            OPENAI_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json"
            },
            json={
                "model": OPENAI_MODEL,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text}
                ],
                "temperature": 0.3,
                "response_format": {"type": "json_object"}
            }
        )
        if resp.status_code != 200:
            logger.warning(f"OpenAI API error: {resp.status_code}, using basic analysis")
            return basic_sentiment_analysis(text, context)

        content = resp.json()["choices"][0]["message"]["content"]
        return normalize_result(json.loads(content))
    except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
        logger.warning(f"OpenAI analysis failed: {sanitize_error(e)}")
        return basic_sentiment_analysis(text, context)
    finally:
        if owns_client:
            await client.aclose()


class LocalContextCache:
    """Local context loaded from the config table, refreshed every 30 minutes."""

    def __init__(self, ttl: float = CONTEXT_CACHE_SECONDS, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._context: Optional[Dict[str, Any]] = None
        self._loaded_at = 0.0

    def invalidate(self):
        self._context = None

    async def get(self, pool) -> Dict[str, Any]:
        now = self.clock()
        if self._context is not None and (now - self._loaded_at) < self.ttl:
            return self._context
        if pool is None:
            return default_context()

        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT config_key, config_value FROM camerpulse_intelligence_config
                    WHERE config_type = 'local_context'
                """)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Failed to load local context: {e}")
            return default_context()

        context = {r['config_key']: decode_json(r['config_value']) for r in rows}
        if not context:
            context = default_context()
        self._context = context
        self._loaded_at = now
        return context


# ═══════════════════════════════════════════════════════════════════════════════
# STORAGE
# ═══════════════════════════════════════════════════════════════════════════════

async def store_sentiment_result(pool, request: Dict[str, Any], result: SentimentResult) -> Optional[Any]:
    """Persist a sentiment log; high and critical threats also raise an alert."""
    content = request.get('content', '')
    location = detect_location(content)

    async with pool.acquire() as conn:
        log_id = await conn.fetchval("""
            INSERT INTO camerpulse_intelligence_sentiment_logs
            (platform, content_id, content_text, language_detected, sentiment_polarity, sentiment_score,
             emotional_tone, confidence_score, content_category, keywords_detected, hashtags, mentions,
             region_detected, city_detected, subdivision_detected, author_handle, engagement_metrics,
             threat_level)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
            RETURNING id
        """, request.get('platform'), request.get('content_id'), content, result.language,
           result.polarity, result.score, result.emotions, result.confidence, result.categories,
           result.keywords, result.hashtags, result.mentions, result.region,
           location.city if location.city != 'Unknown' else None, location.subdivision,
           request.get('author_handle'), json.dumps(request.get('engagement_metrics') or {}),
           result.threat_level)

        alert_id = None
        if result.threat_level in ('high', 'critical'):
            alert_id = await insert_alert(
                conn,
                alert_type='threat',
                severity=result.threat_level,
                title=f"{result.threat_level.upper()} Threat Detected",
                description=f"Potential threat detected in {request.get('platform')} content: \"{content[:100]}...\"",
                affected_regions=[result.region] if result.region else [],
                sentiment_data={
                    'sentiment_score': result.score,
                    'emotions': result.emotions,
                    'categories': result.categories
                },
                related_content_ids=[str(log_id)] if log_id is not None else []
            )
            logger.warning(f"{result.threat_level.upper()} threat alert raised for {request.get('platform')} content")

    return alert_id


async def record_learning(pool, input_data: Dict[str, Any], pattern: str, improvement: float):
    """Write a learning log; new figures and slang patterns are merged into the context."""
    async with pool.acquire() as conn:
        await conn.execute("""
            INSERT INTO camerpulse_intelligence_learning_logs
            (learning_type, input_data, pattern_identified, confidence_improvement, validation_score)
            VALUES ('local_context_learning', $1, $2, $3, 0.9)
        """, json.dumps(input_data, default=str), pattern, improvement)

        if 'new_political_figure' in pattern and input_data.get('newFigure'):
            await _merge_context(conn, 'political_figures_dynamic', lambda cfg: cfg.setdefault(
                'detected_figures', []).append({
                    'name': input_data['newFigure'],
                    'first_detected': _utc_now(),
                    'confidence': input_data.get('confidence', 0.8)
                }))

        if 'new_slang_pattern' in pattern and input_data.get('newPattern'):
            language = input_data.get('language') or 'en'
            await _merge_context(conn, 'cameroon_slang_patterns', lambda cfg: cfg.setdefault(
                language, {}).setdefault('learned_patterns', []).append({
                    'pattern': input_data['newPattern'],
                    'sentiment': input_data.get('sentiment'),
                    'confidence': input_data.get('confidence', 0.7),
                    'learned_at': _utc_now()
                }))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _merge_context(conn, config_key: str, mutate):
    current = await conn.fetchval(
        "SELECT config_value FROM camerpulse_intelligence_config WHERE config_key = $1", config_key
    )
    if current is None:
        return
    config = dict(decode_json(current) or {})
    mutate(config)
    await conn.execute("""
        UPDATE camerpulse_intelligence_config
        SET config_value = $2, last_evolution_update = NOW(), updated_at = NOW()
        WHERE config_key = $1
    """, config_key, json.dumps(config))


async def get_processor_stats(pool) -> Dict[str, Any]:
    async with pool.acquire() as conn:
        analyzed = await conn.fetchval("SELECT COUNT(*) FROM camerpulse_intelligence_sentiment_logs")
        alerts = await conn.fetchval(
            "SELECT COUNT(*) FROM camerpulse_intelligence_alerts WHERE NOT COALESCE(acknowledged, FALSE)"
        )
        topics = await conn.fetchval("SELECT COUNT(*) FROM camerpulse_intelligence_trending_topics")
    return {
        "total_analyzed": analyzed or 0,
        "active_alerts": alerts or 0,
        "trending_topics": topics or 0,
        "status": "operational"
    }
