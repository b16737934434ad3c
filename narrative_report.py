"""
Civic Narrative Reports
=======================
Turns a day (or the week before a date) of civic intelligence into a written
report: title, executive summary, narrative paragraphs, key insights, quotable
statements, regional emotional shifts, danger spikes, party momentum and
trending issues.

The narrative is written by OpenAI when OPENAI_API_KEY is set. Without a key,
or when the call fails, it is composed from the aggregated data.

Reports are stored in camerpulse_intelligence_config under
``narrative_report_{id}`` and exported as HTML, plain text or PDF.
"""

import html
import json
import logging
import re
import uuid
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel

import sentiment_engine
from civic_store import decode_json, sanitize_error, set_config
from daily_report import build_daily_report
from report_generator import CivicReportGenerator

logger = logging.getLogger("camerpulse.narrative")

NARRATIVE_MODEL = "gpt-4o"
REPORT_KEY_PREFIX = 'narrative_report_'
REPORT_CONFIG_TYPE = 'narrative_report'

MAX_LOGS = 1000
MAX_TRENDS = 20
MAX_ALERTS = 20

LENGTH_PARAGRAPHS = {'brief': 2, 'standard': 4, 'detailed': 6}

MOMENTUM_THRESHOLD = 0.1


class NarrativeNotFoundError(LookupError):
    pass


class NarrativeSettings(BaseModel):
    tone: Literal['journalistic', 'analyst', 'diplomatic'] = 'analyst'
    length: Literal['brief', 'standard', 'detailed'] = 'standard'
    focus: Literal['balanced', 'security', 'political', 'social'] = 'balanced'
    include_quotes: bool = True
    include_predictions: bool = False
    language: Literal['english', 'french'] = 'english'


def report_window(day: date, report_type: str):
    """Daily reports cover the day itself; weekly reports the seven days before it."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    if report_type == 'weekly':
        return start - timedelta(days=7), start
    return start, start + timedelta(days=1)


# ═══════════════════════════════════════════════════════════════════════════════
# DATA GATHERING
# ═══════════════════════════════════════════════════════════════════════════════

async def gather_intelligence(pool, day: date, report_type: str) -> Dict[str, Any]:
    start, end = report_window(day, report_type)

    async with pool.acquire() as conn:
        logs = await conn.fetch("""
            SELECT * FROM camerpulse_intelligence_sentiment_logs
            WHERE created_at >= $1 AND created_at < $2
            ORDER BY created_at DESC
            LIMIT $3
        """, start, end, MAX_LOGS)
        trends = await conn.fetch("""
            SELECT topic_text, volume_score, sentiment_score, growth_rate
            FROM camerpulse_intelligence_trending_topics
            WHERE last_updated_at >= $1
            ORDER BY volume_score DESC
            LIMIT $2
        """, start, MAX_TRENDS)
        alerts = await conn.fetch("""
            SELECT alert_type, severity, title, affected_regions, created_at
            FROM camerpulse_intelligence_alerts
            WHERE created_at >= $1 AND created_at < $2
            ORDER BY created_at DESC
            LIMIT $3
        """, start, end, MAX_ALERTS)

    return {
        'sentiment_logs': [dict(r) for r in logs],
        'trending_topics': [dict(t) for t in trends],
        'alerts': [dict(a) for a in alerts],
        'timeframe': {'start': start.isoformat(), 'end': end.isoformat()},
        'type': report_type,
    }


def party_mentions(logs: List[Dict[str, Any]], parties: List[str]) -> Dict[str, List[float]]:
    """Sentiment scores of the posts naming each party."""
    patterns = {p: re.compile(rf'\b{re.escape(p)}\b', re.IGNORECASE) for p in parties}
    scores = defaultdict(list)
    for log in logs:
        text = log.get('content_text') or ''
        for party, pattern in patterns.items():
            if pattern.search(text):
                scores[party].append(float(log.get('sentiment_score') or 0))
    return scores


def _momentum(avg: float) -> str:
    if avg > MOMENTUM_THRESHOLD:
        return 'rising'
    if avg < -MOMENTUM_THRESHOLD:
        return 'falling'
    return 'stable'


def _polarity(score: float) -> str:
    if score > MOMENTUM_THRESHOLD:
        return 'positive'
    if score < -MOMENTUM_THRESHOLD:
        return 'negative'
    return 'neutral'


# ═══════════════════════════════════════════════════════════════════════════════
# PROMPTS
# ═══════════════════════════════════════════════════════════════════════════════

TONE_INSTRUCTIONS = {
    'journalistic': 'Write in a clear, engaging journalistic style suitable for news publications.',
    'analyst': 'Write in an analytical, data-driven style suitable for intelligence briefings.',
    'diplomatic': 'Write in a diplomatic, measured tone suitable for government communications.',
}

LENGTH_INSTRUCTIONS = {
    'brief': 'Keep analysis concise and focused on key points.',
    'standard': 'Provide balanced coverage with adequate detail.',
    'detailed': 'Provide comprehensive analysis with extensive detail.',
}

FOCUS_INSTRUCTIONS = {
    'security': 'Emphasize security implications and threat assessments.',
    'political': 'Focus on political developments and party dynamics.',
    'social': 'Highlight social movements and public sentiment.',
    'balanced': 'Provide balanced coverage across all areas.',
}

RESPONSE_FORMAT = """{
  "title": "Report title",
  "summary": "Executive summary (2-3 sentences)",
  "narrative": "Main analysis (3-5 paragraphs separated by blank lines)",
  "keyInsights": ["insight1", "insight2", "insight3"],
  "quotableQuotes": ["quote1", "quote2"],
  "emotionalShifts": [{"region": "Region", "shift": "direction", "analysis": "explanation"}],
  "dangerSpikes": [{"location": "Location", "level": "high/medium/low", "context": "explanation"}],
  "partyMomentum": [{"party": "Party Name", "trend": "rising/falling/stable", "analysis": "explanation"}],
  "trendingIssues": [{"issue": "Issue", "volume": 0, "sentiment": "positive/negative/neutral", "analysis": "explanation"}]
}"""


def build_system_prompt(settings: NarrativeSettings) -> str:
    quotes = ('Include impactful quotable statements' if settings.include_quotes
              else 'Focus on analysis without quotes')
    predictions = ('Include forward-looking predictions' if settings.include_predictions
                   else 'Focus on current trends only')
    language = 'French' if settings.language == 'french' else 'English'
    return f"""You are a professional civic intelligence analyst specializing in Cameroon. Generate narrative reports about civic sentiment, political developments and social trends.

WRITING STYLE: {TONE_INSTRUCTIONS[settings.tone]}
REPORT LENGTH: {LENGTH_INSTRUCTIONS[settings.length]}
FOCUS AREA: {FOCUS_INSTRUCTIONS[settings.focus]}
LANGUAGE: Generate the report in {language}.

REQUIREMENTS:
- Respond with a JSON object in the format below
- Provide specific, actionable insights
- Include regional analysis for Cameroon's 10 regions
- Reference actual data points and trends
- {quotes}
- {predictions}

JSON RESPONSE FORMAT:
{RESPONSE_FORMAT}"""


def build_data_prompt(data: Dict[str, Any], regions: List[Dict[str, Any]]) -> str:
    logs = data['sentiment_logs']
    trends = data['trending_topics']
    alerts = data['alerts']

    log_lines = '\n'.join(
        f"- {log.get('platform')}: \"{(log.get('content_text') or '')[:100]}\" | "
        f"Sentiment: {log.get('sentiment_polarity')} ({log.get('sentiment_score')}) | "
        f"Region: {log.get('region_detected') or 'Unknown'} | Threat: {log.get('threat_level') or 'none'}"
        for log in logs[:10]
    )
    trend_lines = '\n'.join(
        f"- \"{t.get('topic_text')}\" | Volume: {t.get('volume_score')} | "
        f"Sentiment: {t.get('sentiment_score')} | Growth: {t.get('growth_rate') or 0}%"
        for t in trends[:10]
    )
    region_lines = '\n'.join(
        f"- {r['region']}: {r['mentions']} posts | Avg. sentiment {r['avg_sentiment']:+.2f} | "
        f"Alert level: {r['alert_level']}"
        for r in regions
    )
    alert_lines = '\n'.join(
        f"- {a.get('alert_type')}: \"{a.get('title')}\" | Severity: {a.get('severity')} | "
        f"Regions: {', '.join(a.get('affected_regions') or [])}"
        for a in alerts
    )

    return f"""Generate a {data['type']} civic intelligence narrative report for Cameroon based on the following data:

TIMEFRAME: {data['timeframe']['start']} to {data['timeframe']['end']}

SENTIMENT DATA ({len(logs)} posts analyzed):
{log_lines}

TRENDING TOPICS ({len(trends)} topics):
{trend_lines}

REGIONAL SENTIMENT ({len(regions)} regions):
{region_lines}

ALERTS & INCIDENTS ({len(alerts)} alerts):
{alert_lines}

Analyze overall civic sentiment and emotional shifts across regions, political momentum, security threats, emerging social issues and cross-regional patterns."""


# ═══════════════════════════════════════════════════════════════════════════════
# NARRATIVE
# ═══════════════════════════════════════════════════════════════════════════════

def _dict_list(value, keys) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [{k: item.get(k) for k in keys} for item in value if isinstance(item, dict)]


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ''


def normalize_narrative(answer: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce a model answer into the stored narrative fields."""
    if not isinstance(answer, dict):
        raise ValueError(f"Expected a JSON object, got {type(answer).__name__}")
    return {
        'title': _text(answer.get('title')),
        'summary': _text(answer.get('summary')),
        'narrative': _text(answer.get('narrative')),
        'key_insights': sentiment_engine._str_list(answer.get('keyInsights')),
        'quotable_quotes': sentiment_engine._str_list(answer.get('quotableQuotes')),
        'emotional_shifts': _dict_list(answer.get('emotionalShifts'), ('region', 'shift', 'analysis')),
        'danger_spikes': _dict_list(answer.get('dangerSpikes'), ('location', 'level', 'context')),
        'party_momentum': _dict_list(answer.get('partyMomentum'), ('party', 'trend', 'analysis')),
        'trending_issues': _dict_list(answer.get('trendingIssues'), ('issue', 'volume', 'sentiment', 'analysis')),
    }


async def generate_ai_narrative(
    data: Dict[str, Any],
    regions: List[Dict[str, Any]],
    settings: NarrativeSettings,
    client: Optional[httpx.AsyncClient] = None,
    api_key: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """Ask OpenAI for the narrative; None when no key is set or the answer is unusable."""
    api_key = sentiment_engine.OPENAI_API_KEY if api_key is None else api_key
    if not api_key:
        return None

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=120)
    try:
        resp = await client.post(
            sentiment_engine.OPENAI_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json"
            },
            json={
                "model": NARRATIVE_MODEL,
                "messages": [
                    {"role": "system", "content": build_system_prompt(settings)},
                    {"role": "user", "content": build_data_prompt(data, regions)}
                ],
                "temperature": 0.7,
                "max_tokens": 4000,
                "response_format": {"type": "json_object"}
            }
        )
        if resp.status_code != 200:
            logger.warning(f"OpenAI narrative error: {resp.status_code}, composing from data")
            return None

        content = resp.json()["choices"][0]["message"]["content"]
        return normalize_narrative(json.loads(content))
    except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
        logger.warning(f"OpenAI narrative failed: {sanitize_error(e)}")
        return None
    finally:
        if owns_client:
            await client.aclose()


PHRASES = {
    'english': {
        'title': {'daily': 'Civic Intelligence Report - {date}', 'weekly': 'Weekly Civic Intelligence Report - {date}'},
        'summary': ("{total} posts were analyzed between {start} and {end}. Sentiment was {positive}% positive, "
                    "{negative}% negative and {neutral}% neutral. The civic danger index stands at {index}/100 ({level})."),
        'empty': 'No civic activity was recorded between {start} and {end}.',
        'sentiment': ("Public sentiment leaned {lean} over the period, with {negative}% of posts negative. "
                      "The dominant emotions were {emotions}."),
        'regions': 'Regional activity was led by {regions}.',
        'alerts': '{count} alerts were raised, including {critical} critical and {high} high severity.',
        'no_alerts': 'No alerts were raised during the period.',
        'topics': 'The conversation centred on {topics}.',
        'figures': 'The most discussed public figures were {figures}.',
        'outlook': {
            'critical': 'Without de-escalation, tensions are likely to persist in the coming days.',
            'high': 'Elevated tension suggests close monitoring over the coming days.',
            'medium': 'Conditions point to a moderate risk of escalation in the short term.',
            'low': 'Conditions suggest continued stability in the short term.',
        },
        'insight_emotion': 'Dominant emotion: {emotion} ({share}% of posts)',
        'insight_region': 'Highest alert level in {region} ({level})',
        'insight_topic': 'Top trending topic: {topic}',
        'insight_figure': 'Most mentioned figure: {name} ({mentions} mentions)',
        'insight_danger': 'Civic danger index: {index}/100 ({level})',
        'none': 'none',
    },
    'french': {
        'title': {'daily': 'Rapport de renseignement civique - {date}',
                  'weekly': 'Rapport hebdomadaire de renseignement civique - {date}'},
        'summary': ("{total} publications ont été analysées entre {start} et {end}. Le sentiment était positif à {positive}%, "
                    "négatif à {negative}% et neutre à {neutral}%. L'indice de danger civique est de {index}/100 ({level})."),
        'empty': "Aucune activité civique n'a été enregistrée entre {start} et {end}.",
        'sentiment': ("Le sentiment public a été plutôt {lean} sur la période, avec {negative}% de publications négatives. "
                      "Les émotions dominantes étaient : {emotions}."),
        'regions': "L'activité régionale a été menée par {regions}.",
        'alerts': '{count} alertes ont été émises, dont {critical} critiques et {high} de gravité élevée.',
        'no_alerts': "Aucune alerte n'a été émise pendant la période.",
        'topics': 'Les discussions ont porté sur {topics}.',
        'figures': 'Les personnalités les plus citées étaient {figures}.',
        'outlook': {
            'critical': 'Sans désescalade, les tensions devraient persister dans les prochains jours.',
            'high': 'La tension élevée justifie une surveillance étroite dans les prochains jours.',
            'medium': "La situation indique un risque modéré d'escalade à court terme.",
            'low': 'La situation laisse présager une stabilité à court terme.',
        },
        'insight_emotion': 'Émotion dominante : {emotion} ({share}% des publications)',
        'insight_region': "Niveau d'alerte le plus élevé : {region} ({level})",
        'insight_topic': 'Sujet tendance principal : {topic}',
        'insight_figure': 'Personnalité la plus citée : {name} ({mentions} mentions)',
        'insight_danger': 'Indice de danger civique : {index}/100 ({level})',
        'none': 'aucune',
    },
}

LEAN = {
    'english': {'positive': 'positive', 'negative': 'negative', 'neutral': 'neutral'},
    'french': {'positive': 'positif', 'negative': 'négatif', 'neutral': 'neutre'},
}

LEVEL_RANK = {'critical': 3, 'high': 2, 'medium': 1, 'low': 0}


def compose_narrative(
    data: Dict[str, Any],
    summary: Dict[str, Any],
    settings: NarrativeSettings,
    day: date
) -> Dict[str, Any]:
    """Write the narrative from the aggregated data alone."""
    words = PHRASES[settings.language]
    window = {'start': data['timeframe']['start'][:10], 'end': data['timeframe']['end'][:10]}
    breakdown = summary['sentiment_breakdown']
    alerts = data['alerts']
    trends = summary['trending_topics']

    if summary['total_posts']:
        summary_text = words['summary'].format(
            total=summary['total_posts'], index=summary['danger_index'], level=summary['threat_level'],
            **window, **breakdown
        )
    else:
        summary_text = words['empty'].format(**window)

    lean = max(breakdown, key=breakdown.get) if summary['total_posts'] else 'neutral'
    emotions = ', '.join(e['emotion'] for e in summary['top_emotions'][:3]) or words['none']
    severities = Counter(a.get('severity') for a in alerts)

    sections = {
        'sentiment': words['sentiment'].format(
            lean=LEAN[settings.language][lean], negative=breakdown['negative'], emotions=emotions
        ),
        'regions': words['regions'].format(regions=', '.join(
            f"{r['region']} ({r['mentions']}, {r['alert_level']})" for r in summary['regions'][:3]
        )) if summary['regions'] else '',
        'alerts': words['alerts'].format(
            count=len(alerts), critical=severities.get('critical', 0), high=severities.get('high', 0)
        ) if alerts else words['no_alerts'],
        'topics': words['topics'].format(
            topics=', '.join(str(t['topic']) for t in trends[:3])
        ) if trends else '',
        'figures': words['figures'].format(
            figures=', '.join(f['name'] for f in summary['top_figures'][:3])
        ) if summary['top_figures'] else '',
    }
    order = {
        'security': ['alerts', 'regions', 'sentiment', 'topics', 'figures'],
        'political': ['figures', 'sentiment', 'topics', 'regions', 'alerts'],
        'social': ['sentiment', 'topics', 'regions', 'figures', 'alerts'],
        'balanced': ['sentiment', 'regions', 'alerts', 'topics', 'figures'],
    }[settings.focus]
    paragraphs = [sections[name] for name in order if sections[name]][:LENGTH_PARAGRAPHS[settings.length]]
    if settings.include_predictions:
        paragraphs.append(words['outlook'][summary['threat_level']])

    insights = [words['insight_danger'].format(index=summary['danger_index'], level=summary['threat_level'])]
    if summary['top_emotions']:
        top = summary['top_emotions'][0]
        insights.append(words['insight_emotion'].format(emotion=top['emotion'], share=top['percentage']))
    if summary['regions']:
        hottest = max(summary['regions'], key=lambda r: (LEVEL_RANK[r['alert_level']], r['mentions']))
        insights.append(words['insight_region'].format(region=hottest['region'], level=hottest['alert_level']))
    if trends:
        insights.append(words['insight_topic'].format(topic=trends[0]['topic']))
    if summary['top_figures']:
        insights.append(words['insight_figure'].format(**summary['top_figures'][0]))

    quotes = []
    if settings.include_quotes:
        quotes = [e['content'] for e in summary['key_events'][:3] if e['content']]

    danger_spikes = [
        {
            'location': r['region'],
            'level': r['alert_level'],
            'context': f"{r['threat_count']} threatening posts out of {r['mentions']}",
        }
        for r in summary['regions'] if r['alert_level'] != 'low'
    ]
    for alert in alerts:
        if alert.get('severity') in ('critical', 'high'):
            for region in alert.get('affected_regions') or ['Unknown']:
                danger_spikes.append({'location': region, 'level': alert['severity'], 'context': alert.get('title')})

    parties = sentiment_engine.default_context()['political_figures_dynamic']['political_parties']
    party_scores = party_mentions(data['sentiment_logs'], parties)
    party_momentum = []
    for party, scores in sorted(party_scores.items(), key=lambda kv: len(kv[1]), reverse=True):
        avg = sum(scores) / len(scores)
        party_momentum.append({
            'party': party.upper(),
            'trend': _momentum(avg),
            'analysis': f"{len(scores)} mentions, average sentiment {avg:+.2f}",
        })

    return {
        'title': words['title'][data['type']].format(date=day.isoformat()),
        'summary': summary_text,
        'narrative': '\n\n'.join(paragraphs),
        'key_insights': insights,
        'quotable_quotes': quotes,
        'emotional_shifts': [
            {
                'region': r['region'],
                'shift': _polarity(r['avg_sentiment']),
                'analysis': f"{r['mentions']} posts, average sentiment {r['avg_sentiment']:+.2f}",
            }
            for r in summary['regions']
        ],
        'danger_spikes': danger_spikes,
        'party_momentum': party_momentum,
        'trending_issues': [
            {
                'issue': t['topic'],
                'volume': t['volume'],
                'sentiment': _polarity(float(t['sentiment'] or 0)),
                'analysis': f"Volume {t['volume']}, sentiment {float(t['sentiment'] or 0):+.2f}",
            }
            for t in trends
        ],
    }


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE OPERATIONS
# ═══════════════════════════════════════════════════════════════════════════════

async def generate_narrative_report(
    pool,
    day: Optional[date] = None,
    report_type: str = 'daily',
    settings: Optional[NarrativeSettings] = None,
    client: Optional[httpx.AsyncClient] = None,
    api_key: Optional[str] = None
) -> Dict[str, Any]:
    if report_type not in ('daily', 'weekly'):
        raise ValueError(f"Unsupported report type: {report_type}")
    day = day or datetime.now(timezone.utc).date()
    settings = settings or NarrativeSettings()

    data = await gather_intelligence(pool, day, report_type)
    summary = build_daily_report(day, data['sentiment_logs'], data['trending_topics'])

    composed = compose_narrative(data, summary, settings, day)
    answer = await generate_ai_narrative(data, summary['regions'], settings, client=client, api_key=api_key)
    source = 'ai' if answer else 'rule_based'
    if answer:
        # blank model fields keep the composed text
        composed.update({k: v for k, v in answer.items() if v})

    report = {
        'id': str(uuid.uuid4()),
        'date': day.isoformat(),
        'type': report_type,
        **{k: composed[k] for k in ('title', 'summary', 'narrative', 'key_insights', 'quotable_quotes')},
        'tone': settings.tone,
        'language': settings.language,
        'source': source,
        'metadata': {
            k: composed[k] for k in ('emotional_shifts', 'danger_spikes', 'party_momentum', 'trending_issues')
        },
        'stats': {
            'total_posts': summary['total_posts'],
            'danger_index': summary['danger_index'],
            'threat_level': summary['threat_level'],
            'alerts': len(data['alerts']),
        },
        'generated_at': datetime.now(timezone.utc).isoformat(),
    }

    async with pool.acquire() as conn:
        await set_config(conn, f"{REPORT_KEY_PREFIX}{report['id']}", REPORT_CONFIG_TYPE, report,
                         f"{report_type} narrative report for {report['date']}")

    logger.info(f"Narrative report {report['id']} ({report_type} {report['date']}, {source}): "
                f"{summary['total_posts']} posts")
    return report


async def list_narrative_reports(pool, limit: int = 10) -> List[Dict[str, Any]]:
    async with pool.acquire() as conn:
        rows = await conn.fetch("""
            SELECT config_value FROM camerpulse_intelligence_config
            WHERE config_type = $1
            ORDER BY updated_at DESC
            LIMIT $2
        """, REPORT_CONFIG_TYPE, limit)
    return [decode_json(r['config_value']) for r in rows]


async def get_narrative_report(pool, report_id: str) -> Dict[str, Any]:
    async with pool.acquire() as conn:
        value = await conn.fetchval("""
            SELECT config_value FROM camerpulse_intelligence_config
            WHERE config_key = $1 AND config_type = $2
        """, f"{REPORT_KEY_PREFIX}{report_id}", REPORT_CONFIG_TYPE)
    report = decode_json(value)
    if not isinstance(report, dict):
        raise NarrativeNotFoundError(f"Narrative report {report_id} not found")
    return report


# ═══════════════════════════════════════════════════════════════════════════════
# EXPORT
# ═══════════════════════════════════════════════════════════════════════════════

def narrative_paragraphs(report: Dict[str, Any]) -> List[str]:
    return [p.strip() for p in (report.get('narrative') or '').split('\n\n') if p.strip()]


def render_narrative_html(report: Dict[str, Any]) -> str:
    esc = lambda v: html.escape(str(v if v is not None else ''))
    meta = report.get('metadata') or {}

    def section(title: str, items: List[str]) -> str:
        if not items:
            return ''
        return f"<h2>{title}</h2>\n<ul>{''.join(f'<li>{i}</li>' for i in items)}</ul>\n"

    paragraphs = ''.join(f"<p>{esc(p)}</p>" for p in narrative_paragraphs(report))
    body = (
        section('Key Insights', [esc(i) for i in report.get('key_insights') or []])
        + section('Notable Statements', [f"<blockquote>{esc(q)}</blockquote>" for q in report.get('quotable_quotes') or []])
        + section('Regional Emotional Shifts', [
            f"<b>{esc(s['region'])}</b>: {esc(s['shift'])} - {esc(s['analysis'])}"
            for s in meta.get('emotional_shifts') or []
        ])
        + section('Civic Danger Assessment', [
            f"<b>{esc(d['location'])}</b> <span class=\"{esc(d['level'])}\">[{esc(str(d['level']).upper())}]</span> "
            f"{esc(d['context'])}"
            for d in meta.get('danger_spikes') or []
        ])
        + section('Political Momentum', [
            f"<b>{esc(p['party'])}</b>: {esc(p['trend'])} - {esc(p['analysis'])}"
            for p in meta.get('party_momentum') or []
        ])
        + section('Trending Issues', [
            f"<b>{esc(t['issue'])}</b> ({esc(t['volume'])}, {esc(t['sentiment'])}): {esc(t['analysis'])}"
            for t in meta.get('trending_issues') or []
        ])
    )

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{esc(report['title'])}</title>
<style>
body {{ font-family: Georgia, serif; color: #111827; margin: 32px; line-height: 1.6; }}
h1 {{ color: #007a5e; }}
.summary {{ background: #f3f4f6; padding: 12px; border-left: 4px solid #007a5e; }}
blockquote {{ font-style: italic; margin: 0; }}
.critical {{ color: #ce1126; font-weight: bold; }}
.high {{ color: #ea580c; }}
.medium {{ color: #d97706; }}
.low {{ color: #007a5e; }}
</style>
</head>
<body>
<h1>{esc(report['title'])}</h1>
<p>{esc(report['date'])} · {esc(report['type'])} report · {esc(report.get('tone'))} tone</p>
<h2>Executive Summary</h2>
<p class="summary">{esc(report['summary'])}</p>
<h2>Analysis</h2>
{paragraphs}
{body}<footer><small>Report ID: {esc(report['id'])} · Generated {esc(report.get('generated_at'))} by CamerPulse Civic Intelligence</small></footer>
</body>
</html>"""


def render_narrative_text(report: Dict[str, Any]) -> str:
    meta = report.get('metadata') or {}
    lines = [
        report['title'].upper(),
        '=' * len(report['title']),
        f"{report['date']} | {report['type']} report | {report.get('tone')} tone",
        '',
        'EXECUTIVE SUMMARY',
        report['summary'],
        '',
        'ANALYSIS',
        '\n\n'.join(narrative_paragraphs(report)),
    ]

    def section(title: str, items: List[str]):
        if items:
            lines.extend(['', title])
            lines.extend(f"- {i}" for i in items)

    section('KEY INSIGHTS', report.get('key_insights') or [])
    section('NOTABLE STATEMENTS', [f'"{q}"' for q in report.get('quotable_quotes') or []])
    section('REGIONAL EMOTIONAL SHIFTS', [
        f"{s['region']}: {s['shift']} - {s['analysis']}" for s in meta.get('emotional_shifts') or []
    ])
    section('CIVIC DANGER ASSESSMENT', [
        f"{d['location']} [{str(d['level']).upper()}] {d['context']}" for d in meta.get('danger_spikes') or []
    ])
    section('POLITICAL MOMENTUM', [
        f"{p['party']}: {p['trend']} - {p['analysis']}" for p in meta.get('party_momentum') or []
    ])
    section('TRENDING ISSUES', [
        f"{t['issue']} ({t['volume']}, {t['sentiment']}): {t['analysis']}" for t in meta.get('trending_issues') or []
    ])
    lines.extend(['', f"Report ID: {report['id']}"])
    return '\n'.join(lines)


def render_narrative_pdf(report: Dict[str, Any]) -> bytes:
    return CivicReportGenerator().generate_narrative(report)


def format_narrative_message(report: Dict[str, Any], dashboard_url: str) -> str:
    """Telegram/WhatsApp message: title, summary and the first insights."""
    insights = '\n'.join(f"• {html.escape(i)}" for i in (report.get('key_insights') or [])[:5])
    parts = [
        f"📰 <b>{html.escape(report['title'])}</b>",
        html.escape(report['summary']),
    ]
    if insights:
        parts.append(insights)
    parts.append(dashboard_url)
    return '\n\n'.join(parts)
