"""
Signal Intelligence Core
========================
Ranks recent sentiment signals, detects pattern shifts against a baseline
window and flags trending topics.

Priority score:
    0.4 * urgency + 0.3 * |score - baseline| + 0.2 * topic relevance + 0.1 * emotion intensity

Pattern shifts (last hour vs. the preceding 23 hours):
- sentiment_spike:   regional average moved by more than 0.3
- emotion_surge:     emotion frequency above 10% and more than doubled
- topic_emergence:   topic first seen in the last hour with volume > 10

Trending topics: mention count in the recent window divided by the
historical daily average.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from civic_store import decode_json, get_config, insert_alert, row_to_dict, set_config

logger = logging.getLogger("camerpulse.signals")

URGENCY_WEIGHTS = {
    'critical': 1.0,
    'high': 0.8,
    'medium': 0.6,
    'low': 0.4,
}

POLITICAL_KEYWORDS = {'election', 'government', 'president', 'minister', 'politics', 'biya', 'corruption'}
SECURITY_KEYWORDS = {'boko haram', 'separatist', 'military', 'conflict', 'violence', 'anglophone'}
ECONOMIC_KEYWORDS = {'unemployment', 'inflation', 'economy', 'poverty', 'salary'}
PRIORITY_KEYWORDS = POLITICAL_KEYWORDS | SECURITY_KEYWORDS | ECONOMIC_KEYWORDS

HIGH_INTENSITY_EMOTIONS = {'anger', 'fear', 'rage', 'panic'}

DEFAULT_THRESHOLDS = {
    'urgency_threshold': 0.7,
    'relevance_threshold': 0.6,
    'pattern_sensitivity': 0.3,
}


@dataclass
class PatternShift:
    id: str
    pattern_type: str
    baseline_value: float
    current_value: float
    change_magnitude: float
    confidence: float
    detected_at: str
    region: Optional[str] = None
    emotion: Optional[str] = None
    topic: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class TrendingTopic:
    topic: str
    mentions: int
    historical_daily_avg: float
    ratio: float
    sentiment: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════════════════════════

def calculate_priority(signal: Dict[str, Any], baseline: float) -> Dict[str, Any]:
    """Multi-factor priority score for one sentiment signal."""
    sentiment = float(signal.get('sentiment_score') or 0)
    change_from_baseline = abs(sentiment - baseline)

    urgency = URGENCY_WEIGHTS.get(signal.get('threat_level'), 0.2)
    if abs(sentiment) > 0.7:
        urgency = min(1.0, urgency + 0.2)

    relevance = 0.5
    keywords = [k.lower() for k in (signal.get('keywords_detected') or [])]
    if any(k in PRIORITY_KEYWORDS for k in keywords):
        relevance = min(1.0, relevance + 0.4)
    if (signal.get('author_influence_score') or 0) > 0.7:
        relevance = min(1.0, relevance + 0.2)

    intensity = 0.5
    emotions = [e.lower() for e in (signal.get('emotional_tone') or [])]
    if any(e in HIGH_INTENSITY_EMOTIONS for e in emotions):
        intensity = 0.8
    elif len(emotions) > 2:
        intensity = 0.7

    priority = urgency * 0.4 + change_from_baseline * 0.3 + relevance * 0.2 + intensity * 0.1

    if priority >= 0.8:
        urgency_level = 'critical'
    elif priority >= 0.6:
        urgency_level = 'high'
    elif priority >= 0.4:
        urgency_level = 'medium'
    else:
        urgency_level = 'low'

    return {
        'priority_score': priority,
        'urgency_level': urgency_level,
        'change_from_baseline': change_from_baseline,
        'topic_relevance': relevance,
        'spike_indicator': change_from_baseline > 0.5,
    }


def rank_signals(signals: List[Dict[str, Any]], baseline: float, limit: int = 10) -> List[Dict[str, Any]]:
    scored = [{**s, **calculate_priority(s, baseline)} for s in signals]
    scored.sort(key=lambda s: s['priority_score'], reverse=True)
    return scored[:limit]


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


# ═══════════════════════════════════════════════════════════════════════════════
# PATTERN SHIFTS
# ═══════════════════════════════════════════════════════════════════════════════

def _group_by_region(rows: List[Dict[str, Any]]) -> Dict[str, List[float]]:
    grouped = defaultdict(list)
    for row in rows:
        if row.get('region_detected') and row.get('sentiment_score') is not None:
            grouped[row['region_detected']].append(float(row['sentiment_score']))
    return grouped


def _count_emotions(rows: List[Dict[str, Any]]) -> Counter:
    counts = Counter()
    for row in rows:
        tones = row.get('emotional_tone')
        if isinstance(tones, list):
            counts.update(tones)
    return counts


def detect_regional_shifts(
    recent: List[Dict[str, Any]],
    baseline: List[Dict[str, Any]],
    now: Optional[datetime] = None
) -> List[PatternShift]:
    now = now or datetime.now(timezone.utc)
    recent_by_region = _group_by_region(recent)
    baseline_by_region = _group_by_region(baseline)
    shifts = []

    for region, scores in recent_by_region.items():
        if region not in baseline_by_region or len(scores) < 3:
            continue
        recent_avg = _mean(scores)
        baseline_avg = _mean(baseline_by_region[region])
        magnitude = abs(recent_avg - baseline_avg)
        if magnitude > 0.3:
            shifts.append(PatternShift(
                id=f"sentiment_spike_{region}_{int(now.timestamp() * 1000)}",
                pattern_type='sentiment_spike',
                region=region,
                baseline_value=baseline_avg,
                current_value=recent_avg,
                change_magnitude=recent_avg - baseline_avg,
                confidence=min(0.95, magnitude * 2),
                detected_at=now.isoformat()
            ))

    return shifts


def detect_emotion_surges(
    recent: List[Dict[str, Any]],
    baseline: List[Dict[str, Any]],
    now: Optional[datetime] = None
) -> List[PatternShift]:
    now = now or datetime.now(timezone.utc)
    if not recent or not baseline:
        return []

    recent_counts = _count_emotions(recent)
    baseline_counts = _count_emotions(baseline)
    shifts = []

    for emotion, count in recent_counts.items():
        recent_freq = count / len(recent)
        baseline_freq = baseline_counts.get(emotion, 0) / len(baseline)
        if recent_freq > 0.1 and recent_freq > baseline_freq * 2:
            shifts.append(PatternShift(
                id=f"emotion_surge_{emotion}_{int(now.timestamp() * 1000)}",
                pattern_type='emotion_surge',
                emotion=emotion,
                baseline_value=baseline_freq,
                current_value=recent_freq,
                change_magnitude=recent_freq / max(baseline_freq, 0.01),
                confidence=min(0.9, recent_freq * 3),
                detected_at=now.isoformat()
            ))

    return shifts


def detect_topic_emergence(topics: List[Dict[str, Any]], now: Optional[datetime] = None) -> List[PatternShift]:
    now = now or datetime.now(timezone.utc)
    shifts = []
    for topic in topics:
        volume = float(topic.get('volume_score') or 0)
        if volume <= 10:
            continue
        detected = topic.get('first_detected_at') or now
        shifts.append(PatternShift(
            id=f"topic_emergence_{topic['topic_text']}_{int(now.timestamp() * 1000)}",
            pattern_type='topic_emergence',
            topic=topic['topic_text'],
            baseline_value=0.0,
            current_value=volume,
            change_magnitude=volume,
            confidence=min(0.85, volume / 50),
            detected_at=detected.isoformat() if isinstance(detected, datetime) else str(detected)
        ))
    return shifts


def adjust_thresholds(current: Optional[Dict[str, Any]], drift: float) -> Dict[str, Any]:
    """Loosen thresholds during volatile periods, tighten them when calm."""
    base = dict(DEFAULT_THRESHOLDS)
    if current:
        base.update({k: v for k, v in current.items() if k in DEFAULT_THRESHOLDS})

    magnitude = abs(drift)
    if magnitude > 0.5:
        factor = 0.8
    elif magnitude > 0.3:
        factor = 0.9
    elif magnitude < 0.1:
        factor = 1.1
    else:
        factor = 1.0

    return {
        'urgency_threshold': max(0.5, min(0.9, base['urgency_threshold'] * factor)),
        'relevance_threshold': max(0.4, min(0.8, base['relevance_threshold'] * factor)),
        'pattern_sensitivity': max(0.2, min(0.5, base['pattern_sensitivity'] * factor)),
        'last_updated': datetime.now(timezone.utc).isoformat(),
        'drift_factor': drift,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# TREND DETECTOR
# ═══════════════════════════════════════════════════════════════════════════════

def count_topic_mentions(rows: List[Dict[str, Any]]) -> Tuple[Counter, Dict[str, float]]:
    """Count hashtag and keyword mentions; also return average sentiment per topic."""
    counts = Counter()
    sentiment_sums = defaultdict(float)
    for row in rows:
        topics = {t.lower() for t in (row.get('hashtags') or [])}
        topics.update(k.lower() for k in (row.get('keywords_detected') or []))
        score = float(row.get('sentiment_score') or 0)
        for topic in topics:
            counts[topic] += 1
            sentiment_sums[topic] += score
    averages = {t: sentiment_sums[t] / counts[t] for t in counts}
    return counts, averages


def detect_trending_topics(
    recent_counts: Dict[str, int],
    historical_counts: Dict[str, int],
    history_days: float,
    min_mentions: int = 5,
    ratio_threshold: float = 2.0,
    sentiments: Optional[Dict[str, float]] = None
) -> List[TrendingTopic]:
    """
    Topics whose recent mention count is well above their historical daily average.

    The historical daily average is floored at 1 so brand new topics need
    min_mentions and ratio_threshold mentions rather than dividing by zero.
    """
    sentiments = sentiments or {}
    days = max(history_days, 1)
    trending = []
    for topic, mentions in recent_counts.items():
        if mentions < min_mentions:
            continue
        daily_avg = historical_counts.get(topic, 0) / days
        ratio = mentions / max(daily_avg, 1.0)
        if ratio >= ratio_threshold:
            trending.append(TrendingTopic(
                topic=topic,
                mentions=mentions,
                historical_daily_avg=daily_avg,
                ratio=ratio,
                sentiment=sentiments.get(topic, 0.0)
            ))
    trending.sort(key=lambda t: (t.ratio, t.mentions), reverse=True)
    return trending


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE OPERATIONS
# ═══════════════════════════════════════════════════════════════════════════════

async def calculate_sentiment_baseline(conn, days: int = 7) -> float:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    value = await conn.fetchval("""
        SELECT AVG(sentiment_score) FROM camerpulse_intelligence_sentiment_logs
        WHERE created_at >= $1 AND sentiment_score IS NOT NULL
    """, since)
    return float(value or 0)


async def detect_pattern_shifts(conn, now: Optional[datetime] = None) -> List[PatternShift]:
    now = now or datetime.now(timezone.utc)
    one_hour_ago = now - timedelta(hours=1)
    one_day_ago = now - timedelta(days=1)

    window_query = """
        SELECT region_detected, sentiment_score, emotional_tone
        FROM camerpulse_intelligence_sentiment_logs
        WHERE created_at >= $1 AND created_at < $2
    """
    recent = [dict(r) for r in await conn.fetch(window_query, one_hour_ago, now)]
    baseline = [dict(r) for r in await conn.fetch(window_query, one_day_ago, one_hour_ago)]

    topics = await conn.fetch("""
        SELECT topic_text, volume_score, first_detected_at
        FROM camerpulse_intelligence_trending_topics
        WHERE first_detected_at >= $1
        ORDER BY volume_score DESC
        LIMIT 5
    """, one_hour_ago)

    shifts = detect_regional_shifts(recent, baseline, now)
    shifts.extend(detect_emotion_surges(recent, baseline, now))
    shifts.extend(detect_topic_emergence([dict(t) for t in topics], now))
    return shifts


async def analyze_signals(pool) -> Dict[str, Any]:
    """Rank the last two hours of signals and cache the analysis in config."""
    logger.info("Starting signal intelligence analysis...")
    since = datetime.now(timezone.utc) - timedelta(hours=2)

    async with pool.acquire() as conn:
        rows = await conn.fetch("""
            SELECT * FROM camerpulse_intelligence_sentiment_logs
            WHERE created_at >= $1
            ORDER BY created_at DESC
            LIMIT 100
        """, since)
        signals = [row_to_dict(r) for r in rows]

        baseline = await calculate_sentiment_baseline(conn)
        current = _mean(float(s.get('sentiment_score') or 0) for s in signals)
        drift = current - baseline if signals else -baseline

        scored = rank_signals(signals, baseline, limit=len(signals))
        top_signals = scored[:10]

        shifts = [s.to_dict() for s in await detect_pattern_shifts(conn)]

        thresholds = decode_json(await get_config(conn, 'intelligence_thresholds')) or DEFAULT_THRESHOLDS
        metrics = {
            'total_signals_processed': len(scored),
            'high_priority_signals': sum(1 for s in scored if s['priority_score'] >= 0.6),
            'pattern_shifts_detected': len(shifts),
            'baseline_sentiment': baseline,
            'current_sentiment_drift': drift,
            'urgency_threshold': thresholds.get('urgency_threshold', 0.7),
            'relevance_threshold': thresholds.get('relevance_threshold', 0.6),
        }

        await set_config(conn, 'latest_intelligence_analysis', 'cache', {
            'top_signals': top_signals,
            'pattern_shifts': shifts,
            'metrics': metrics,
            'analyzed_at': datetime.now(timezone.utc).isoformat(),
        }, 'Latest signal intelligence analysis results')

    logger.info(f"Analysis complete: {len(top_signals)} top signals, {len(shifts)} pattern shifts")
    return {
        'top_signals': top_signals,
        'pattern_shifts': shifts,
        'intelligence_metrics': metrics,
    }


async def push_signal_to_alerts(pool, signal: Dict[str, Any]) -> Any:
    urgency = signal.get('urgency_level') or 'medium'
    async with pool.acquire() as conn:
        alert_id = await insert_alert(
            conn,
            alert_type='high_priority_signal',
            severity=urgency,
            title=f"{urgency.upper()} Priority Signal Detected",
            description=(signal.get('content_text') or '')[:200] + '...',
            affected_regions=[signal['region_detected']] if signal.get('region_detected') else [],
            sentiment_data={
                'priority_score': signal.get('priority_score'),
                'sentiment_score': signal.get('sentiment_score'),
                'emotional_tone': signal.get('emotional_tone'),
                'platform': signal.get('platform'),
            },
            related_content_ids=[str(signal['id'])] if signal.get('id') is not None else []
        )
    logger.info(f"Pushed signal {signal.get('id')} to alerts system")
    return alert_id


async def update_thresholds(pool, drift: float) -> Dict[str, Any]:
    async with pool.acquire() as conn:
        current = decode_json(await get_config(conn, 'intelligence_thresholds'))
        updated = adjust_thresholds(current, drift)
        await set_config(conn, 'intelligence_thresholds', 'system', updated,
                         'Auto-adjusting intelligence processing thresholds')
    return updated


async def refresh_trending_topics(
    pool,
    recent_hours: int = 24,
    history_days: int = 7,
    min_mentions: int = 5,
    ratio_threshold: float = 2.0
) -> List[Dict[str, Any]]:
    """Recompute trending topics and upsert them into the trending topics table."""
    now = datetime.now(timezone.utc)
    recent_start = now - timedelta(hours=recent_hours)
    history_start = recent_start - timedelta(days=history_days)

    query = """
        SELECT hashtags, keywords_detected, sentiment_score
        FROM camerpulse_intelligence_sentiment_logs
        WHERE created_at >= $1 AND created_at < $2
    """
    async with pool.acquire() as conn:
        recent_rows = [dict(r) for r in await conn.fetch(query, recent_start, now)]
        history_rows = [dict(r) for r in await conn.fetch(query, history_start, recent_start)]

        recent_counts, sentiments = count_topic_mentions(recent_rows)
        history_counts, _ = count_topic_mentions(history_rows)
        trending = detect_trending_topics(
            recent_counts, history_counts, history_days,
            min_mentions=min_mentions, ratio_threshold=ratio_threshold, sentiments=sentiments
        )

        async with conn.transaction():
            for t in trending:
                await conn.execute("""
                    INSERT INTO camerpulse_intelligence_trending_topics
                    (topic_text, volume_score, sentiment_score, growth_ratio, first_detected_at, last_updated_at)
                    VALUES ($1, $2, $3, $4, NOW(), NOW())
                    ON CONFLICT (topic_text) DO UPDATE SET
                        volume_score = EXCLUDED.volume_score,
                        sentiment_score = EXCLUDED.sentiment_score,
                        growth_ratio = EXCLUDED.growth_ratio,
                        last_updated_at = NOW()
                """, t.topic, t.mentions, t.sentiment, t.ratio)

    logger.info(f"Trend detection: {len(trending)} trending topics from {len(recent_rows)} recent posts")
    return [t.to_dict() for t in trending]
