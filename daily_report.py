"""
Daily Civic Intelligence Report
===============================
Aggregates one day of sentiment logs into a report: sentiment breakdown,
dominant emotions, danger index, trending topics, most mentioned public
figures, regional alert levels, platform mix and key events.

Danger index:
    min(100, round(20 * critical + 10 * high + 5 * medium + 0.5 * negative%))
"""

import html
import logging
from collections import Counter, defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from civic_store import decode_json, get_config, row_to_dict, set_config
from report_generator import CivicReportGenerator

logger = logging.getLogger("camerpulse.reports")

SCHEDULE_CONFIG_KEY = 'daily_report_schedule'

DEFAULT_SCHEDULE = {
    'enabled': False,
    'time': '07:00',
    'timezone': 'Africa/Douala',
    'format': 'pdf',
    'recipients': [],
    'header_text': 'CamerPulse Daily Civic Intelligence Report',
    'logo_url': None,
    'include_sections': ['sentiment', 'emotions', 'danger', 'trends', 'figures', 'regions', 'events'],
}


def _pct(count: int, total: int) -> float:
    return round(count / total * 100, 1) if total else 0.0


def _timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value or '')


def danger_level(index: int) -> str:
    if index >= 70:
        return 'critical'
    if index >= 50:
        return 'high'
    if index >= 30:
        return 'medium'
    return 'low'


def calculate_danger_index(threat_counts: Dict[str, int], negative_pct: float) -> int:
    raw = (20 * threat_counts.get('critical', 0)
           + 10 * threat_counts.get('high', 0)
           + 5 * threat_counts.get('medium', 0)
           + 0.5 * negative_pct)
    return min(100, round(raw))


def _region_alert_level(threats: Counter) -> str:
    if threats.get('critical', 0) > 0:
        return 'critical'
    if threats.get('high', 0) > 2:
        return 'high'
    if sum(threats.values()) > 5:
        return 'medium'
    return 'low'


def build_daily_report(day: date, logs: List[Dict[str, Any]], trends: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(logs)

    polarity = Counter(log.get('sentiment_polarity') or 'neutral' for log in logs)
    breakdown = {
        'positive': _pct(polarity.get('positive', 0), total),
        'negative': _pct(polarity.get('negative', 0), total),
        'neutral': _pct(polarity.get('neutral', 0), total),
    }

    emotions = Counter()
    for log in logs:
        emotions.update(log.get('emotional_tone') or [])
    top_emotions = [
        {'emotion': e, 'count': c, 'percentage': _pct(c, total)}
        for e, c in emotions.most_common(8)
    ]

    threat_counts = Counter(log.get('threat_level') or 'none' for log in logs)
    danger_index = calculate_danger_index(threat_counts, breakdown['negative'])

    # Figures
    figure_scores = defaultdict(list)
    for log in logs:
        for name in log.get('mentions') or []:
            figure_scores[name].append(float(log.get('sentiment_score') or 0))
    top_figures = sorted(figure_scores.items(), key=lambda kv: len(kv[1]), reverse=True)[:10]

    # Regions
    region_logs = defaultdict(list)
    for log in logs:
        if log.get('region_detected'):
            region_logs[log['region_detected']].append(log)
    regions = []
    for region, entries in region_logs.items():
        threats = Counter(e['threat_level'] for e in entries if e.get('threat_level') not in (None, 'none'))
        scores = [float(e.get('sentiment_score') or 0) for e in entries]
        regions.append({
            'region': region,
            'mentions': len(entries),
            'avg_sentiment': round(sum(scores) / len(scores), 3),
            'threat_count': sum(threats.values()),
            'alert_level': _region_alert_level(threats),
        })
    regions.sort(key=lambda r: r['mentions'], reverse=True)

    events = [log for log in logs if log.get('threat_level') in ('critical', 'high')]
    events.sort(key=lambda log: _timestamp(log.get('created_at')), reverse=True)

    return {
        'report_date': day.isoformat(),
        'generated_at': datetime.now(timezone.utc).isoformat(),
        'total_posts': total,
        'sentiment_breakdown': breakdown,
        'top_emotions': top_emotions,
        'threat_counts': {k: threat_counts.get(k, 0) for k in ('critical', 'high', 'medium', 'low')},
        'danger_index': danger_index,
        'threat_level': danger_level(danger_index),
        'trending_topics': [
            {
                'topic': t.get('topic_text') or t.get('topic'),
                'volume': t.get('volume_score') or t.get('mentions') or 0,
                'sentiment': t.get('sentiment_score') or t.get('sentiment') or 0,
            }
            for t in trends[:10]
        ],
        'top_figures': [
            {'name': name, 'mentions': len(scores), 'avg_sentiment': round(sum(scores) / len(scores), 3)}
            for name, scores in top_figures
        ],
        'regions': regions[:10],
        'platforms': dict(Counter(log.get('platform') or 'unknown' for log in logs)),
        'key_events': [
            {
                'content': (e.get('content_text') or '')[:200],
                'platform': e.get('platform'),
                'region': e.get('region_detected'),
                'threat_level': e.get('threat_level'),
                'sentiment_score': e.get('sentiment_score'),
                'created_at': _timestamp(e.get('created_at')),
            }
            for e in events[:5]
        ],
    }


# ═══════════════════════════════════════════════════════════════════════════════
# EXPORT
# ═══════════════════════════════════════════════════════════════════════════════

def render_html_report(report: Dict[str, Any], settings: Optional[Dict[str, Any]] = None) -> str:
    settings = {**DEFAULT_SCHEDULE, **(settings or {})}
    esc = lambda v: html.escape(str(v))

    logo = ''
    if settings.get('logo_url'):
        logo = f'<img src="{esc(settings["logo_url"])}" alt="logo" style="height:48px">'

    breakdown = report['sentiment_breakdown']
    emotion_rows = ''.join(
        f"<tr><td>{esc(e['emotion'])}</td><td>{e['count']}</td><td>{e['percentage']}%</td></tr>"
        for e in report['top_emotions']
    )
    trend_rows = ''.join(
        f"<li>{esc(t['topic'])} <small>({esc(t['volume'])})</small></li>"
        for t in report['trending_topics']
    )
    figure_rows = ''.join(
        f"<tr><td>{esc(f['name'])}</td><td>{f['mentions']}</td><td>{f['avg_sentiment']:+.2f}</td></tr>"
        for f in report['top_figures']
    )
    region_rows = ''.join(
        f"<tr><td>{esc(r['region'])}</td><td>{r['mentions']}</td><td>{r['avg_sentiment']:+.2f}</td>"
        f"<td class=\"{esc(r['alert_level'])}\">{esc(r['alert_level'].upper())}</td></tr>"
        for r in report['regions']
    )
    event_rows = ''.join(
        f"<li><b>[{esc((e['threat_level'] or '').upper())}]</b> {esc(e['content'])} "
        f"<small>{esc(e['region'] or 'Unknown')} · {esc(e['platform'] or '')}</small></li>"
        for e in report['key_events']
    )

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{esc(settings['header_text'])} - {esc(report['report_date'])}</title>
<style>
body {{ font-family: Helvetica, Arial, sans-serif; color: #111827; margin: 32px; }}
h1 {{ color: #007a5e; }}
table {{ border-collapse: collapse; width: 100%; margin-bottom: 24px; }}
td, th {{ border: 1px solid #e5e7eb; padding: 6px; text-align: left; }}
.critical {{ color: #ce1126; font-weight: bold; }}
.high {{ color: #ea580c; }}
.medium {{ color: #d97706; }}
.low {{ color: #007a5e; }}
</style>
</head>
<body>
{logo}
<h1>{esc(settings['header_text'])}</h1>
<p>Report date: {esc(report['report_date'])} · {report['total_posts']} posts analyzed</p>
<h2>Danger Index</h2>
<p class="{esc(report['threat_level'])}">{report['danger_index']}/100 ({esc(report['threat_level'].upper())})</p>
<h2>Sentiment</h2>
<p>Positive {breakdown['positive']}% · Negative {breakdown['negative']}% · Neutral {breakdown['neutral']}%</p>
<h2>Dominant Emotions</h2>
<table><tr><th>Emotion</th><th>Posts</th><th>Share</th></tr>{emotion_rows}</table>
<h2>Trending Topics</h2>
<ul>{trend_rows}</ul>
<h2>Most Mentioned Figures</h2>
<table><tr><th>Name</th><th>Mentions</th><th>Avg. sentiment</th></tr>{figure_rows}</table>
<h2>Regions</h2>
<table><tr><th>Region</th><th>Mentions</th><th>Avg. sentiment</th><th>Alert</th></tr>{region_rows}</table>
<h2>Key Events</h2>
<ul>{event_rows}</ul>
</body>
</html>"""


def render_pdf_report(report: Dict[str, Any], settings: Optional[Dict[str, Any]] = None) -> bytes:
    settings = {**DEFAULT_SCHEDULE, **(settings or {})}
    return CivicReportGenerator().generate_report(report, header_text=settings['header_text'])


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE OPERATIONS
# ═══════════════════════════════════════════════════════════════════════════════

async def generate_daily_report(pool, day: Optional[date] = None) -> Dict[str, Any]:
    day = day or datetime.now(timezone.utc).date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)

    async with pool.acquire() as conn:
        logs = await conn.fetch("""
            SELECT * FROM camerpulse_intelligence_sentiment_logs
            WHERE created_at >= $1 AND created_at < $2
            ORDER BY created_at DESC
        """, start, end)
        trends = await conn.fetch("""
            SELECT topic_text, volume_score, sentiment_score
            FROM camerpulse_intelligence_trending_topics
            ORDER BY volume_score DESC
            LIMIT 10
        """)

    report = build_daily_report(day, [dict(r) for r in logs], [row_to_dict(t) for t in trends])
    logger.info(f"Daily report {day}: {report['total_posts']} posts, danger index {report['danger_index']}")
    return report


async def get_schedule(pool) -> Dict[str, Any]:
    async with pool.acquire() as conn:
        stored = decode_json(await get_config(conn, SCHEDULE_CONFIG_KEY))
    return {**DEFAULT_SCHEDULE, **(stored or {})}


async def save_schedule(pool, settings: Dict[str, Any]) -> Dict[str, Any]:
    merged = {**DEFAULT_SCHEDULE, **{k: v for k, v in settings.items() if k in DEFAULT_SCHEDULE}}
    async with pool.acquire() as conn:
        await set_config(conn, SCHEDULE_CONFIG_KEY, 'schedule', merged, 'Daily report schedule settings')
    logger.info(f"Saved daily report schedule: enabled={merged['enabled']} at {merged['time']}")
    return merged
