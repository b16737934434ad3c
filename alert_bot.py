"""
Civic Alert Bot
===============
Broadcasts intelligence alerts and the daily civic digest to Telegram chats
and WhatsApp groups.
"""

import logging
import os
import uuid
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta, time, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from civic_store import decode_json, get_config, sanitize_error, set_config

logger = logging.getLogger("camerpulse.alertbot")

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")

TELEGRAM_API = "https://api.telegram.org"
WHATSAPP_API = "https://graph.facebook.com/v18.0"

BROADCAST_LOG_KEY = 'alert_bot_broadcast_logs'
MAX_BROADCAST_LOGS = 100

DEFAULT_TEMPLATES = {
    'danger_alert': (
        "🚨 <b>CamerPulse Danger Alert</b>\n"
        "Region: {region}\nSeverity: {severity}\nDanger score: {danger_score}/100\n"
        "Dominant emotion: {emotion}\nTopic: {topic}\n{timestamp}\n{dashboard_url}"
    ),
    'mood_shift': (
        "🌡️ <b>Mood Shift Detected</b>\n"
        "{region}: {from_emotion} → {to_emotion}\nTopic: {topic}\n{timestamp}\n{dashboard_url}"
    ),
    'disinformation': (
        "⚠️ <b>Disinformation Spreading</b>\n"
        "Topic: {topic}\nSpread rate: {spread_rate}\nPlatforms: {platforms}\n{timestamp}\n{dashboard_url}"
    ),
    'unrest_prediction': (
        "🔮 <b>Unrest Prediction</b>\n"
        "Region: {region}\nRisk level: {risk_level}%\nTimeframe: {timeframe}\n"
        "Triggers: {triggers}\n{timestamp}\n{dashboard_url}"
    ),
}

SEVERITY_SCORES = {'critical': 90, 'high': 75, 'medium': 50, 'low': 25}


class AlertNotFoundError(LookupError):
    pass


class AlertBotConfig(BaseModel):
    enabled: bool = True
    telegram_enabled: bool = False
    whatsapp_enabled: bool = False
    telegram_bot_token: str = ""
    telegram_admin_chat_id: str = ""
    telegram_public_chat_id: str = ""
    whatsapp_admin_groups: List[str] = []
    alert_frequency: str = "immediate"
    danger_threshold: int = 70
    voice_alerts_enabled: bool = False
    message_templates: Dict[str, str] = dict(DEFAULT_TEMPLATES)


@dataclass
class BroadcastResult:
    platform: str
    success_count: int = 0
    failure_count: int = 0
    recipient_count: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ═══════════════════════════════════════════════════════════════════════════════
# MESSAGE FORMATTING
# ═══════════════════════════════════════════════════════════════════════════════

def _format_timestamp(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return value
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d %H:%M UTC')
    return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')


def format_alert_message(template: str, alert: Dict[str, Any], dashboard_url: str) -> str:
    data = decode_json(alert.get('sentiment_data')) or {}
    if not isinstance(data, dict):
        data = {}

    tones = data.get('emotional_tone') or alert.get('emotional_tone')
    if isinstance(tones, list):
        emotion = tones[0] if tones else None
    else:
        emotion = tones

    severity = (alert.get('severity') or 'unknown').lower()
    danger_score = data.get('danger_score')
    if danger_score is None and data.get('priority_score') is not None:
        danger_score = round(float(data['priority_score']) * 100)
    if danger_score is None:
        danger_score = SEVERITY_SCORES.get(severity, 50)

    values = {
        '{region}': ', '.join(alert.get('affected_regions') or []) or 'Multiple Regions',
        '{severity}': severity.upper(),
        '{danger_score}': str(danger_score),
        '{emotion}': emotion or 'Tension',
        '{topic}': alert.get('title') or 'Civic Alert',
        '{timestamp}': _format_timestamp(alert.get('created_at')),
        '{dashboard_url}': dashboard_url,
        '{from_emotion}': data.get('from_emotion', 'Calm'),
        '{to_emotion}': data.get('to_emotion', 'Agitated'),
        '{spread_rate}': str(data.get('spread_rate', 'unknown')),
        '{platforms}': data.get('platform') or ', '.join(data.get('platforms') or []) or 'Multiple platforms',
        '{risk_level}': str(data.get('risk_level', danger_score)),
        '{timeframe}': data.get('timeframe', 'Next 6 hours'),
        '{triggers}': ', '.join(data.get('triggers') or []) or 'Not specified',
    }

    message = template
    for placeholder, value in values.items():
        message = message.replace(placeholder, str(value))
    return message


def select_template(alert_type: str, templates: Dict[str, str]) -> str:
    merged = {**DEFAULT_TEMPLATES, **(templates or {})}
    alert_type = alert_type or ''
    if 'mood' in alert_type:
        return merged['mood_shift']
    if 'disinformation' in alert_type:
        return merged['disinformation']
    if 'unrest' in alert_type or 'prediction' in alert_type:
        return merged['unrest_prediction']
    return merged['danger_alert']


def _pct(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


def build_digest(
    sentiments: List[Dict[str, Any]],
    alerts: List[Dict[str, Any]],
    trends: List[Dict[str, Any]],
    day: date,
    dashboard_url: str
) -> str:
    total = len(sentiments)
    positive = sum(1 for s in sentiments if s.get('sentiment_polarity') == 'positive')
    negative = sum(1 for s in sentiments if s.get('sentiment_polarity') == 'negative')
    critical = sum(1 for a in alerts if a.get('severity') == 'critical')

    if trends:
        topic_lines = '\n'.join(
            f"{i}. {t.get('topic_text')} (Volume: {t.get('volume_score')})"
            for i, t in enumerate(trends, start=1)
        )
    else:
        topic_lines = 'No trending topics detected'

    return (
        f"📊 CamerPulse Daily Civic Digest - {day.isoformat()}\n\n"
        f"🌍 NATIONAL SENTIMENT OVERVIEW\n"
        f"📈 Total Conversations Monitored: {total:,}\n"
        f"😊 Positive Sentiment: {positive} ({_pct(positive, total)}%)\n"
        f"😠 Negative Sentiment: {negative} ({_pct(negative, total)}%)\n\n"
        f"🚨 ALERTS & INCIDENTS\n"
        f"📢 Total Alerts: {len(alerts)}\n"
        f"⚠️ Critical Alerts: {critical}\n\n"
        f"📈 TOP TRENDING TOPICS\n{topic_lines}\n\n"
        f"🔗 Full Dashboard: {dashboard_url}\n\n"
        f"Generated by CamerPulse Intelligence System"
    )


# ═══════════════════════════════════════════════════════════════════════════════
# PLATFORM SENDERS
# ═══════════════════════════════════════════════════════════════════════════════

async def send_telegram_message(client: httpx.AsyncClient, bot_token: str, chat_id: str, message: str) -> bool:
    try:
        response = await client.post(
            f"{TELEGRAM_API}/bot{bot_token}/sendMessage",
            json={
                'chat_id': chat_id,
                'text': message,
                'parse_mode': 'HTML',
                'disable_web_page_preview': True,
            }
        )
        return bool(response.json().get('ok'))
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Telegram send error: {sanitize_error(e)}")
        return False


async def send_whatsapp_message(
    client: httpx.AsyncClient,
    access_token: str,
    phone_number_id: str,
    to: str,
    message: str
) -> bool:
    if not access_token or not phone_number_id:
        return False
    try:
        response = await client.post(
            f"{WHATSAPP_API}/{phone_number_id}/messages",
            headers={'Authorization': f'Bearer {access_token}'},
            json={
                'messaging_product': 'whatsapp',
                'to': to,
                'type': 'text',
                'text': {'body': message},
            }
        )
        return response.is_success
    except httpx.HTTPError as e:
        logger.error(f"WhatsApp send error: {sanitize_error(e)}")
        return False


class AlertBot:
    """Bot credentials plus a shared HTTP client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        dashboard_url: str,
        telegram_token: Optional[str] = None,
        whatsapp_token: Optional[str] = None,
        whatsapp_phone_number_id: Optional[str] = None
    ):
        self.client = client
        self.dashboard_url = dashboard_url
        self.telegram_token = TELEGRAM_BOT_TOKEN if telegram_token is None else telegram_token
        self.whatsapp_token = WHATSAPP_ACCESS_TOKEN if whatsapp_token is None else whatsapp_token
        self.whatsapp_phone_number_id = (
            WHATSAPP_PHONE_NUMBER_ID if whatsapp_phone_number_id is None else whatsapp_phone_number_id
        )

    async def test_connection(self, platform: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        config = config or {}

        if platform == 'telegram':
            token = config.get('bot_token') or self.telegram_token
            if not token:
                return {'success': False, 'error': 'Token not configured'}
            try:
                response = await self.client.get(f"{TELEGRAM_API}/bot{token}/getMe")
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                return {'success': False, 'error': f"Connection failed: {sanitize_error(e)}"}
            if result.get('ok'):
                bot = result.get('result') or {}
                return {'success': True, 'info': {'bot_username': bot.get('username'), 'bot_name': bot.get('first_name')}}
            return {'success': False, 'error': result.get('description') or 'Invalid bot token'}

        if platform == 'whatsapp':
            if not self.whatsapp_token or not self.whatsapp_phone_number_id:
                return {'success': False, 'error': 'WhatsApp credentials not configured'}
            try:
                response = await self.client.get(
                    f"{WHATSAPP_API}/{self.whatsapp_phone_number_id}",
                    headers={'Authorization': f'Bearer {self.whatsapp_token}'}
                )
                if not response.is_success:
                    return {'success': False, 'error': 'WhatsApp API connection failed'}
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                return {'success': False, 'error': f"WhatsApp connection failed: {sanitize_error(e)}"}
            return {'success': True, 'info': {'phone_number': result.get('display_phone_number') or self.whatsapp_phone_number_id}}

        return {'success': False, 'error': 'Unknown platform'}

    async def status(self) -> Dict[str, Any]:
        telegram = await self.test_connection('telegram')
        whatsapp = await self.test_connection('whatsapp')
        return {
            'telegram': {
                'connected': telegram['success'],
                'bot_username': (telegram.get('info') or {}).get('bot_username') or '',
                'error': telegram.get('error'),
            },
            'whatsapp': {
                'connected': whatsapp['success'],
                'phone_number': (whatsapp.get('info') or {}).get('phone_number') or '',
                'error': whatsapp.get('error'),
            },
        }

    async def deliver(self, config: AlertBotConfig, message: str) -> List[BroadcastResult]:
        results = []
        telegram_token = config.telegram_bot_token or self.telegram_token

        if config.telegram_enabled and telegram_token:
            result = BroadcastResult(platform='telegram')
            recipients = [c for c in (config.telegram_admin_chat_id, config.telegram_public_chat_id) if c]
            result.recipient_count = len(recipients)
            for chat_id in recipients:
                if await send_telegram_message(self.client, telegram_token, chat_id, message):
                    result.success_count += 1
                else:
                    result.failure_count += 1
                    result.errors.append(f"Failed to send to chat {chat_id}")
            results.append(result)

        if config.whatsapp_enabled and config.whatsapp_admin_groups:
            result = BroadcastResult(platform='whatsapp', recipient_count=len(config.whatsapp_admin_groups))
            for group_id in config.whatsapp_admin_groups:
                sent = await send_whatsapp_message(
                    self.client, self.whatsapp_token, self.whatsapp_phone_number_id, group_id, message
                )
                if sent:
                    result.success_count += 1
                else:
                    result.failure_count += 1
                    result.errors.append(f"Failed to send to group {group_id}")
            results.append(result)

        return results

    async def broadcast_alert(self, pool, alert_id: Any, config: AlertBotConfig) -> List[BroadcastResult]:
        async with pool.acquire() as conn:
            alert = await conn.fetchrow("SELECT * FROM camerpulse_intelligence_alerts WHERE id = $1", alert_id)
            if not alert:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            alert = dict(alert)

            template = select_template(alert.get('alert_type'), config.message_templates)
            message = format_alert_message(template, alert, self.dashboard_url)
            results = await self.deliver(config, message)

            await log_broadcast(conn, str(alert_id), results)
            await conn.execute("""
                UPDATE camerpulse_intelligence_alerts SET
                    acknowledged = true,
                    acknowledged_at = NOW(),
                    acknowledged_by = 'civic-alert-bot'
                WHERE id = $1
            """, alert_id)

        sent = sum(r.success_count for r in results)
        logger.info(f"Broadcast alert {alert_id}: {sent} messages delivered")
        return results

    async def send_daily_digest(self, pool, config: AlertBotConfig, day: Optional[date] = None) -> List[BroadcastResult]:
        day = day or datetime.now(timezone.utc).date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        async with pool.acquire() as conn:
            sentiments = await conn.fetch("""
                SELECT sentiment_polarity, sentiment_score FROM camerpulse_intelligence_sentiment_logs
                WHERE created_at >= $1 AND created_at < $2
                LIMIT 1000
            """, start, end)
            alerts = await conn.fetch("""
                SELECT severity, alert_type FROM camerpulse_intelligence_alerts
                WHERE created_at >= $1 AND created_at < $2
            """, start, end)
            trends = await conn.fetch("""
                SELECT topic_text, volume_score FROM camerpulse_intelligence_trending_topics
                ORDER BY volume_score DESC
                LIMIT 5
            """)

            message = build_digest(
                [dict(s) for s in sentiments], [dict(a) for a in alerts], [dict(t) for t in trends],
                day, self.dashboard_url
            )
            results = await self.deliver(config, message)
            await log_broadcast(conn, 'daily-digest', results)

        logger.info(f"Daily digest {day}: {sum(r.success_count for r in results)} messages delivered")
        return results


async def log_broadcast(conn, reference: str, results: List[BroadcastResult]):
    """Prepend broadcast logs to the config-stored history, keeping the newest 100."""
    now = datetime.now(timezone.utc).isoformat()
    entries = []
    for result in results:
        entry = {
            'id': str(uuid.uuid4()),
            'platform': result.platform,
            'message_type': 'daily_digest' if 'digest' in reference else 'alert_broadcast',
            'recipient_count': result.recipient_count,
            'success_count': result.success_count,
            'failure_count': result.failure_count,
            'created_at': now,
        }
        if reference != 'daily-digest':
            entry['alert_id'] = reference
        entries.append(entry)

    existing = await get_config(conn, BROADCAST_LOG_KEY) or {}
    current = existing.get('broadcasts', []) if isinstance(existing, dict) else []
    await set_config(conn, BROADCAST_LOG_KEY, 'system',
                     {'broadcasts': (entries + current)[:MAX_BROADCAST_LOGS]},
                     'Alert Bot Broadcast History')


def summarize_results(results: List[BroadcastResult]) -> Dict[str, Any]:
    return {
        'success': True,
        'recipient_count': sum(r.recipient_count for r in results),
        'success_count': sum(r.success_count for r in results),
        'results': [r.to_dict() for r in results],
    }
