"""
Shared helpers for the CamerPulse intelligence tables.

The camerpulse_intelligence_config table is a key/value store (jsonb values)
used by every pipeline for cached analyses, thresholds, schedules and
broadcast history.
"""

import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import asyncpg


def row_to_dict(row: asyncpg.Record) -> Dict[str, Any]:
    """Convert asyncpg Record to dict with JSON serialization fixes."""
    d = dict(row)
    for k, v in d.items():
        if isinstance(v, Decimal):
            d[k] = float(v)
        elif isinstance(v, (datetime, date)):
            d[k] = v.isoformat()
    return d


def sanitize_error(error_msg: Any) -> str:
    """Strip API keys and bearer tokens from an error message before logging it."""
    patterns = [
        r'sk-ant-[a-zA-Z0-9_-]{20,}',  # Anthropic keys
        r'sk-[a-zA-Z0-9_-]{20,}',  # OpenAI keys
        r'Bearer [a-zA-Z0-9_.-]{20,}',  # Bearer tokens
        r'bot[0-9]{6,}:[a-zA-Z0-9_-]{20,}',  # Telegram bot tokens in URLs
        r'i_space_key["\s:=]+[a-zA-Z0-9_-]{8,}',  # NoKash keys
    ]
    result = str(error_msg)
    for pattern in patterns:
        result = re.sub(pattern, '[REDACTED]', result, flags=re.IGNORECASE)
    return result


def decode_json(value: Any) -> Any:
    """jsonb columns come back as text unless a codec is registered."""
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


async def get_config(conn, config_key: str) -> Optional[Any]:
    value = await conn.fetchval(
        "SELECT config_value FROM camerpulse_intelligence_config WHERE config_key = $1",
        config_key
    )
    return decode_json(value)


async def set_config(conn, config_key: str, config_type: str, value: Any, description: str = None):
    await conn.execute("""
        INSERT INTO camerpulse_intelligence_config (config_key, config_type, config_value, description)
        VALUES ($1, $2, $3, $4)
        ON CONFLICT (config_key) DO UPDATE SET
            config_type = EXCLUDED.config_type,
            config_value = EXCLUDED.config_value,
            description = COALESCE(EXCLUDED.description, camerpulse_intelligence_config.description),
            updated_at = NOW()
    """, config_key, config_type, json.dumps(value, default=str), description)


async def insert_alert(
    conn,
    alert_type: str,
    severity: str,
    title: str,
    description: str,
    affected_regions=None,
    sentiment_data: Dict[str, Any] = None,
    related_content_ids=None
) -> Any:
    return await conn.fetchval("""
        INSERT INTO camerpulse_intelligence_alerts
        (alert_type, severity, title, description, affected_regions, sentiment_data, related_content_ids)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
        RETURNING id
    """, alert_type, severity, title, description, list(affected_regions or []),
       json.dumps(sentiment_data or {}, default=str), list(related_content_ids or []))
