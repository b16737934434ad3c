"""
NoKash Mobile Money Payments
============================
MTN / Orange mobile money pay-ins for diaspora donations and marketplace
orders, through the NoKash payin API.

Flow:
1. Validate the request (100 - 1,000,000 XAF)
2. Rate limit: 10 requests per hour per IP or phone, then blocked for an hour
3. Duplicate check: idempotency key, or an identical payment in the last 5 minutes
4. Store a PENDING transaction (expires after one hour)
5. POST the signed payload to NoKash, up to 3 attempts with linear backoff
6. NoKash calls back with the final status
"""

import asyncio
import hashlib
import hmac
import json
import logging
import os
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

import asyncpg
import httpx
from pydantic import BaseModel

from civic_store import decode_json, row_to_dict, sanitize_error

logger = logging.getLogger("camerpulse.payments")

NOKASH_API_URL = os.getenv("NOKASH_API_URL", "https://api.nokash.app/lapas-on-trans/trans/api-payin-request/407")
NOKASH_I_SPACE_KEY = os.getenv("NOKASH_I_SPACE_KEY", "")

MIN_AMOUNT = 100
MAX_AMOUNT = 1_000_000
MAX_REQUESTS_PER_HOUR = 10
BLOCK_SECONDS = 3600
DUPLICATE_WINDOW = timedelta(minutes=5)
TRANSACTION_TTL = timedelta(hours=1)
IDEMPOTENCY_TTL = timedelta(hours=24)
MAX_API_ATTEMPTS = 3
BACKOFF_SECONDS = 1.0
MAX_RETRIES = 5

FINISHED_STATUSES = ('SUCCESS', 'FAILED', 'CANCELLED', 'EXPIRED')


class PaymentError(Exception):
    """Payment failure carrying the HTTP status the API should answer with."""

    def __init__(self, status_code: int, detail: Any, headers: Optional[Dict[str, str]] = None):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
        self.headers = headers


class PaymentRequest(BaseModel):
    order_id: str
    amount: int
    phone: str
    payment_method: Literal['MTN', 'ORANGE']
    user_id: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class RateLimitResult:
    allowed: bool
    remaining_requests: Optional[int] = None
    retry_after: Optional[int] = None
    reason: Optional[str] = None


def sign_payload(order_id: str, amount: int, phone: str, app_space_key: str, i_space_key: str) -> str:
    message = f"{order_id}:{amount}:{phone}:{app_space_key}"
    return hmac.new(i_space_key.encode(), message.encode(), hashlib.sha256).hexdigest()


def validate_payment(request: PaymentRequest):
    if not request.order_id or not request.phone or not request.amount:
        raise PaymentError(400, 'Missing required fields')
    if request.amount < MIN_AMOUNT or request.amount > MAX_AMOUNT:
        raise PaymentError(400, 'Amount must be between 100 and 1,000,000 XAF')


# ═══════════════════════════════════════════════════════════════════════════════
# ANALYTICS
# ═══════════════════════════════════════════════════════════════════════════════

def _day(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return str(value or '')[:10]


def summarize_transactions(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Status counts, success rate and collected amounts over transaction rows."""
    by_status = Counter(r.get('status') or 'UNKNOWN' for r in rows)
    successful = [r for r in rows if r.get('status') == 'SUCCESS']
    finished = sum(by_status.get(s, 0) for s in FINISHED_STATUSES)

    by_method = defaultdict(float)
    for r in successful:
        by_method[r.get('payment_method') or 'UNKNOWN'] += float(r.get('amount') or 0)

    daily = defaultdict(lambda: {'count': 0, 'successful': 0, 'amount': 0.0})
    for r in rows:
        bucket = daily[_day(r.get('created_at'))]
        bucket['count'] += 1
        if r.get('status') == 'SUCCESS':
            bucket['successful'] += 1
            bucket['amount'] += float(r.get('amount') or 0)

    total_collected = sum(by_method.values())
    return {
        'total_transactions': len(rows),
        'by_status': dict(by_status),
        'success_rate': round(len(successful) / finished * 100, 1) if finished else 0.0,
        'total_collected': total_collected,
        'collected_by_method': dict(by_method),
        'average_successful_amount': round(total_collected / len(successful), 2) if successful else 0.0,
        'daily_volume': [{'date': d, **v} for d, v in sorted(daily.items())],
    }


# ═══════════════════════════════════════════════════════════════════════════════
# GUARDS
# ═══════════════════════════════════════════════════════════════════════════════

async def check_rate_limit(conn, client_ip: str, phone: str, user_id: Optional[str] = None) -> RateLimitResult:
    now = datetime.now(timezone.utc)
    try:
        record = await conn.fetchrow("""
            SELECT id, request_count, blocked_until FROM payment_rate_limits
            WHERE (ip_address = $1 OR phone_number = $2) AND window_start >= $3
            ORDER BY window_start DESC
            LIMIT 1
        """, client_ip, phone, now - timedelta(hours=1))

        if record is None:
            await conn.execute("""
                INSERT INTO payment_rate_limits (ip_address, phone_number, user_id, request_count, window_start)
                VALUES ($1, $2, $3, 1, $4)
            """, client_ip, phone, user_id, now)
            return RateLimitResult(allowed=True, remaining_requests=MAX_REQUESTS_PER_HOUR - 1)

        blocked_until = record['blocked_until']
        if blocked_until and blocked_until > now:
            return RateLimitResult(
                allowed=False,
                retry_after=int((blocked_until - now).total_seconds()) + 1,
                reason='Rate limit exceeded - currently blocked'
            )

        if record['request_count'] >= MAX_REQUESTS_PER_HOUR:
            await conn.execute(
                "UPDATE payment_rate_limits SET blocked_until = $1, updated_at = NOW() WHERE id = $2",
                now + timedelta(seconds=BLOCK_SECONDS), record['id']
            )
            return RateLimitResult(allowed=False, retry_after=BLOCK_SECONDS,
                                   reason='Rate limit exceeded - blocking for 1 hour')

        await conn.execute(
            "UPDATE payment_rate_limits SET request_count = request_count + 1, updated_at = NOW() WHERE id = $1",
            record['id']
        )
        return RateLimitResult(allowed=True,
                               remaining_requests=MAX_REQUESTS_PER_HOUR - record['request_count'] - 1)

    except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error(f"Rate limit check error: {sanitize_error(e)}")
        return RateLimitResult(allowed=True)


async def find_duplicate(conn, request: PaymentRequest) -> Optional[str]:
    """Order id of an earlier equivalent payment, if any."""
    now = datetime.now(timezone.utc)
    try:
        if request.idempotency_key:
            order_id = await conn.fetchval("""
                SELECT i.order_id FROM payment_idempotency i
                JOIN nokash_transactions t ON t.order_id = i.order_id
                WHERE i.idempotency_key = $1 AND i.expires_at > $2
                  AND t.status IN ('PENDING', 'SUCCESS')
            """, request.idempotency_key, now)
            if order_id:
                return order_id

        return await conn.fetchval("""
            SELECT order_id FROM nokash_transactions
            WHERE phone_number = $1 AND amount = $2 AND payment_method = $3
              AND created_at >= $4 AND status IN ('PENDING', 'SUCCESS')
            ORDER BY created_at DESC
            LIMIT 1
        """, request.phone, request.amount, request.payment_method, now - DUPLICATE_WINDOW)

    except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
        logger.error(f"Duplicate check error: {sanitize_error(e)}")
        return None


async def store_idempotency_key(conn, request: PaymentRequest):
    """Bind the key to an accepted order; a key left by a failed attempt is replaced."""
    await conn.execute("DELETE FROM payment_idempotency WHERE idempotency_key = $1", request.idempotency_key)
    await conn.execute("""
        INSERT INTO payment_idempotency
        (idempotency_key, user_id, phone_number, amount, payment_method, order_id, expires_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
    """, request.idempotency_key, request.user_id, request.phone, request.amount,
        request.payment_method, request.order_id, datetime.now(timezone.utc) + IDEMPOTENCY_TTL)


async def record_status_change(conn, transaction_id: Any, old_status: Optional[str], new_status: str,
                               reason: Optional[str] = None):
    await conn.execute("""
        INSERT INTO transaction_status_history (transaction_id, old_status, new_status, reason)
        VALUES ($1, $2, $3, $4)
    """, transaction_id, old_status, new_status, reason)


# ═══════════════════════════════════════════════════════════════════════════════
# SERVICE
# ═══════════════════════════════════════════════════════════════════════════════

class NokashPaymentService:
    """
    Payment operations over the database pool and the NoKash API.

    on_event is awaited with a payment event dict whenever a transaction
    changes status; the API wires it to the realtime relay.
    """

    def __init__(
        self,
        pool,
        callback_url: str,
        client: Optional[httpx.AsyncClient] = None,
        i_space_key: Optional[str] = None,
        api_url: str = NOKASH_API_URL,
        backoff: Optional[float] = None,
        on_event: Optional[Callable[[Dict[str, Any]], Awaitable[Any]]] = None
    ):
        self.pool = pool
        self.callback_url = callback_url
        self.client = client
        self.i_space_key = NOKASH_I_SPACE_KEY if i_space_key is None else i_space_key
        self.api_url = api_url
        self.backoff = BACKOFF_SECONDS if backoff is None else backoff
        self.on_event = on_event

    async def _emit(self, event: Dict[str, Any]):
        if self.on_event:
            await self.on_event(event)

    async def _post_to_nokash(self, payload: Dict[str, Any], signature: str):
        """Returns (ok, response data, failed attempts)."""
        client = self.client or httpx.AsyncClient(timeout=60)
        failures = 0
        data = None
        ok = False
        try:
            while failures < MAX_API_ATTEMPTS:
                try:
                    response = await client.post(
                        self.api_url,
                        json=payload,
                        headers={'Content-Type': 'application/json', 'hmac-signature': signature}
                    )
                    try:
                        data = response.json()
                    except ValueError:
                        data = {'raw': response.text}
                    logger.info(f"NoKash response (attempt {failures + 1}): HTTP {response.status_code}")
                    if response.is_success:
                        ok = True
                        break
                except httpx.HTTPError as e:
                    logger.error(f"NoKash API error (attempt {failures + 1}): {sanitize_error(e)}")
                    data = {'error': sanitize_error(e)}

                failures += 1
                if failures < MAX_API_ATTEMPTS:
                    await asyncio.sleep(self.backoff * failures)
        finally:
            if self.client is None:
                await client.aclose()
        return ok, data, failures

    async def initiate_payment(self, request: PaymentRequest, client_ip: str = 'unknown',
                               user_agent: str = 'unknown') -> Dict[str, Any]:
        validate_payment(request)
        logger.info(f"Payment request received: {request.order_id} {request.amount} XAF via {request.payment_method}")

        async with self.pool.acquire() as conn:
            limit = await check_rate_limit(conn, client_ip, request.phone, request.user_id)
            if not limit.allowed:
                raise PaymentError(
                    429,
                    {'error': 'Rate limit exceeded', 'retryAfter': limit.retry_after, 'reason': limit.reason},
                    headers={'Retry-After': str(limit.retry_after or BLOCK_SECONDS)}
                )

            duplicate_of = await find_duplicate(conn, request)
            if duplicate_of:
                return {
                    'success': True,
                    'message': 'Payment already processed',
                    'order_id': duplicate_of,
                    'duplicate': True,
                }

            config = await conn.fetchrow(
                "SELECT * FROM nokash_payment_config WHERE is_active = true LIMIT 1"
            )
            if not config:
                raise PaymentError(400, 'Payment service not configured')

            app_space_key = config['app_space_key']
            if not self.i_space_key or not app_space_key:
                logger.error("Missing NoKash keys")
                raise PaymentError(500, 'Payment service configuration incomplete')

            transaction_id = await conn.fetchval("""
                INSERT INTO nokash_transactions
                (order_id, user_id, amount, phone_number, payment_method, status, ip_address, user_agent, expires_at)
                VALUES ($1, $2, $3, $4, $5, 'PENDING', $6, $7, $8)
                RETURNING id
            """, request.order_id, request.user_id, request.amount, request.phone, request.payment_method,
                client_ip, user_agent, datetime.now(timezone.utc) + TRANSACTION_TTL)
            await record_status_change(conn, transaction_id, None, 'PENDING', 'Payment initiated')

        payload = {
            'i_space_key': self.i_space_key,
            'app_space_key': app_space_key,
            'payment_type': 'MOBILEMONEY',
            'country': 'CM',
            'payment_method': request.payment_method,
            'order_id': request.order_id,
            'amount': request.amount,
            'callback_url': self.callback_url,
            'user_data': {'user_phone': request.phone},
        }
        signature = sign_payload(request.order_id, request.amount, request.phone, app_space_key, self.i_space_key)
        ok, response_data, failures = await self._post_to_nokash(payload, signature)

        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE nokash_transactions SET
                    nokash_response = $2,
                    retry_count = $3,
                    last_retry_at = $4,
                    failed_reason = $5,
                    updated_at = NOW()
                WHERE order_id = $1
            """, request.order_id, json.dumps(response_data, default=str), failures,
                datetime.now(timezone.utc) if failures > 1 else None,
                None if ok else f"API call failed after {failures} attempts")

            if ok and request.idempotency_key:
                await store_idempotency_key(conn, request)

            if not ok:
                await conn.execute("UPDATE nokash_transactions SET status = 'FAILED' WHERE id = $1", transaction_id)
                await record_status_change(conn, transaction_id, 'PENDING', 'FAILED',
                                           f"API call failed after {failures} attempts")
                await conn.execute("""
                    INSERT INTO payment_alerts (alert_type, severity, title, description, metadata)
                    VALUES ('failed_payment', 'medium', $1, $2, $3)
                """, f"Payment Failed: {request.order_id}",
                    f"Payment of {request.amount} XAF for phone {request.phone} failed after {failures} attempts",
                    json.dumps({
                        'order_id': request.order_id,
                        'amount': request.amount,
                        'phone': request.phone,
                        'payment_method': request.payment_method,
                        'retry_count': failures,
                        'error_details': response_data,
                    }, default=str))

        if not ok:
            logger.warning(f"Payment {request.order_id} initiation failed after {failures} attempts")
            raise PaymentError(400, {
                'error': 'Payment initiation failed',
                'details': response_data,
                'retryCount': failures,
            })

        await self._emit({'order_id': request.order_id, 'status': 'PENDING', 'amount': request.amount})
        return {
            'success': True,
            'message': 'Payment initiated successfully',
            'order_id': request.order_id,
            'nokash_response': response_data,
            'remainingRequests': limit.remaining_requests,
        }

    async def handle_callback(self, data: Dict[str, Any]) -> Dict[str, Any]:
        order_id = data.get('order_id')
        if not order_id:
            raise PaymentError(400, 'Missing order_id in callback')

        status = data.get('status') or 'UNKNOWN'
        logger.info(f"NoKash callback received for {order_id}: {status}")

        async with self.pool.acquire() as conn:
            transaction = await conn.fetchrow("SELECT * FROM nokash_transactions WHERE order_id = $1", order_id)
            if not transaction:
                logger.error(f"Transaction not found for order_id: {order_id}")
                raise PaymentError(404, 'Transaction not found')

            completed_at = None
            failed_reason = None
            if status == 'SUCCESS':
                completed_at = datetime.now(timezone.utc)
            elif status in ('FAILED', 'CANCELLED'):
                failed_reason = data.get('reason') or 'Payment failed via callback'

            async with conn.transaction():
                await conn.execute("""
                    UPDATE nokash_transactions SET
                        status = $2,
                        callback_data = $3,
                        completed_at = COALESCE($4, completed_at),
                        failed_reason = COALESCE($5, failed_reason),
                        updated_at = NOW()
                    WHERE order_id = $1
                """, order_id, status, json.dumps(data, default=str), completed_at, failed_reason)

                if transaction['status'] != status:
                    await record_status_change(conn, transaction['id'], transaction['status'], status, failed_reason)

            if status == 'SUCCESS' and not transaction['notification_sent']:
                await self._send_payment_notification(conn, transaction)

        await self._emit({'order_id': order_id, 'status': status, 'amount': transaction['amount']})
        logger.info(f"Transaction {order_id} updated to status: {status}")
        return {'success': True, 'message': 'Callback processed'}

    async def _send_payment_notification(self, conn, transaction):
        await conn.execute("UPDATE nokash_transactions SET notification_sent = true WHERE id = $1", transaction['id'])
        if transaction['user_id']:
            await conn.execute("""
                INSERT INTO notifications (user_id, type, title, message, data)
                VALUES ($1, 'payment', 'Payment received', $2, $3)
            """, transaction['user_id'],
                f"Your payment of {transaction['amount']} XAF was successful.",
                json.dumps({'order_id': transaction['order_id']}))
        logger.info(f"Payment notification sent for transaction: {transaction['order_id']}")

    async def get_status(self, order_id: str) -> Dict[str, Any]:
        if not order_id:
            raise PaymentError(400, 'order_id parameter required')

        async with self.pool.acquire() as conn:
            transaction = await conn.fetchrow("SELECT * FROM nokash_transactions WHERE order_id = $1", order_id)
            if not transaction:
                raise PaymentError(404, 'Transaction not found')
            history = await conn.fetch("""
                SELECT old_status, new_status, created_at, reason
                FROM transaction_status_history
                WHERE transaction_id = $1
                ORDER BY created_at
            """, transaction['id'])

        t = row_to_dict(transaction)
        return {
            'success': True,
            'transaction': {
                'order_id': t['order_id'],
                'status': t['status'],
                'amount': t['amount'],
                'payment_method': t['payment_method'],
                'created_at': t.get('created_at'),
                'completed_at': t.get('completed_at'),
                'expires_at': t.get('expires_at'),
                'history': [row_to_dict(h) for h in history],
            }
        }

    async def retry_payment(self, order_id: str, client_ip: str = 'unknown',
                            user_agent: str = 'unknown', now_ms: Optional[int] = None) -> Dict[str, Any]:
        if not order_id:
            raise PaymentError(400, 'order_id required')

        async with self.pool.acquire() as conn:
            transaction = await conn.fetchrow("SELECT * FROM nokash_transactions WHERE order_id = $1", order_id)
        if not transaction:
            raise PaymentError(404, 'Transaction not found')
        if transaction['status'] == 'SUCCESS':
            raise PaymentError(400, 'Transaction already successful')
        if (transaction['retry_count'] or 0) >= MAX_RETRIES:
            raise PaymentError(400, 'Maximum retry attempts exceeded')

        now_ms = now_ms or int(datetime.now(timezone.utc).timestamp() * 1000)
        retry_request = PaymentRequest(
            order_id=f"{order_id}-RETRY-{now_ms}",
            amount=int(transaction['amount']),
            phone=transaction['phone_number'],
            payment_method=transaction['payment_method'],
            user_id=transaction['user_id'],
        )
        return await self.initiate_payment(retry_request, client_ip, user_agent)

    async def expire_stale_transactions(self) -> int:
        """Mark PENDING transactions past their expiry as EXPIRED."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                UPDATE nokash_transactions SET
                    status = 'EXPIRED',
                    failed_reason = 'Transaction expired without confirmation',
                    updated_at = NOW()
                WHERE status = 'PENDING' AND expires_at < $1
                RETURNING id, order_id, amount
            """, datetime.now(timezone.utc))
            for row in rows:
                await record_status_change(conn, row['id'], 'PENDING', 'EXPIRED', 'Transaction expired without confirmation')

        for row in rows:
            logger.info(f"Transaction {row['order_id']} marked as expired")
            await self._emit({'order_id': row['order_id'], 'status': 'EXPIRED', 'amount': row['amount']})
        return len(rows)

    async def list_transactions(self, user_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            if user_id:
                rows = await conn.fetch("""
                    SELECT * FROM nokash_transactions WHERE user_id = $1
                    ORDER BY created_at DESC LIMIT $2
                """, user_id, limit)
            else:
                rows = await conn.fetch(
                    "SELECT * FROM nokash_transactions ORDER BY created_at DESC LIMIT $1", limit
                )
        result = []
        for row in rows:
            d = row_to_dict(row)
            d.pop('nokash_response', None)
            d['callback_data'] = decode_json(d.get('callback_data'))
            result.append(d)
        return result

    async def analytics(self, days: int = 30) -> Dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(days=days)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT status, amount, payment_method, created_at
                FROM nokash_transactions
                WHERE created_at >= $1
            """, since)
        return {'period_days': days, **summarize_transactions([dict(r) for r in rows])}
