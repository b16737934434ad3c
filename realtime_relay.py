"""
Realtime notification relay.

Single in-process fan-out over WebSocket connections. Each socket carries a
set of channel subscriptions, tender subscriptions and an optional user id.
Nothing is persisted; a message sent while a client is disconnected is lost.

Client → server messages (JSON):
    {"type": "identify", "user_id": "..."}
    {"type": "subscribe", "channel": "alerts"}
    {"type": "unsubscribe", "channel": "alerts"}
    {"type": "subscribe_tender", "tender_id": "..."}
    {"type": "unsubscribe_tender", "tender_id": "..."}
    {"type": "publish", "channel": "...", "payload": {...}}
    {"type": "ping"}
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger("camerpulse.relay")


@dataclass
class Subscriptions:
    channels: Set[str] = field(default_factory=set)
    tenders: Set[str] = field(default_factory=set)
    user_id: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RelayHub:

    def __init__(self):
        self.connections: Dict[WebSocket, Subscriptions] = {}

    def connect(self, websocket: WebSocket) -> Subscriptions:
        subs = Subscriptions()
        self.connections[websocket] = subs
        logger.info(f"Relay client connected ({len(self.connections)} open)")
        return subs

    def disconnect(self, websocket: WebSocket):
        if self.connections.pop(websocket, None) is not None:
            logger.info(f"Relay client disconnected ({len(self.connections)} open)")

    async def _send(self, websocket: WebSocket, message: Dict[str, Any]) -> bool:
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except (RuntimeError, OSError, WebSocketDisconnect):
            self.disconnect(websocket)
            return False

    async def _fan_out(self, predicate, message: Dict[str, Any], exclude: Optional[WebSocket] = None) -> int:
        delivered = 0
        for websocket, subs in list(self.connections.items()):
            if websocket is exclude or not predicate(subs):
                continue
            if await self._send(websocket, message):
                delivered += 1
        return delivered

    async def publish_to_channel(self, channel: str, payload: Any, exclude: Optional[WebSocket] = None) -> int:
        message = {'type': 'message', 'channel': channel, 'payload': payload, 'timestamp': _now()}
        return await self._fan_out(lambda s: channel in s.channels, message, exclude)

    async def publish_to_tender(self, tender_id: str, payload: Any) -> int:
        message = {'type': 'tender_update', 'tender_id': tender_id, 'payload': payload, 'timestamp': _now()}
        return await self._fan_out(lambda s: tender_id in s.tenders, message)

    async def publish_to_user(self, user_id: str, payload: Any) -> int:
        message = {'type': 'notification', 'payload': payload, 'timestamp': _now()}
        return await self._fan_out(lambda s: s.user_id == user_id, message)

    async def broadcast(self, payload: Any) -> int:
        message = {'type': 'broadcast', 'payload': payload, 'timestamp': _now()}
        return await self._fan_out(lambda s: True, message)

    async def _error(self, websocket: WebSocket, error: str):
        await self._send(websocket, {'type': 'error', 'error': error})

    async def handle_frame(self, websocket: WebSocket, frame: Dict[str, Any]):
        """Dispatch one ASGI ``websocket.receive`` frame; only text frames carry messages."""
        raw = frame.get('text')
        if raw is None:
            await self._error(websocket, 'Binary frames are not supported')
            return
        await self.handle_message(websocket, raw)

    async def handle_message(self, websocket: WebSocket, raw: str):
        subs = self.connections.get(websocket)
        if subs is None:
            return

        try:
            message = json.loads(raw)
        except ValueError:
            await self._error(websocket, 'Invalid JSON')
            return
        if not isinstance(message, dict):
            await self._error(websocket, 'Message must be a JSON object')
            return

        kind = message.get('type')

        if kind == 'ping':
            await self._send(websocket, {'type': 'pong', 'timestamp': _now()})

        elif kind == 'identify':
            if not message.get('user_id'):
                await self._error(websocket, 'user_id required')
                return
            subs.user_id = str(message['user_id'])
            await self._send(websocket, {'type': 'identified', 'user_id': subs.user_id})

        elif kind in ('subscribe', 'unsubscribe'):
            channel = message.get('channel')
            if not channel:
                await self._error(websocket, 'channel required')
                return
            if kind == 'subscribe':
                subs.channels.add(channel)
            else:
                subs.channels.discard(channel)
            await self._send(websocket, {'type': f'{kind}d', 'channel': channel})

        elif kind in ('subscribe_tender', 'unsubscribe_tender'):
            tender_id = message.get('tender_id')
            if not tender_id:
                await self._error(websocket, 'tender_id required')
                return
            tender_id = str(tender_id)
            if kind == 'subscribe_tender':
                subs.tenders.add(tender_id)
                reply = 'tender_subscribed'
            else:
                subs.tenders.discard(tender_id)
                reply = 'tender_unsubscribed'
            await self._send(websocket, {'type': reply, 'tender_id': tender_id})

        elif kind == 'publish':
            channel = message.get('channel')
            if not channel:
                await self._error(websocket, 'channel required')
                return
            delivered = await self.publish_to_channel(channel, message.get('payload'), exclude=websocket)
            await self._send(websocket, {'type': 'published', 'channel': channel, 'delivered': delivered})

        else:
            await self._error(websocket, f"Unknown message type: {kind}")

    def stats(self) -> Dict[str, Any]:
        channels: Dict[str, int] = {}
        tenders: Dict[str, int] = {}
        for subs in self.connections.values():
            for c in subs.channels:
                channels[c] = channels.get(c, 0) + 1
            for t in subs.tenders:
                tenders[t] = tenders.get(t, 0) + 1
        return {
            'connections': len(self.connections),
            'identified_users': len({s.user_id for s in self.connections.values() if s.user_id}),
            'channels': channels,
            'tenders': tenders,
        }
