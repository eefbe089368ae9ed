"""
Vidya Event Streaming — realtime change streams via WebSocket + SSE.

Services publish an event on a channel after every authoritative change;
the hub forwards it to every connection subscribed to that channel.

Channels:
  notifications:<account_id>   own notification stream (owner only)
  moderation                   pending-queue changes (moderators only)
  video:<video_id>             likes / views / comments of one video
  feed                         newly published / removed videos
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from app.core.config import get_settings
from app.core.errors import Unauthorized, ValidationError
from app.core.identity import Actor

logger = logging.getLogger(__name__)
settings = get_settings()

MODERATION_CHANNEL = "moderation"
FEED_CHANNEL = "feed"


# ═══════════════════════════════════════════════════════════════════════════
# Event Types
# ═══════════════════════════════════════════════════════════════════════════

class RealtimeEventType(str, Enum):
    # Notification stream
    NOTIFICATION_CREATED = "NOTIFICATION_CREATED"
    NOTIFICATION_READ = "NOTIFICATION_READ"
    NOTIFICATIONS_ALL_READ = "NOTIFICATIONS_ALL_READ"
    NOTIFICATIONS_CLEARED = "NOTIFICATIONS_CLEARED"
    # Moderation stream
    SUBMISSION_QUEUED = "SUBMISSION_QUEUED"
    SUBMISSION_DECIDED = "SUBMISSION_DECIDED"
    # Video / feed streams
    VIDEO_PUBLISHED = "VIDEO_PUBLISHED"
    VIDEO_UPDATED = "VIDEO_UPDATED"
    VIDEO_DELETED = "VIDEO_DELETED"
    LIKES_CHANGED = "LIKES_CHANGED"
    VIEWS_CHANGED = "VIEWS_CHANGED"
    COMMENT_ADDED = "COMMENT_ADDED"
    # Meta
    HEARTBEAT = "HEARTBEAT"


@dataclass
class RealtimeEvent:
    event_type: str
    channel: str = ""
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None
    seq: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


def notifications_channel(account_id: Any) -> str:
    return f"notifications:{account_id}"


def video_channel(video_id: Any) -> str:
    return f"video:{video_id}"


def authorize_channel(actor: Optional[Actor], channel: str) -> str:
    """Validate a channel name and check the actor may listen on it."""
    if channel == FEED_CHANNEL:
        return channel
    if channel == MODERATION_CHANNEL:
        if actor is None or not actor.is_moderator:
            raise Unauthorized("Moderation stream requires the moderator role")
        return channel

    prefix, _, raw_id = channel.partition(":")
    try:
        target = uuid.UUID(raw_id)
    except ValueError:
        raise ValidationError(f"Unknown channel: {channel!r}")

    if prefix == "video":
        return video_channel(target)
    if prefix == "notifications":
        if actor is None or actor.account_id != target:
            raise Unauthorized("Notification streams are private to their owner")
        return notifications_channel(target)
    raise ValidationError(f"Unknown channel: {channel!r}")


# ═══════════════════════════════════════════════════════════════════════════
# Connection Hub
# ═══════════════════════════════════════════════════════════════════════════

class RealtimeHub:
    """
    Central hub for channel-scoped realtime delivery.

    - Tracks each connection's subscribed channels
    - Keeps a bounded event buffer for replay (last N events)
    - Prunes connections whose send fails
    """

    def __init__(self, buffer_size: int = 1000):
        self._subscriptions: Dict[WebSocket, Set[str]] = {}
        self._buffer: Deque[RealtimeEvent] = deque(maxlen=buffer_size)
        self._seq = 0
        self._stats = {
            "total_events_published": 0,
            "total_deliveries": 0,
            "active_connections": 0,
        }

    # ── Connection Lifecycle ─────────────────────────────────────────────

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self._subscriptions.setdefault(ws, set())
        self._stats["active_connections"] = len(self._subscriptions)
        logger.info(f"Realtime WS connected (total={len(self._subscriptions)})")

    async def disconnect(self, ws: WebSocket):
        self._subscriptions.pop(ws, None)
        self._stats["active_connections"] = len(self._subscriptions)
        logger.info(f"Realtime WS disconnected (total={len(self._subscriptions)})")

    def subscribe(self, ws: WebSocket, actor: Optional[Actor], channels: Iterable[str]) -> List[str]:
        """Authorise and add channels; raises before adding anything on refusal."""
        granted = [authorize_channel(actor, c.strip()) for c in channels if c.strip()]
        self._subscriptions.setdefault(ws, set()).update(granted)
        return granted

    def unsubscribe(self, ws: WebSocket, channels: Iterable[str]):
        subs = self._subscriptions.get(ws)
        if subs is not None:
            subs.difference_update(c.strip() for c in channels)

    def channels_of(self, ws: WebSocket) -> Set[str]:
        return set(self._subscriptions.get(ws, set()))

    # ── Publishing ───────────────────────────────────────────────────────

    async def publish(
        self,
        channel: str,
        event_type: RealtimeEventType,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Buffer an event and send it to every subscriber of its channel."""
        self._seq += 1
        event = RealtimeEvent(event_type=event_type.value, channel=channel, data=data, seq=self._seq)
        self._buffer.append(event)
        self._stats["total_events_published"] += 1

        targets = [ws for ws, subs in list(self._subscriptions.items()) if channel in subs]
        if not targets:
            return 0

        payload = event.to_json()
        dead: List[WebSocket] = []
        delivered = 0

        for ws in targets:
            try:
                await ws.send_text(payload)
                delivered += 1
            except Exception:
                dead.append(ws)

        for ws in dead:
            self._subscriptions.pop(ws, None)
        self._stats["active_connections"] = len(self._subscriptions)
        self._stats["total_deliveries"] += delivered
        return delivered

    # ── Replay ───────────────────────────────────────────────────────────

    def buffered(
        self,
        channels: Iterable[str],
        since: Optional[float] = None,
        limit: int = 500,
    ) -> List[RealtimeEvent]:
        wanted = set(channels)
        events = [e for e in self._buffer if e.channel in wanted]
        if since:
            events = [e for e in events if e.timestamp >= since]
        return events[-limit:]

    def buffered_after(self, channels: Iterable[str], seq: int) -> List[RealtimeEvent]:
        """Buffered events on ``channels`` published after sequence number ``seq``."""
        wanted = set(channels)
        return [e for e in self._buffer if e.channel in wanted and e.seq > seq]

    async def replay(self, ws: WebSocket, since: Optional[float] = None, limit: int = 500):
        """Send buffered events on the connection's channels for catch-up."""
        for event in self.buffered(self.channels_of(ws), since=since, limit=limit):
            try:
                await ws.send_text(event.to_json())
            except Exception:
                break

    # ── SSE Fallback Generator ───────────────────────────────────────────

    async def sse_stream(self, channels: List[str], since: Optional[float] = None):
        """Async generator for Server-Sent Events on a fixed channel set."""
        events = self.buffered(channels, since=since, limit=200)
        for event in events:
            yield f"data: {event.to_json()}\n\n"

        # Sequence numbers, not timestamps: events published in the same tick share a timestamp
        last_seq = events[-1].seq if events else self._seq
        idle = 0.0
        while True:
            await asyncio.sleep(settings.sse_poll_interval_seconds)
            new_events = self.buffered_after(channels, last_seq)
            for event in new_events:
                yield f"data: {event.to_json()}\n\n"
                last_seq = event.seq

            if new_events:
                idle = 0.0
                continue
            idle += settings.sse_poll_interval_seconds
            if idle >= settings.sse_heartbeat_seconds:
                idle = 0.0
                yield f"data: {RealtimeEvent(event_type=RealtimeEventType.HEARTBEAT.value).to_json()}\n\n"

    # ── Stats ────────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        channel_counts: Dict[str, int] = {}
        for subs in self._subscriptions.values():
            for c in subs:
                kind = c.split(":", 1)[0]
                channel_counts[kind] = channel_counts.get(kind, 0) + 1
        return {
            **self._stats,
            "subscriptions_by_kind": channel_counts,
            "buffer_size": len(self._buffer),
            "buffer_capacity": self._buffer.maxlen,
        }


# Module-level singleton
realtime_hub = RealtimeHub(buffer_size=settings.realtime_buffer_size)
