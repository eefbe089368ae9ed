"""
Vidya Notification Fan-out — detached, best-effort delivery plus the inbox.

Triggering operations (submit, decide, like, follow, comment) never await a
notification write. They hand a ``NotificationIntent`` to the dispatcher,
which queues it and returns immediately. A background worker drains the
queue, persists each row in its own session and pushes it to the
recipient's notification stream.

  trigger ──notify()──▶ asyncio.Queue ──worker──▶ INSERT ──▶ hub.publish
                          (non-blocking)          (failure = logged + counted)

The inbox half (list / mark read / mark all read / clear) is ordinary
request-scoped CRUD against the same table.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.errors import BestEffortFailure, NotFound, Unauthorized
from app.core.events import RealtimeEventType, RealtimeHub, notifications_channel, realtime_hub
from app.core.identity import Actor
from app.core.metrics import NOTIFICATIONS_DELIVERED, NOTIFICATIONS_FAILED
from app.models.models import Notification, NotificationKind

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class NotificationIntent:
    recipient_id: uuid.UUID
    kind: NotificationKind
    title: str
    body: Optional[str] = None
    video_id: Optional[uuid.UUID] = None
    actor_id: Optional[uuid.UUID] = None
    queued_at: float = field(default_factory=time.time)


def serialize_notification(n: Notification) -> Dict[str, Any]:
    return {
        "id": str(n.id),
        "kind": n.kind.value,
        "title": n.title,
        "body": n.body,
        "video_id": str(n.video_id) if n.video_id else None,
        "actor_id": str(n.actor_id) if n.actor_id else None,
        "is_read": bool(n.is_read),
        "created_at": n.created_at,
    }


# ═══════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """Queue + single worker task. Started lazily on the first intent."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        hub: Optional[RealtimeHub] = None,
        maxsize: int = 10000,
    ):
        self._session_factory = session_factory or async_session_factory
        self._hub = hub or realtime_hub
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._stats = {
            "queued": 0,
            "delivered": 0,
            "failed": 0,
            "skipped_self": 0,
            "dropped": 0,
        }

    # ── Public API ───────────────────────────────────────────────────

    def notify(
        self,
        recipient_id: uuid.UUID,
        kind: NotificationKind,
        title: str,
        body: Optional[str] = None,
        video_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Queue one notification. Returns False when nothing was queued."""
        if actor_id is not None and recipient_id == actor_id:
            self._stats["skipped_self"] += 1
            return False

        self._ensure_worker()
        intent = NotificationIntent(
            recipient_id=recipient_id, kind=kind, title=title,
            body=body, video_id=video_id, actor_id=actor_id,
        )
        try:
            self._queue.put_nowait(intent)
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            NOTIFICATIONS_FAILED.labels(kind=kind.value).inc()
            logger.error(f"Notification queue full, dropped {kind.value} for {recipient_id}")
            return False

        self._stats["queued"] += 1
        return True

    async def drain(self):
        """Wait until every queued intent has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, timeout: float = 5.0):
        """Flush what is queued (bounded by timeout), then stop the worker."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Notification dispatcher stopped with {self._queue.qsize()} pending")
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "backlog": self._queue.qsize() if self._queue is not None else 0,
            "running": self._worker is not None and not self._worker.done(),
        }

    # ── Worker ───────────────────────────────────────────────────────

    def _ensure_worker(self):
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        while True:
            intent = await self._queue.get()
            try:
                await self._deliver(intent)
            except BestEffortFailure as e:
                logger.error(f"Notification dropped: {e.detail}")
            finally:
                self._queue.task_done()

    async def _deliver(self, intent: NotificationIntent):
        try:
            async with self._session_factory() as db:
                row = Notification(
                    recipient_id=intent.recipient_id,
                    actor_id=intent.actor_id,
                    kind=intent.kind,
                    title=intent.title,
                    body=intent.body,
                    video_id=intent.video_id,
                    is_read=False,
                )
                db.add(row)
                await db.commit()
                await db.refresh(row)
                payload = serialize_notification(row)
        except Exception as e:
            self._stats["failed"] += 1
            NOTIFICATIONS_FAILED.labels(kind=intent.kind.value).inc()
            raise BestEffortFailure(
                f"{intent.kind.value} for {intent.recipient_id} failed: {e}"
            ) from e

        self._stats["delivered"] += 1
        NOTIFICATIONS_DELIVERED.labels(kind=intent.kind.value).inc()
        await self._hub.publish(
            notifications_channel(intent.recipient_id),
            RealtimeEventType.NOTIFICATION_CREATED,
            payload,
        )


# ═══════════════════════════════════════════════════════════════════════
# Inbox
# ═══════════════════════════════════════════════════════════════════════

class NotificationService:
    """Recipient-side operations. Unread count is always derived."""

    def __init__(self, hub: Optional[RealtimeHub] = None):
        self._hub = hub or realtime_hub

    async def list_for(
        self,
        actor: Actor,
        db: AsyncSession,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        query = select(Notification).where(Notification.recipient_id == actor.account_id)
        if unread_only:
            query = query.where(Notification.is_read == False)  # noqa: E712
        query = query.order_by(Notification.created_at.desc()).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def unread_count(self, account_id: uuid.UUID, db: AsyncSession) -> int:
        return await db.scalar(
            select(func.count(Notification.id)).where(
                Notification.recipient_id == account_id,
                Notification.is_read == False,  # noqa: E712
            )
        ) or 0

    async def mark_read(self, actor: Actor, notification_id: uuid.UUID, db: AsyncSession) -> Notification:
        row = await db.get(Notification, notification_id)
        if row is None:
            raise NotFound("Notification not found")
        if row.recipient_id != actor.account_id:
            raise Unauthorized("Not your notification")

        if not row.is_read:
            row.is_read = True
            await db.commit()

        unread = await self.unread_count(actor.account_id, db)
        await self._hub.publish(
            notifications_channel(actor.account_id),
            RealtimeEventType.NOTIFICATION_READ,
            {"id": str(notification_id), "unread": unread},
        )
        return row

    async def mark_all_read(self, actor: Actor, db: AsyncSession) -> int:
        result = await db.execute(
            update(Notification)
            .where(
                Notification.recipient_id == actor.account_id,
                Notification.is_read == False,  # noqa: E712
            )
            .values(is_read=True)
        )
        await db.commit()
        affected = result.rowcount or 0

        await self._hub.publish(
            notifications_channel(actor.account_id),
            RealtimeEventType.NOTIFICATIONS_ALL_READ,
            {"affected": affected, "unread": 0},
        )
        return affected

    async def clear_all(self, actor: Actor, db: AsyncSession) -> int:
        result = await db.execute(
            delete(Notification).where(Notification.recipient_id == actor.account_id)
        )
        await db.commit()
        affected = result.rowcount or 0
        logger.info(f"Cleared {affected} notifications for {actor.account_id}")

        await self._hub.publish(
            notifications_channel(actor.account_id),
            RealtimeEventType.NOTIFICATIONS_CLEARED,
            {"affected": affected, "unread": 0},
        )
        return affected


notification_dispatcher = NotificationDispatcher(maxsize=settings.notification_queue_size)
notification_service = NotificationService()
