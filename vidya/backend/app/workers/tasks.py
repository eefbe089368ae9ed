"""
Vidya Celery Worker Tasks

Periodic maintenance that never sits on a request path:
- Releasing scheduled videos whose publish time has passed
- Reconciling stored view counters with their view_events rows
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from celery import Celery

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# ── Celery App ───────────────────────────────────────────────────────────

celery_app = Celery(
    "vidya",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=300,
    task_time_limit=600,
    task_default_queue="default",
    task_routes={
        "app.workers.tasks.release_scheduled_videos_task": {"queue": "maintenance"},
        "app.workers.tasks.reconcile_view_counts_task": {"queue": "maintenance"},
    },
)

# ── Periodic Tasks ───────────────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    "release-scheduled-videos": {
        "task": "app.workers.tasks.release_scheduled_videos_task",
        "schedule": float(settings.release_scheduled_interval_seconds),
    },
    "reconcile-view-counts": {
        "task": "app.workers.tasks.reconcile_view_counts_task",
        "schedule": float(settings.view_reconcile_interval_seconds),
    },
    "health-check-every-minute": {
        "task": "app.workers.tasks.health_check_task",
        "schedule": 60.0,
    },
}


def run_async(coro):
    """Run an async coroutine from sync Celery task."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_session(fn):
    from app.core.database import async_session_factory, engine

    try:
        async with async_session_factory() as db:
            return await fn(db)
    finally:
        # Pooled connections are bound to this task's event loop
        await engine.dispose()


# ── Tasks ────────────────────────────────────────────────────────────────

@celery_app.task(
    name="app.workers.tasks.release_scheduled_videos_task",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
)
def release_scheduled_videos_task(self):
    try:
        from app.services.moderation.moderation_service import moderation_service

        released = run_async(_with_session(moderation_service.release_scheduled))
        return {"released": released}
    except Exception as exc:
        logger.error(f"Scheduled release failed: {exc}")
        raise self.retry(exc=exc)


@celery_app.task(
    name="app.workers.tasks.reconcile_view_counts_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def reconcile_view_counts_task(self):
    """Rewrite any drifted videos.view_count from the view_events rows."""
    try:
        from app.services.engagement.engagement_service import engagement_service

        fixed = run_async(_with_session(engagement_service.reconcile_view_counts))
        logger.info(f"View counter reconciliation done: {fixed} corrected")
        return {"corrected": fixed}
    except Exception as exc:
        logger.error(f"View counter reconciliation failed: {exc}")
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="app.workers.tasks.health_check_task")
def health_check_task():
    """Periodic health check — ensures workers are alive."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
