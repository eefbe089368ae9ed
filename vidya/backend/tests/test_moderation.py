import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.core.database import async_session_factory
from app.core.errors import NotFound, Unauthorized, ValidationError
from app.core.events import MODERATION_CHANNEL
from app.models.models import Notification, NotificationKind, Video, VideoState, Visibility
from app.services.moderation.moderation_service import ModerationService, next_state
from app.services.notifications.notification_service import NotificationDispatcher


async def _notifications(recipient_id, kind=None):
    async with async_session_factory() as session:
        query = select(Notification).where(Notification.recipient_id == recipient_id)
        if kind is not None:
            query = query.where(Notification.kind == kind)
        return list((await session.execute(query)).scalars().all())


async def test_submit_then_approve_publishes_and_notifies(moderation, dispatcher, db, priya, arjun, submission):
    result = await moderation.submit(priya, submission(), db)
    assert result.state == VideoState.PENDING

    await dispatcher.drain()
    reviews = await _notifications(arjun.account_id, NotificationKind.UPLOAD_REVIEW)
    assert len(reviews) == 1
    assert reviews[0].video_id == result.id

    pending = await moderation.list_pending(arjun, db)
    assert [(v.title, v.owner_id) for v, _ in pending] == [("Intro to Fractions", priya.account_id)]

    decision = await moderation.decide(arjun, result.id, True, db)
    assert decision.state == VideoState.PUBLISHED
    assert decision.video_id == result.id

    await dispatcher.drain()
    assert await moderation.pending_count(arjun, db) == 0
    async with async_session_factory() as session:
        video = await session.get(Video, result.id)
        assert video.state == VideoState.PUBLISHED
        assert video.title == "Intro to Fractions"
        assert video.decided_by == arjun.account_id
    approvals = await _notifications(priya.account_id, NotificationKind.APPROVAL)
    assert len(approvals) == 1
    assert approvals[0].video_id == result.id


async def test_moderator_submission_bypasses_queue(moderation, dispatcher, db, arjun, submission):
    result = await moderation.submit(arjun, submission("Long Division"), db)
    assert result.state == VideoState.PUBLISHED

    await dispatcher.drain()
    assert await moderation.pending_count(arjun, db) == 0
    assert await _notifications(arjun.account_id) == []


async def test_decline_removes_submission(moderation, dispatcher, db, priya, arjun, submission):
    result = await moderation.submit(priya, submission(), db)
    decision = await moderation.decide(arjun, result.id, False, db)
    assert decision.state == VideoState.DECLINED
    assert decision.video_id is None

    await dispatcher.drain()
    async with async_session_factory() as session:
        assert await session.get(Video, result.id) is None
    declines = await _notifications(priya.account_id, NotificationKind.DECLINE)
    assert len(declines) == 1
    assert declines[0].video_id is None


async def test_non_moderator_cannot_decide(moderation, db, priya, meera, submission):
    result = await moderation.submit(priya, submission(), db)
    with pytest.raises(Unauthorized):
        await moderation.decide(meera, result.id, True, db)
    with pytest.raises(Unauthorized):
        await moderation.list_pending(meera, db)

    async with async_session_factory() as session:
        assert (await session.get(Video, result.id)).state == VideoState.PENDING


async def test_second_decision_is_not_found(moderation, db, priya, arjun, submission):
    result = await moderation.submit(priya, submission(), db)
    await moderation.decide(arjun, result.id, True, db)
    with pytest.raises(NotFound):
        await moderation.decide(arjun, result.id, False, db)


async def test_concurrent_approvals_publish_exactly_once(moderation, dispatcher, priya, arjun, account_factory, submission):
    other = await account_factory("Kavya", is_moderator=True)
    async with async_session_factory() as session:
        result = await moderation.submit(priya, submission(), session)

    async def approve(actor):
        async with async_session_factory() as session:
            return await moderation.decide(actor, result.id, True, session)

    outcomes = await asyncio.gather(approve(arjun), approve(other), return_exceptions=True)
    wins = [o for o in outcomes if not isinstance(o, Exception)]
    losses = [o for o in outcomes if isinstance(o, Exception)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert isinstance(losses[0], NotFound)

    await dispatcher.drain()
    async with async_session_factory() as session:
        published = await session.scalar(
            select(func.count(Video.id)).where(Video.state == VideoState.PUBLISHED)
        )
    assert published == 1
    assert len(await _notifications(priya.account_id, NotificationKind.APPROVAL)) == 1


async def test_notification_failure_does_not_fail_decision(hub, db, priya, arjun, submission):
    def broken_factory():
        raise RuntimeError("notification store offline")

    dispatcher = NotificationDispatcher(session_factory=broken_factory, hub=hub)
    service = ModerationService(dispatcher=dispatcher, hub=hub)
    try:
        result = await service.submit(priya, submission(), db)
        decision = await service.decide(arjun, result.id, True, db)
        await dispatcher.drain()
    finally:
        await dispatcher.stop()

    assert decision.state == VideoState.PUBLISHED
    assert dispatcher.get_stats()["failed"] == 2


async def test_submit_validation(moderation, db, priya, submission):
    with pytest.raises(ValidationError):
        await moderation.submit(priya, submission("   "), db)
    with pytest.raises(ValidationError):
        await moderation.submit(priya, submission(media_url="not a url"), db)
    with pytest.raises(ValidationError):
        await moderation.submit(
            priya,
            submission(
                visibility=Visibility.SCHEDULED,
                scheduled_at=datetime.now(timezone.utc) - timedelta(hours=1),
            ),
            db,
        )


async def test_queue_events_reach_moderation_channel(moderation, hub, db, priya, arjun, submission):
    result = await moderation.submit(priya, submission(), db)
    await moderation.decide(arjun, result.id, True, db)

    kinds = [e.event_type for e in hub.buffered([MODERATION_CHANNEL])]
    assert kinds == ["SUBMISSION_QUEUED", "SUBMISSION_DECIDED"]


async def test_owner_edit_and_delete(moderation, db, priya, meera, arjun, submission):
    from app.schemas.schemas import VideoEdit

    result = await moderation.submit(priya, submission(), db)
    with pytest.raises(Unauthorized):
        await moderation.edit_video(meera, result.id, VideoEdit(title="Hijacked"), db)

    edited = await moderation.edit_video(priya, result.id, VideoEdit(title="Fractions, Part 1"), db)
    assert edited.title == "Fractions, Part 1"

    with pytest.raises(Unauthorized):
        await moderation.delete_video(meera, result.id, db)
    await moderation.delete_video(arjun, result.id, db)
    with pytest.raises(NotFound):
        await moderation.get_video(result.id, arjun, db)


async def test_release_scheduled(moderation, db, arjun, submission):
    later = datetime.now(timezone.utc) + timedelta(minutes=5)
    result = await moderation.submit(
        arjun, submission(visibility=Visibility.SCHEDULED, scheduled_at=later), db,
    )
    assert await moderation.release_scheduled(db) == 0

    async with async_session_factory() as session:
        video = await session.get(Video, result.id)
        video.scheduled_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await session.commit()

    assert await moderation.release_scheduled(db) == 1


async def test_transition_function():
    assert next_state(VideoState.PENDING, True) == VideoState.PUBLISHED
    assert next_state(VideoState.PENDING, False) == VideoState.DECLINED
    with pytest.raises(NotFound):
        next_state(VideoState.PUBLISHED, True)
