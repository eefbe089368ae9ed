import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.core.database import async_session_factory
from app.core.errors import NotFound, ValidationError
from app.models.models import (
    FollowEdge, LikeEdge, Notification, NotificationKind, Video, ViewEvent, Visibility,
)
from app.services.engagement.engagement_service import ANON_PREFIX, resolve_viewer_key


async def _count(model, *where):
    async with async_session_factory() as session:
        return await session.scalar(select(func.count(model.id)).where(*where))


async def test_anonymous_viewer_counted_once(engagement, db, published_video):
    key = resolve_viewer_key(None, "browser-token-1")
    assert key == f"{ANON_PREFIX}browser-token-1"

    results = [await engagement.record_view(published_video, key, db) for _ in range(3)]
    assert [r.recorded for r in results] == [True, False, False]
    assert results[-1].views == 1

    assert await _count(ViewEvent, ViewEvent.video_id == published_video) == 1
    async with async_session_factory() as session:
        assert (await session.get(Video, published_video)).view_count == 1


async def test_signed_in_and_anonymous_viewers_are_distinct(engagement, db, published_video, meera):
    await engagement.record_view(published_video, resolve_viewer_key(meera, None), db, viewer=meera)
    result = await engagement.record_view(published_video, resolve_viewer_key(None, "tab-a"), db)
    assert result.views == 2


async def test_concurrent_duplicate_views(engagement, published_video):
    async def view():
        async with async_session_factory() as session:
            return await engagement.record_view(published_video, "anon:shared", session)

    await asyncio.gather(view(), view(), view())
    assert await _count(ViewEvent, ViewEvent.video_id == published_video) == 1


async def test_view_requires_a_viewer_key():
    with pytest.raises(ValidationError):
        resolve_viewer_key(None, "  ")


async def test_view_on_unknown_video(engagement, db, published_video):
    with pytest.raises(NotFound):
        await engagement.record_view(uuid.uuid4(), "anon:x", db)


async def test_reconcile_view_counts(engagement, db, published_video):
    await engagement.record_view(published_video, "anon:a", db)
    async with async_session_factory() as session:
        video = await session.get(Video, published_video)
        video.view_count = 42
        await session.commit()

    assert await engagement.reconcile_view_counts(db) == 1
    async with async_session_factory() as session:
        assert (await session.get(Video, published_video)).view_count == 1


async def test_like_then_unlike_notifies_once(engagement, dispatcher, db, published_video, meera, arjun):
    first = await engagement.toggle_like(published_video, meera, db)
    assert (first.liked, first.likes, first.created) == (True, 1, True)
    second = await engagement.toggle_like(published_video, meera, db)
    assert (second.liked, second.likes) == (False, 0)

    await dispatcher.drain()
    assert await _count(LikeEdge, LikeEdge.video_id == published_video) == 0
    assert await _count(
        Notification,
        Notification.recipient_id == arjun.account_id,
        Notification.kind == NotificationKind.LIKE,
    ) == 1


async def test_like_desired_state_is_idempotent(engagement, dispatcher, db, published_video, meera):
    await engagement.toggle_like(published_video, meera, db, desired=True)
    again = await engagement.toggle_like(published_video, meera, db, desired=True)
    assert (again.liked, again.likes, again.created) == (True, 1, False)

    off = await engagement.toggle_like(published_video, meera, db, desired=False)
    off_again = await engagement.toggle_like(published_video, meera, db, desired=False)
    assert (off.likes, off_again.likes, off_again.liked) == (0, 0, False)


async def test_self_like_does_not_notify(engagement, dispatcher, db, published_video, arjun):
    result = await engagement.toggle_like(published_video, arjun, db)
    assert result.liked

    await dispatcher.drain()
    assert await _count(Notification, Notification.recipient_id == arjun.account_id) == 0


async def test_cannot_follow_self(engagement, db, priya):
    with pytest.raises(ValidationError):
        await engagement.toggle_follow(priya, priya.account_id, db)


async def test_follow_toggle_and_notification(engagement, dispatcher, db, priya, meera):
    on = await engagement.toggle_follow(meera, priya.account_id, db)
    assert (on.following, on.followers) == (True, 1)
    assert await engagement.is_following(meera.account_id, priya.account_id, db)

    off = await engagement.toggle_follow(meera, priya.account_id, db)
    assert (off.following, off.followers) == (False, 0)

    await dispatcher.drain()
    assert await _count(
        Notification,
        Notification.recipient_id == priya.account_id,
        Notification.kind == NotificationKind.FOLLOW,
    ) == 1


async def test_follow_unknown_account(engagement, db, priya):
    with pytest.raises(NotFound):
        await engagement.toggle_follow(priya, uuid.uuid4(), db)


@pytest.fixture
async def hidden_videos(moderation, arjun, submission):
    """A private video and a scheduled one whose publish time is still ahead, both owned by arjun."""
    later = datetime.now(timezone.utc) + timedelta(days=2)
    async with async_session_factory() as session:
        private = await moderation.submit(arjun, submission("Prime Factors", visibility=Visibility.PRIVATE), session)
        scheduled = await moderation.submit(
            arjun, submission("Ratios", visibility=Visibility.SCHEDULED, scheduled_at=later), session,
        )
    return {"private": private.id, "scheduled": scheduled.id}


@pytest.mark.parametrize("which", ["private", "scheduled"])
async def test_strangers_cannot_engage_with_hidden_videos(
    engagement, dispatcher, db, hidden_videos, which, meera, arjun,
):
    video_id = hidden_videos[which]

    with pytest.raises(NotFound):
        await engagement.toggle_like(video_id, meera, db)
    with pytest.raises(NotFound):
        await engagement.record_view(video_id, resolve_viewer_key(None, "tab-z"), db)
    with pytest.raises(NotFound):
        await engagement.record_view(video_id, resolve_viewer_key(meera, None), db, viewer=meera)

    await dispatcher.drain()
    assert await _count(LikeEdge, LikeEdge.video_id == video_id) == 0
    assert await _count(ViewEvent, ViewEvent.video_id == video_id) == 0
    assert await _count(Notification, Notification.recipient_id == arjun.account_id) == 0


@pytest.mark.parametrize("which", ["private", "scheduled"])
async def test_owner_still_engages_with_hidden_videos(engagement, db, hidden_videos, which, arjun):
    video_id = hidden_videos[which]

    view = await engagement.record_view(video_id, resolve_viewer_key(arjun, None), db, viewer=arjun)
    like = await engagement.toggle_like(video_id, arjun, db)
    assert (view.recorded, like.liked) == (True, True)


async def test_scheduled_video_opens_up_once_its_time_passes(engagement, db, hidden_videos, meera):
    video_id = hidden_videos["scheduled"]
    async with async_session_factory() as session:
        video = await session.get(Video, video_id)
        video.scheduled_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await session.commit()

    assert (await engagement.toggle_like(video_id, meera, db)).liked


async def test_concurrent_likes_leave_one_edge(engagement, dispatcher, published_video, meera, arjun):
    async def like():
        async with async_session_factory() as session:
            return await engagement.toggle_like(published_video, meera, session, desired=True)

    results = await asyncio.gather(like(), like(), like())
    assert all(r.liked for r in results)
    assert sum(r.created for r in results) == 1

    await dispatcher.drain()
    assert await _count(LikeEdge, LikeEdge.video_id == published_video) == 1
    assert await _count(
        Notification,
        Notification.recipient_id == arjun.account_id,
        Notification.kind == NotificationKind.LIKE,
    ) == 1


async def test_concurrent_follows_leave_one_edge(engagement, dispatcher, priya, meera):
    async def follow():
        async with async_session_factory() as session:
            return await engagement.toggle_follow(meera, priya.account_id, session, desired=True)

    results = await asyncio.gather(follow(), follow(), follow())
    assert all(r.following for r in results)

    await dispatcher.drain()
    assert await _count(FollowEdge, FollowEdge.followed_id == priya.account_id) == 1
    assert await _count(
        Notification,
        Notification.recipient_id == priya.account_id,
        Notification.kind == NotificationKind.FOLLOW,
    ) == 1


@pytest.mark.parametrize("toggles", [1, 2, 3, 4, 5])
async def test_like_ends_on_odd_number_of_toggles(engagement, db, published_video, meera, toggles):
    for _ in range(toggles):
        result = await engagement.toggle_like(published_video, meera, db)

    assert result.liked is (toggles % 2 == 1)
    assert await engagement.is_liked(published_video, meera.account_id, db) is (toggles % 2 == 1)
    assert await _count(LikeEdge, LikeEdge.video_id == published_video) == toggles % 2


@pytest.mark.parametrize("toggles", [1, 2, 3, 4])
async def test_follow_ends_on_odd_number_of_toggles(engagement, db, priya, meera, toggles):
    for _ in range(toggles):
        result = await engagement.toggle_follow(meera, priya.account_id, db)

    assert result.following is (toggles % 2 == 1)
    assert await engagement.follower_count(priya.account_id, db) == toggles % 2


async def test_list_following_with_counts(engagement, moderation, db, published_video, submission, priya, arjun, meera):
    await engagement.toggle_follow(meera, priya.account_id, db, desired=True)
    await engagement.toggle_follow(meera, arjun.account_id, db, desired=True)
    await engagement.toggle_follow(priya, arjun.account_id, db, desired=True)
    await moderation.submit(arjun, submission("Fractions Revisited", visibility=Visibility.PRIVATE), db)
    # Pending submissions are not counted.
    await moderation.submit(priya, submission("Long Division"), db)

    following = await engagement.list_following(meera.account_id, db)
    by_name = {s.display_name: s for s in following}
    assert set(by_name) == {"Priya", "Arjun"}
    assert (by_name["Arjun"].followers, by_name["Arjun"].videos) == (2, 2)
    assert (by_name["Priya"].followers, by_name["Priya"].videos) == (1, 0)

    assert await engagement.list_following(arjun.account_id, db) == []


async def test_account_summary(engagement, db, published_video, arjun, meera):
    await engagement.toggle_follow(meera, arjun.account_id, db)
    summary = await engagement.account_summary(arjun.account_id, db)
    assert (summary.display_name, summary.followers, summary.videos) == ("Arjun", 1, 1)
    assert await engagement.video_count(meera.account_id, db) == 0

    with pytest.raises(NotFound):
        await engagement.account_summary(uuid.uuid4(), db)
