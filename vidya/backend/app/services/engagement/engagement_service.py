"""
Vidya Engagement Ledger — views, likes and follows.

Raw engagement rows are the source of truth:
  - view_events   unique (video_id, viewer_key)    → videos.view_count = count(*)
  - like_edges    unique (video_id, account_id)    → like count computed on read
  - follow_edges  unique (follower_id, followed_id)→ follower count computed on read

Unique indexes are the only dedup mechanism. A duplicate insert from a racing
tab is a ConflictIgnored outcome, reported as success, never as an error.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictIgnored, NotFound, ValidationError
from app.core.events import RealtimeEventType, RealtimeHub, realtime_hub, video_channel
from app.core.identity import Actor
from app.core.metrics import ENGAGEMENT_WRITES
from app.models.models import (
    Account, FollowEdge, LikeEdge, NotificationKind, Video, VideoState, ViewEvent,
)
from app.services.moderation.moderation_service import load_visible_video
from app.services.notifications.notification_service import (
    NotificationDispatcher, notification_dispatcher,
)

logger = logging.getLogger(__name__)

ANON_PREFIX = "anon:"
MAX_TOKEN_LENGTH = 128


@dataclass
class ViewResult:
    video_id: uuid.UUID
    recorded: bool
    views: int


@dataclass
class LikeResult:
    video_id: uuid.UUID
    liked: bool
    likes: int
    created: bool = False


@dataclass
class FollowResult:
    account_id: uuid.UUID
    following: bool
    followers: int
    created: bool = False


@dataclass
class AccountSummary:
    account_id: uuid.UUID
    display_name: str
    avatar_url: Optional[str]
    followers: int
    videos: int


def resolve_viewer_key(actor: Optional[Actor], anonymous_token: Optional[str]) -> str:
    """Account id when signed in, otherwise the browser's durable anonymous token."""
    if actor is not None:
        return str(actor.account_id)
    token = (anonymous_token or "").strip()
    if not token:
        raise ValidationError("A viewer token is required for anonymous views")
    if len(token) > MAX_TOKEN_LENGTH:
        raise ValidationError("Viewer token is too long")
    return f"{ANON_PREFIX}{token}"


class EngagementService:

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        hub: Optional[RealtimeHub] = None,
    ):
        self._dispatcher = dispatcher or notification_dispatcher
        self._hub = hub or realtime_hub

    async def _published_video(self, video_id: uuid.UUID, viewer: Optional[Actor], db: AsyncSession) -> Video:
        """A published video ``viewer`` may see; private and unreleased ones are NotFound to strangers."""
        video = await load_visible_video(video_id, viewer, db)
        if video.state != VideoState.PUBLISHED:
            raise NotFound("Video not found")
        return video

    async def _insert_once(self, row, db: AsyncSession):
        """Insert a row guarded by a unique index; a duplicate raises ConflictIgnored."""
        db.add(row)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise ConflictIgnored(f"{type(row).__name__} already exists") from e

    # ── Views ────────────────────────────────────────────────────────

    async def record_view(
        self,
        video_id: uuid.UUID,
        viewer_key: str,
        db: AsyncSession,
        viewer: Optional[Actor] = None,
    ) -> ViewResult:
        """Count a viewer once per video; repeats are silent no-ops."""
        video = await self._published_video(video_id, viewer, db)
        account_id = viewer.account_id if viewer is not None else None
        current_views = video.view_count or 0

        existing = await db.scalar(
            select(ViewEvent.id).where(
                ViewEvent.video_id == video_id,
                ViewEvent.viewer_key == viewer_key,
            )
        )
        if existing is not None:
            ENGAGEMENT_WRITES.labels(kind="view", result="duplicate").inc()
            return ViewResult(video_id=video_id, recorded=False, views=current_views)

        try:
            await self._insert_once(
                ViewEvent(video_id=video_id, viewer_key=viewer_key, account_id=account_id), db,
            )
            recorded = True
        except ConflictIgnored as e:
            recorded = False
            logger.debug(f"View on {video_id} already counted: {e.detail}")

        views = await self.recount_views(video_id, db)
        ENGAGEMENT_WRITES.labels(kind="view", result="recorded" if recorded else "duplicate").inc()
        if recorded:
            await self._hub.publish(
                video_channel(video_id),
                RealtimeEventType.VIEWS_CHANGED,
                {"video_id": str(video_id), "views": views},
            )
        return ViewResult(video_id=video_id, recorded=recorded, views=views)

    async def recount_views(self, video_id: uuid.UUID, db: AsyncSession) -> int:
        """Write the exact row count back to videos.view_count."""
        views = await db.scalar(
            select(func.count(ViewEvent.id)).where(ViewEvent.video_id == video_id)
        ) or 0
        await db.execute(
            update(Video)
            .where(Video.id == video_id)
            .values(view_count=views)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return views

    async def reconcile_view_counts(self, db: AsyncSession) -> int:
        """Recount every video whose stored counter drifted from its rows."""
        counts = (
            select(ViewEvent.video_id, func.count(ViewEvent.id).label("n"))
            .group_by(ViewEvent.video_id)
            .subquery()
        )
        result = await db.execute(
            select(Video.id, Video.view_count, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.video_id == Video.id)
        )
        fixed = 0
        for vid, stored, actual in result.all():
            if (stored or 0) != actual:
                await db.execute(
                    update(Video)
                    .where(Video.id == vid)
                    .values(view_count=actual)
                    .execution_options(synchronize_session=False)
                )
                fixed += 1
        await db.commit()
        if fixed:
            logger.info(f"Reconciled view counters on {fixed} videos")
        return fixed

    # ── Likes ────────────────────────────────────────────────────────

    async def like_count(self, video_id: uuid.UUID, db: AsyncSession) -> int:
        return await db.scalar(
            select(func.count(LikeEdge.id)).where(LikeEdge.video_id == video_id)
        ) or 0

    async def is_liked(self, video_id: uuid.UUID, account_id: uuid.UUID, db: AsyncSession) -> bool:
        edge = await db.scalar(
            select(LikeEdge.id).where(
                LikeEdge.video_id == video_id,
                LikeEdge.account_id == account_id,
            )
        )
        return edge is not None

    async def toggle_like(
        self,
        video_id: uuid.UUID,
        actor: Actor,
        db: AsyncSession,
        desired: Optional[bool] = None,
    ) -> LikeResult:
        """
        Flip the like edge, or move it to ``desired`` when the client says
        which state it observed. Only a newly created edge notifies the owner.
        """
        video = await self._published_video(video_id, actor, db)
        owner_id = video.owner_id
        title = video.title

        currently = await self.is_liked(video_id, actor.account_id, db)
        want = (not currently) if desired is None else desired
        created = False

        if want and not currently:
            try:
                await self._insert_once(LikeEdge(video_id=video_id, account_id=actor.account_id), db)
                created = True
            except ConflictIgnored as e:
                logger.debug(f"Like on {video_id} already present: {e.detail}")
        elif not want and currently:
            await db.execute(
                delete(LikeEdge).where(
                    LikeEdge.video_id == video_id,
                    LikeEdge.account_id == actor.account_id,
                )
            )
            await db.commit()

        likes = await self.like_count(video_id, db)
        ENGAGEMENT_WRITES.labels(
            kind="like", result="created" if created else ("removed" if currently and not want else "noop"),
        ).inc()

        if created:
            self._dispatcher.notify(
                owner_id,
                NotificationKind.LIKE,
                "New like",
                f'{actor.display_name} liked your video "{title}"',
                video_id=video_id,
                actor_id=actor.account_id,
            )
        if want != currently:
            await self._hub.publish(
                video_channel(video_id),
                RealtimeEventType.LIKES_CHANGED,
                {"video_id": str(video_id), "likes": likes},
            )
        return LikeResult(video_id=video_id, liked=want, likes=likes, created=created)

    # ── Follows ──────────────────────────────────────────────────────

    async def follower_count(self, account_id: uuid.UUID, db: AsyncSession) -> int:
        return await db.scalar(
            select(func.count(FollowEdge.id)).where(FollowEdge.followed_id == account_id)
        ) or 0

    async def is_following(self, follower_id: uuid.UUID, followed_id: uuid.UUID, db: AsyncSession) -> bool:
        edge = await db.scalar(
            select(FollowEdge.id).where(
                FollowEdge.follower_id == follower_id,
                FollowEdge.followed_id == followed_id,
            )
        )
        return edge is not None

    async def video_count(self, account_id: uuid.UUID, db: AsyncSession) -> int:
        """Published videos owned by the account."""
        return await db.scalar(
            select(func.count(Video.id)).where(
                Video.owner_id == account_id,
                Video.state == VideoState.PUBLISHED,
            )
        ) or 0

    def _summary_query(self):
        followers = (
            select(func.count(FollowEdge.id))
            .where(FollowEdge.followed_id == Account.id)
            .correlate(Account)
            .scalar_subquery()
        )
        videos = (
            select(func.count(Video.id))
            .where(Video.owner_id == Account.id, Video.state == VideoState.PUBLISHED)
            .correlate(Account)
            .scalar_subquery()
        )
        return select(Account, followers, videos)

    async def account_summary(self, account_id: uuid.UUID, db: AsyncSession) -> AccountSummary:
        row = (await db.execute(self._summary_query().where(Account.id == account_id))).first()
        if row is None:
            raise NotFound("Account not found")
        account, followers, videos = row
        return AccountSummary(account.id, account.display_name, account.avatar_url, followers or 0, videos or 0)

    async def list_following(self, follower_id: uuid.UUID, db: AsyncSession) -> List[AccountSummary]:
        """Accounts ``follower_id`` follows, most recently followed first, with counts from rows."""
        result = await db.execute(
            self._summary_query()
            .join(FollowEdge, FollowEdge.followed_id == Account.id)
            .where(FollowEdge.follower_id == follower_id)
            .order_by(FollowEdge.created_at.desc(), Account.display_name.asc())
        )
        return [
            AccountSummary(a.id, a.display_name, a.avatar_url, followers or 0, videos or 0)
            for a, followers, videos in result.all()
        ]

    async def toggle_follow(
        self,
        actor: Actor,
        followed_id: uuid.UUID,
        db: AsyncSession,
        desired: Optional[bool] = None,
    ) -> FollowResult:
        if followed_id == actor.account_id:
            raise ValidationError("You cannot follow yourself")
        if await db.get(Account, followed_id) is None:
            raise NotFound("Account not found")

        currently = await self.is_following(actor.account_id, followed_id, db)
        want = (not currently) if desired is None else desired
        created = False

        if want and not currently:
            try:
                await self._insert_once(FollowEdge(follower_id=actor.account_id, followed_id=followed_id), db)
                created = True
            except ConflictIgnored as e:
                logger.debug(f"Follow of {followed_id} already present: {e.detail}")
        elif not want and currently:
            await db.execute(
                delete(FollowEdge).where(
                    FollowEdge.follower_id == actor.account_id,
                    FollowEdge.followed_id == followed_id,
                )
            )
            await db.commit()

        followers = await self.follower_count(followed_id, db)
        ENGAGEMENT_WRITES.labels(
            kind="follow", result="created" if created else ("removed" if currently and not want else "noop"),
        ).inc()

        if created:
            self._dispatcher.notify(
                followed_id,
                NotificationKind.FOLLOW,
                "New follower",
                f"{actor.display_name} started following you",
                actor_id=actor.account_id,
            )
        return FollowResult(account_id=followed_id, following=want, followers=followers, created=created)


engagement_service = EngagementService()
