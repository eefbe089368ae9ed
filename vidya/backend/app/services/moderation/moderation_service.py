"""
Vidya Moderation Queue — staged-to-published state machine.

State machine per video:

    DRAFT ──submit (moderator)──────────────────────────▶ PUBLISHED
    DRAFT ──submit──▶ PENDING ──decide(approve=True)────▶ PUBLISHED
                              └─decide(approve=False)───▶ DECLINED (row purged)

Every transition out of PENDING is a single conditional statement
(``... WHERE id = :id AND state = 'pending'``), so two moderators racing on
the same submission produce exactly one outcome; the loser sees NotFound.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from sqlalchemy import and_, delete, func, or_, select, true, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.errors import DependencyFailure, NotFound, Unauthorized, ValidationError
from app.core.events import (
    FEED_CHANNEL, MODERATION_CHANNEL, RealtimeEventType, RealtimeHub,
    realtime_hub, video_channel,
)
from app.core.identity import Actor
from app.core.metrics import MODERATION_DECISIONS, SUBMISSIONS
from app.models.models import (
    Account, Comment, LikeEdge, Notification, NotificationKind,
    Video, VideoState, ViewEvent, Visibility,
)
from app.schemas.schemas import VideoEdit, VideoSubmit
from app.services.notifications.notification_service import (
    NotificationDispatcher, notification_dispatcher,
)

logger = logging.getLogger(__name__)
settings = get_settings()


# ═══════════════════════════════════════════════════════════════════════
# Transitions
# ═══════════════════════════════════════════════════════════════════════

def initial_state(actor: Actor) -> VideoState:
    """Moderators approve their own uploads; everyone else is staged."""
    return VideoState.PUBLISHED if actor.is_moderator else VideoState.PENDING


def next_state(current: VideoState, approve: bool) -> VideoState:
    if current != VideoState.PENDING:
        raise NotFound("Submission is no longer pending")
    return VideoState.PUBLISHED if approve else VideoState.DECLINED


@dataclass
class SubmissionResult:
    id: uuid.UUID
    state: VideoState


@dataclass
class DecisionResult:
    submission_id: uuid.UUID
    state: VideoState
    video_id: Optional[uuid.UUID] = None


# ═══════════════════════════════════════════════════════════════════════
# Validation helpers
# ═══════════════════════════════════════════════════════════════════════

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_title(title: Optional[str]) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError("Title is required")
    return cleaned


def validate_media_url(url: Optional[str], what: str = "media reference") -> str:
    cleaned = (url or "").strip()
    parsed = urlparse(cleaned)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"A valid {what} URL is required")
    return cleaned


def validate_schedule(visibility: Visibility, scheduled_at: Optional[datetime]) -> Optional[datetime]:
    if visibility != Visibility.SCHEDULED:
        return None
    if scheduled_at is None:
        raise ValidationError("Scheduled visibility requires a publish time")
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    if scheduled_at <= _utcnow():
        raise ValidationError("Scheduled publish time must be in the future")
    return scheduled_at


# ═══════════════════════════════════════════════════════════════════════
# Visibility
# ═══════════════════════════════════════════════════════════════════════

def _is_privileged(video_owner_id: uuid.UUID, viewer: Optional[Actor]) -> bool:
    return viewer is not None and (viewer.is_moderator or viewer.account_id == video_owner_id)


def is_released(video: Video, now: Optional[datetime] = None) -> bool:
    """Published and public, or scheduled with its publish time passed."""
    if video.state != VideoState.PUBLISHED:
        return False
    if video.visibility == Visibility.PUBLIC:
        return True
    if video.visibility == Visibility.SCHEDULED and video.scheduled_at is not None:
        scheduled_at = video.scheduled_at
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        return scheduled_at <= (now or _utcnow())
    return False


def can_view(video: Video, viewer: Optional[Actor]) -> bool:
    """Owners and moderators see every video; everyone else only released ones."""
    return _is_privileged(video.owner_id, viewer) or is_released(video)


def visible_clause(viewer: Optional[Actor]):
    """SQL form of ``can_view`` for list queries."""
    released = and_(
        Video.state == VideoState.PUBLISHED,
        or_(
            Video.visibility == Visibility.PUBLIC,
            and_(Video.visibility == Visibility.SCHEDULED, Video.scheduled_at <= _utcnow()),
        ),
    )
    if viewer is None:
        return released
    if viewer.is_moderator:
        return true()
    return or_(released, Video.owner_id == viewer.account_id)


async def load_visible_video(video_id: uuid.UUID, viewer: Optional[Actor], db: AsyncSession) -> Video:
    """The video if ``viewer`` may see it; NotFound otherwise, so hidden ids are not revealed."""
    video = await db.get(Video, video_id)
    if video is None or not can_view(video, viewer):
        raise NotFound("Video not found")
    return video


def _clean_optional_url(url: Optional[str], what: str) -> Optional[str]:
    if url is None or not url.strip():
        return None
    return validate_media_url(url, what)


def serialize_video(
    video: Video,
    owner: Optional[Account] = None,
    like_count: int = 0,
    liked: bool = False,
) -> Dict[str, Any]:
    return {
        "id": str(video.id),
        "owner_id": str(video.owner_id),
        "owner_name": owner.display_name if owner else None,
        "owner_avatar": owner.avatar_url if owner else None,
        "state": video.state.value,
        "title": video.title,
        "description": video.description,
        "media_url": video.media_url,
        "thumbnail_url": video.thumbnail_url,
        "visibility": video.visibility.value,
        "scheduled_at": video.scheduled_at,
        "view_count": video.view_count or 0,
        "like_count": like_count,
        "liked": liked,
        "submitted_at": video.submitted_at,
        "published_at": video.published_at,
    }


# ═══════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════

class ModerationService:
    """Owns every write that changes a video's publication state."""

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        hub: Optional[RealtimeHub] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self._dispatcher = dispatcher or notification_dispatcher
        self._hub = hub or realtime_hub
        self._session_factory = session_factory or async_session_factory

    # ── Submit ───────────────────────────────────────────────────────

    async def submit(self, actor: Actor, payload: VideoSubmit, db: AsyncSession) -> SubmissionResult:
        """Create a pending submission, or a published video for moderators."""
        title = validate_title(payload.title)
        media_url = validate_media_url(payload.media_url)
        thumbnail_url = _clean_optional_url(payload.thumbnail_url, "thumbnail")
        scheduled_at = validate_schedule(payload.visibility, payload.scheduled_at)
        state = initial_state(actor)

        video = Video(
            owner_id=actor.account_id,
            state=state,
            title=title,
            description=(payload.description or "").strip() or None,
            media_url=media_url,
            thumbnail_url=thumbnail_url,
            visibility=payload.visibility,
            scheduled_at=scheduled_at,
            view_count=0,
        )
        if state == VideoState.PUBLISHED:
            video.published_at = _utcnow()
            video.decided_by = actor.account_id

        db.add(video)
        try:
            await db.commit()
        except DBAPIError as e:
            await db.rollback()
            raise DependencyFailure(f"Could not store submission: {e}") from e
        await db.refresh(video)
        SUBMISSIONS.labels(state=state.value).inc()

        if state == VideoState.PUBLISHED:
            logger.info(f"Moderator {actor.account_id} published {video.id} directly")
            await self._hub.publish(
                FEED_CHANNEL, RealtimeEventType.VIDEO_PUBLISHED, serialize_video(video),
            )
            return SubmissionResult(id=video.id, state=state)

        logger.info(f"Submission {video.id} queued for review ({title!r} by {actor.account_id})")
        await self._hub.publish(
            MODERATION_CHANNEL,
            RealtimeEventType.SUBMISSION_QUEUED,
            {
                "submission_id": str(video.id),
                "title": title,
                "owner_id": str(actor.account_id),
                "owner_name": actor.display_name,
                "thumbnail_url": thumbnail_url,
            },
        )

        recipient_id = await self.find_moderation_recipient(db)
        if recipient_id is None:
            logger.warning(f"No moderator found; review notice for {video.id} skipped")
        else:
            self._dispatcher.notify(
                recipient_id,
                NotificationKind.UPLOAD_REVIEW,
                "New video awaiting review",
                f'{actor.display_name} submitted "{title}" for approval',
                video_id=video.id,
                actor_id=actor.account_id,
            )
        return SubmissionResult(id=video.id, state=state)

    async def find_moderation_recipient(self, db: AsyncSession) -> Optional[uuid.UUID]:
        """Configured recipient if it is a moderator, else the earliest moderator."""
        try:
            if settings.moderation_recipient_id:
                try:
                    configured = uuid.UUID(settings.moderation_recipient_id)
                except ValueError:
                    configured = None
                account = await db.get(Account, configured) if configured else None
                if account is not None and account.is_moderator:
                    return account.id
                logger.warning(
                    f"Configured moderation recipient {settings.moderation_recipient_id!r} "
                    "is not a moderator account; falling back"
                )
            return await db.scalar(
                select(Account.id)
                .where(Account.is_moderator == True)  # noqa: E712
                .order_by(Account.created_at.asc(), Account.id.asc())
                .limit(1)
            )
        except DBAPIError as e:
            logger.warning(f"Moderator lookup failed: {e}")
            return None

    # ── Decide ───────────────────────────────────────────────────────

    async def decide(
        self,
        actor: Actor,
        submission_id: uuid.UUID,
        approve: bool,
        db: AsyncSession,
    ) -> DecisionResult:
        """Approve or decline one pending submission, exactly once."""
        if not actor.is_moderator:
            raise Unauthorized("Only moderators can review submissions")

        submission = await db.get(Video, submission_id)
        if submission is None:
            raise NotFound("Submission not found")
        target = next_state(submission.state, approve)
        owner_id = submission.owner_id
        title = submission.title

        try:
            if target == VideoState.PUBLISHED:
                result = await db.execute(
                    update(Video)
                    .where(Video.id == submission_id, Video.state == VideoState.PENDING)
                    .values(
                        state=VideoState.PUBLISHED,
                        published_at=_utcnow(),
                        decided_by=actor.account_id,
                    )
                    .execution_options(synchronize_session=False)
                )
            else:
                result = await db.execute(
                    delete(Video)
                    .where(Video.id == submission_id, Video.state == VideoState.PENDING)
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount == 0:
                await db.rollback()
                MODERATION_DECISIONS.labels(outcome="lost_race").inc()
                raise NotFound("Submission was already decided")
            await db.commit()
        except DBAPIError as e:
            await db.rollback()
            logger.warning(f"Ambiguous commit deciding {submission_id}: {e}")
            decision = await self._reconcile_ambiguous(actor, submission_id, target)
        else:
            decision = DecisionResult(
                submission_id=submission_id,
                state=target,
                video_id=submission_id if target == VideoState.PUBLISHED else None,
            )

        MODERATION_DECISIONS.labels(outcome=decision.state.value).inc()
        logger.info(f"Submission {submission_id} → {decision.state.value} by {actor.account_id}")
        await self._after_decision(actor, decision, owner_id, title)
        return decision

    async def _reconcile_ambiguous(
        self,
        actor: Actor,
        submission_id: uuid.UUID,
        target: VideoState,
    ) -> DecisionResult:
        """Read back which rows actually persisted instead of retrying blindly."""
        try:
            async with self._session_factory() as fresh:
                row = await fresh.get(Video, submission_id)
                state = row.state if row is not None else None
                decided_by = row.decided_by if row is not None else None
        except DBAPIError as e:
            raise DependencyFailure(f"Could not confirm decision: {e}") from e

        if state == VideoState.PENDING:
            raise DependencyFailure("Decision was not applied; try again")
        if target == VideoState.PUBLISHED:
            if state == VideoState.PUBLISHED and decided_by == actor.account_id:
                return DecisionResult(submission_id, VideoState.PUBLISHED, submission_id)
            raise NotFound("Submission was already decided")
        if state is None:
            return DecisionResult(submission_id, VideoState.DECLINED, None)
        raise NotFound("Submission was already decided")

    async def _after_decision(
        self,
        actor: Actor,
        decision: DecisionResult,
        owner_id: uuid.UUID,
        title: str,
    ):
        approved = decision.state == VideoState.PUBLISHED
        if approved:
            self._dispatcher.notify(
                owner_id,
                NotificationKind.APPROVAL,
                "Video approved",
                f'Your video "{title}" has been approved and published',
                video_id=decision.submission_id,
                actor_id=actor.account_id,
            )
        else:
            self._dispatcher.notify(
                owner_id,
                NotificationKind.DECLINE,
                "Video declined",
                f'Your video "{title}" was not approved',
                actor_id=actor.account_id,
            )

        await self._hub.publish(
            MODERATION_CHANNEL,
            RealtimeEventType.SUBMISSION_DECIDED,
            {
                "submission_id": str(decision.submission_id),
                "state": decision.state.value,
                "decided_by": str(actor.account_id),
            },
        )
        if approved:
            await self._hub.publish(
                FEED_CHANNEL,
                RealtimeEventType.VIDEO_PUBLISHED,
                {"id": str(decision.submission_id), "title": title, "owner_id": str(owner_id)},
            )

    # ── Queue reads ──────────────────────────────────────────────────

    async def list_pending(self, actor: Actor, db: AsyncSession, limit: int = 200) -> List[Tuple[Video, Account]]:
        if not actor.is_moderator:
            raise Unauthorized("Only moderators can view the review queue")
        result = await db.execute(
            select(Video, Account)
            .join(Account, Account.id == Video.owner_id)
            .where(Video.state == VideoState.PENDING)
            .order_by(Video.submitted_at.desc())
            .limit(limit)
        )
        return [(v, a) for v, a in result.all()]

    async def pending_count(self, actor: Actor, db: AsyncSession) -> int:
        if not actor.is_moderator:
            raise Unauthorized("Only moderators can view the review queue")
        return await db.scalar(
            select(func.count(Video.id)).where(Video.state == VideoState.PENDING)
        ) or 0

    # ── Published videos ─────────────────────────────────────────────

    async def list_published(
        self,
        viewer: Optional[Actor],
        db: AsyncSession,
        page: int = 1,
        page_size: int = 24,
        owner_id: Optional[uuid.UUID] = None,
    ) -> List[Tuple[Video, Account]]:
        query = (
            select(Video, Account)
            .join(Account, Account.id == Video.owner_id)
            .where(Video.state == VideoState.PUBLISHED, visible_clause(viewer))
        )
        if owner_id is not None:
            query = query.where(Video.owner_id == owner_id)
        query = (
            query.order_by(Video.published_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await db.execute(query)
        return [(v, a) for v, a in result.all()]

    async def get_video(
        self,
        video_id: uuid.UUID,
        viewer: Optional[Actor],
        db: AsyncSession,
    ) -> Tuple[Video, Account]:
        row = (await db.execute(
            select(Video, Account)
            .join(Account, Account.id == Video.owner_id)
            .where(Video.id == video_id)
        )).first()
        if row is None:
            raise NotFound("Video not found")
        video, owner = row

        if not can_view(video, viewer):
            raise NotFound("Video not found")
        return video, owner

    async def edit_video(
        self,
        actor: Actor,
        video_id: uuid.UUID,
        changes: VideoEdit,
        db: AsyncSession,
    ) -> Video:
        video = await db.get(Video, video_id)
        if video is None:
            raise NotFound("Video not found")
        if video.owner_id != actor.account_id:
            raise Unauthorized("Only the owner can edit this video")

        fields = changes.model_dump(exclude_unset=True)
        if "title" in fields:
            video.title = validate_title(fields["title"])
        if "description" in fields:
            video.description = (fields["description"] or "").strip() or None
        if "thumbnail_url" in fields:
            video.thumbnail_url = _clean_optional_url(fields["thumbnail_url"], "thumbnail")
        if "visibility" in fields or "scheduled_at" in fields:
            visibility = fields.get("visibility") or video.visibility
            scheduled_at = fields.get("scheduled_at", video.scheduled_at)
            video.scheduled_at = validate_schedule(visibility, scheduled_at)
            video.visibility = visibility

        await db.commit()
        await db.refresh(video)

        payload = serialize_video(video)
        await self._hub.publish(video_channel(video.id), RealtimeEventType.VIDEO_UPDATED, payload)
        if video.state == VideoState.PUBLISHED:
            await self._hub.publish(FEED_CHANNEL, RealtimeEventType.VIDEO_UPDATED, payload)
        return video

    async def delete_video(self, actor: Actor, video_id: uuid.UUID, db: AsyncSession):
        video = await db.get(Video, video_id)
        if video is None:
            raise NotFound("Video not found")
        if video.owner_id != actor.account_id and not actor.is_moderator:
            raise Unauthorized("Only the owner or a moderator can delete this video")
        state = video.state

        await db.execute(delete(ViewEvent).where(ViewEvent.video_id == video_id))
        await db.execute(delete(LikeEdge).where(LikeEdge.video_id == video_id))
        await db.execute(delete(Comment).where(Comment.video_id == video_id))
        await db.execute(
            update(Notification)
            .where(Notification.video_id == video_id)
            .values(video_id=None)
        )
        await db.delete(video)
        await db.commit()
        logger.info(f"Video {video_id} deleted by {actor.account_id}")

        payload = {"id": str(video_id)}
        await self._hub.publish(video_channel(video_id), RealtimeEventType.VIDEO_DELETED, payload)
        if state == VideoState.PENDING:
            await self._hub.publish(MODERATION_CHANNEL, RealtimeEventType.VIDEO_DELETED, payload)
        else:
            await self._hub.publish(FEED_CHANNEL, RealtimeEventType.VIDEO_DELETED, payload)

    # ── Maintenance ──────────────────────────────────────────────────

    async def release_scheduled(self, db: AsyncSession) -> int:
        """Make scheduled videos whose publish time has passed public."""
        result = await db.execute(
            update(Video)
            .where(
                Video.visibility == Visibility.SCHEDULED,
                Video.scheduled_at <= _utcnow(),
            )
            .values(visibility=Visibility.PUBLIC)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        released = result.rowcount or 0
        if released:
            logger.info(f"Released {released} scheduled videos")
        return released


moderation_service = ModerationService()
