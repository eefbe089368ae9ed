"""
Vidya ORM Models — publication & engagement data layer.

Submissions and published videos share one table with a tagged ``state``;
engagement edges carry unique indexes that are the only dedup mechanism.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, Enum, ForeignKey, Index,
    Integer, String, Text, Uuid, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


# ═══════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════

class VideoState(str, enum.Enum):
    DRAFT = "draft"          # client-local, never persisted
    PENDING = "pending"
    PUBLISHED = "published"
    DECLINED = "declined"    # terminal, row is purged


class Visibility(str, enum.Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    SCHEDULED = "scheduled"


class NotificationKind(str, enum.Enum):
    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"
    UPLOAD_REVIEW = "upload_review"
    APPROVAL = "approval"
    DECLINE = "decline"


# ═══════════════════════════════════════════════════════════════════════
# Identity (read-only for the core)
# ═══════════════════════════════════════════════════════════════════════

class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_moderator", "is_moderator"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    display_name: Mapped[str] = mapped_column(String(128))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    is_moderator: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ═══════════════════════════════════════════════════════════════════════
# Videos
# ═══════════════════════════════════════════════════════════════════════

class Video(Base):
    """A submission (state=pending) or a published video (state=published)."""
    __tablename__ = "videos"
    __table_args__ = (
        Index("ix_videos_state_submitted", "state", "submitted_at"),
        Index("ix_videos_owner", "owner_id"),
        Index("ix_videos_visibility", "visibility"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"))
    state: Mapped[VideoState] = mapped_column(Enum(VideoState), default=VideoState.PENDING)

    title: Mapped[str] = mapped_column(String(512))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_url: Mapped[str] = mapped_column(String(1024))
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    visibility: Mapped[Visibility] = mapped_column(Enum(Visibility), default=Visibility.PUBLIC)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Re-derived from view_events; never incremented in place
    view_count: Mapped[int] = mapped_column(Integer, default=0)

    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("accounts.id"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# ═══════════════════════════════════════════════════════════════════════
# Engagement
# ═══════════════════════════════════════════════════════════════════════

class ViewEvent(Base):
    __tablename__ = "view_events"
    __table_args__ = (
        Index("ix_view_events_video_viewer", "video_id", "viewer_key", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("videos.id", ondelete="CASCADE"))
    # account id when authenticated, "anon:<token>" otherwise
    viewer_key: Mapped[str] = mapped_column(String(256))
    account_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("accounts.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LikeEdge(Base):
    __tablename__ = "like_edges"
    __table_args__ = (
        Index("ix_like_edges_video_account", "video_id", "account_id", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("videos.id", ondelete="CASCADE"))
    account_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FollowEdge(Base):
    __tablename__ = "follow_edges"
    __table_args__ = (
        Index("ix_follow_edges_pair", "follower_id", "followed_id", unique=True),
        Index("ix_follow_edges_followed", "followed_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    follower_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"))
    followed_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Comment(Base):
    """Comment on a published video; replies point at their parent."""
    __tablename__ = "comments"
    __table_args__ = (
        Index("ix_comments_video_id", "video_id"),
        Index("ix_comments_parent_id", "parent_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("videos.id", ondelete="CASCADE"))
    author_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"))
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("comments.id", ondelete="CASCADE"), nullable=True)
    content: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ═══════════════════════════════════════════════════════════════════════
# Notifications
# ═══════════════════════════════════════════════════════════════════════

class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_read", "recipient_id", "is_read"),
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("accounts.id"))
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("accounts.id"), nullable=True)
    kind: Mapped[NotificationKind] = mapped_column(Enum(NotificationKind))
    title: Mapped[str] = mapped_column(String(256))
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("videos.id", ondelete="SET NULL"), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
