"""
Vidya API Schemas — Pydantic v2 models for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.models import Visibility


# ═══════════════════════════════════════════════════════════════════════
# Videos & Moderation
# ═══════════════════════════════════════════════════════════════════════

class VideoSubmit(BaseModel):
    title: str = Field(..., max_length=512)
    description: Optional[str] = Field(None, max_length=10000)
    media_url: str = Field(..., max_length=1024, description="Durable URL returned by /uploads")
    thumbnail_url: Optional[str] = Field(None, max_length=1024)
    visibility: Visibility = Visibility.PUBLIC
    scheduled_at: Optional[datetime] = None


class VideoEdit(BaseModel):
    title: Optional[str] = Field(None, max_length=512)
    description: Optional[str] = Field(None, max_length=10000)
    thumbnail_url: Optional[str] = Field(None, max_length=1024)
    visibility: Optional[Visibility] = None
    scheduled_at: Optional[datetime] = None


class SubmissionResponse(BaseModel):
    id: str
    state: str


class DecisionRequest(BaseModel):
    approve: bool


class DecisionResponse(BaseModel):
    submission_id: str
    state: str
    video_id: Optional[str] = None


class VideoSchema(BaseModel):
    id: str
    owner_id: str
    owner_name: Optional[str] = None
    owner_avatar: Optional[str] = None
    state: str
    title: str
    description: Optional[str] = None
    media_url: str
    thumbnail_url: Optional[str] = None
    visibility: str
    scheduled_at: Optional[datetime] = None
    view_count: int = 0
    like_count: int = 0
    liked: bool = False
    submitted_at: Optional[datetime] = None
    published_at: Optional[datetime] = None


class PendingVideoSchema(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    media_url: str
    thumbnail_url: Optional[str] = None
    visibility: str
    scheduled_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    owner_id: str
    owner_name: Optional[str] = None
    owner_avatar: Optional[str] = None


class PendingCount(BaseModel):
    pending: int


# ═══════════════════════════════════════════════════════════════════════
# Engagement
# ═══════════════════════════════════════════════════════════════════════

class ViewResponse(BaseModel):
    video_id: str
    recorded: bool
    views: int


class LikeRequest(BaseModel):
    # Desired state as observed by the client; omit for a plain toggle
    liked: Optional[bool] = None


class LikeResponse(BaseModel):
    video_id: str
    liked: bool
    likes: int


class FollowRequest(BaseModel):
    following: Optional[bool] = None


class FollowResponse(BaseModel):
    account_id: str
    following: bool
    followers: int


class AccountSummarySchema(BaseModel):
    id: str
    display_name: str
    avatar_url: Optional[str] = None
    followers: int = 0
    videos: int = 0


class AccountProfileSchema(AccountSummarySchema):
    following: bool = False


# ═══════════════════════════════════════════════════════════════════════
# Notifications
# ═══════════════════════════════════════════════════════════════════════

class NotificationSchema(BaseModel):
    id: str
    kind: str
    title: str
    body: Optional[str] = None
    video_id: Optional[str] = None
    actor_id: Optional[str] = None
    is_read: bool = False
    created_at: Optional[datetime] = None


class UnreadCount(BaseModel):
    unread: int


class BulkResult(BaseModel):
    affected: int


# ═══════════════════════════════════════════════════════════════════════
# Comments
# ═══════════════════════════════════════════════════════════════════════

class CommentCreate(BaseModel):
    content: str = Field(..., max_length=5000)
    parent_id: Optional[str] = None


class CommentSchema(BaseModel):
    id: str
    video_id: str
    author_id: str
    author_name: Optional[str] = None
    author_avatar: Optional[str] = None
    parent_id: Optional[str] = None
    content: str
    created_at: Optional[datetime] = None
    replies: List["CommentSchema"] = []


CommentSchema.model_rebuild()


# ═══════════════════════════════════════════════════════════════════════
# Uploads
# ═══════════════════════════════════════════════════════════════════════

class UploadResponse(BaseModel):
    url: str
    key: str
    size: int
    content_type: Optional[str] = None
