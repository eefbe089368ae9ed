"""
Vidya API — Video Routes

Submission, browsing, owner edits and deletion.
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.identity import Actor, get_current_actor, get_optional_actor, parse_uuid
from app.schemas.schemas import SubmissionResponse, VideoEdit, VideoSchema, VideoSubmit
from app.services.engagement.engagement_service import engagement_service
from app.services.moderation.moderation_service import moderation_service, serialize_video

router = APIRouter(prefix="/videos", tags=["Videos"])


async def _video_schema(video, owner, viewer: Optional[Actor], db: AsyncSession) -> VideoSchema:
    likes = await engagement_service.like_count(video.id, db)
    liked = viewer is not None and await engagement_service.is_liked(video.id, viewer.account_id, db)
    return VideoSchema(**serialize_video(video, owner, like_count=likes, liked=liked))


@router.post("", response_model=SubmissionResponse)
async def submit_video(
    payload: VideoSubmit,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Submit a video; moderators publish directly, everyone else queues for review."""
    result = await moderation_service.submit(actor, payload, db)
    return SubmissionResponse(id=str(result.id), state=result.state.value)


@router.get("", response_model=List[VideoSchema])
async def list_videos(
    page: int = Query(1, ge=1),
    page_size: int = Query(24, ge=1, le=100),
    owner_id: Optional[str] = None,
    viewer: Optional[Actor] = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
):
    owner_uuid = parse_uuid(owner_id, "owner id") if owner_id else None
    rows = await moderation_service.list_published(
        viewer, db, page=page, page_size=page_size, owner_id=owner_uuid,
    )
    return [await _video_schema(v, a, viewer, db) for v, a in rows]


@router.get("/{video_id}", response_model=VideoSchema)
async def get_video(
    video_id: str,
    viewer: Optional[Actor] = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
):
    video, owner = await moderation_service.get_video(parse_uuid(video_id, "video id"), viewer, db)
    return await _video_schema(video, owner, viewer, db)


@router.patch("/{video_id}", response_model=VideoSchema)
async def edit_video(
    video_id: str,
    changes: VideoEdit,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    vid = parse_uuid(video_id, "video id")
    await moderation_service.edit_video(actor, vid, changes, db)
    video, owner = await moderation_service.get_video(vid, actor, db)
    return await _video_schema(video, owner, actor, db)


@router.delete("/{video_id}")
async def delete_video(
    video_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    await moderation_service.delete_video(actor, parse_uuid(video_id, "video id"), db)
    return {"deleted": True, "id": video_id}
