"""
Vidya API — Comment Routes
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.identity import Actor, get_current_actor, get_optional_actor, parse_uuid
from app.schemas.schemas import CommentCreate, CommentSchema
from app.services.comments.comment_service import comment_service, serialize_comment

router = APIRouter(prefix="/videos/{video_id}/comments", tags=["Comments"])


@router.get("", response_model=List[CommentSchema])
async def list_comments(
    video_id: str,
    viewer: Optional[Actor] = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
):
    """Comment thread for a video, top-level comments newest first."""
    return await comment_service.list_thread(parse_uuid(video_id, "video id"), db, viewer=viewer)


@router.post("", response_model=CommentSchema)
async def add_comment(
    video_id: str,
    payload: CommentCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    parent_id = parse_uuid(payload.parent_id, "parent comment id") if payload.parent_id else None
    comment = await comment_service.add_comment(
        actor, parse_uuid(video_id, "video id"), payload.content, db, parent_id=parent_id,
    )
    data = serialize_comment(comment)
    data["author_name"] = actor.display_name
    data["author_avatar"] = actor.avatar_url
    return CommentSchema(**data)
