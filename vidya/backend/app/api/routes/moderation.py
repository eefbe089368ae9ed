"""
Vidya API — Moderation Routes

The review queue and approve/decline decisions. Moderator only.
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.identity import Actor, get_current_actor, get_moderator, parse_uuid
from app.schemas.schemas import DecisionRequest, DecisionResponse, PendingCount, PendingVideoSchema
from app.services.moderation.moderation_service import moderation_service

router = APIRouter(prefix="/moderation", tags=["Moderation"])


@router.get("/queue", response_model=List[PendingVideoSchema])
async def review_queue(
    limit: int = Query(200, ge=1, le=500),
    actor: Actor = Depends(get_moderator),
    db: AsyncSession = Depends(get_db),
):
    rows = await moderation_service.list_pending(actor, db, limit=limit)
    return [
        PendingVideoSchema(
            id=str(v.id),
            title=v.title,
            description=v.description,
            media_url=v.media_url,
            thumbnail_url=v.thumbnail_url,
            visibility=v.visibility.value,
            scheduled_at=v.scheduled_at,
            submitted_at=v.submitted_at,
            owner_id=str(a.id),
            owner_name=a.display_name,
            owner_avatar=a.avatar_url,
        )
        for v, a in rows
    ]


@router.get("/queue/count", response_model=PendingCount)
async def review_queue_count(
    actor: Actor = Depends(get_moderator),
    db: AsyncSession = Depends(get_db),
):
    return PendingCount(pending=await moderation_service.pending_count(actor, db))


@router.post("/{submission_id}/decision", response_model=DecisionResponse)
async def decide_submission(
    submission_id: str,
    payload: DecisionRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Approve or decline a pending submission.

    Exactly one of two concurrent decisions wins; the other gets 404.
    """
    result = await moderation_service.decide(
        actor, parse_uuid(submission_id, "submission id"), payload.approve, db,
    )
    return DecisionResponse(
        submission_id=str(result.submission_id),
        state=result.state.value,
        video_id=str(result.video_id) if result.video_id else None,
    )
