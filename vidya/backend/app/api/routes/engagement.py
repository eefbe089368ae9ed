"""
Vidya API — Engagement Routes

Views, likes and follows. Duplicate writes from racing tabs come back as
normal 200 responses carrying the current state.
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.identity import Actor, get_current_actor, get_optional_actor, parse_uuid
from app.schemas.schemas import (
    AccountProfileSchema, AccountSummarySchema, FollowRequest, FollowResponse,
    LikeRequest, LikeResponse, ViewResponse,
)
from app.services.engagement.engagement_service import (
    AccountSummary, engagement_service, resolve_viewer_key,
)

router = APIRouter(tags=["Engagement"])


@router.post("/videos/{video_id}/views", response_model=ViewResponse)
async def record_view(
    video_id: str,
    x_viewer_token: Optional[str] = Header(None),
    viewer: Optional[Actor] = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
):
    viewer_key = resolve_viewer_key(viewer, x_viewer_token)
    result = await engagement_service.record_view(
        parse_uuid(video_id, "video id"),
        viewer_key,
        db,
        viewer=viewer,
    )
    return ViewResponse(video_id=str(result.video_id), recorded=result.recorded, views=result.views)


@router.post("/videos/{video_id}/like", response_model=LikeResponse)
async def toggle_like(
    video_id: str,
    payload: Optional[LikeRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    desired = payload.liked if payload else None
    result = await engagement_service.toggle_like(
        parse_uuid(video_id, "video id"), actor, db, desired=desired,
    )
    return LikeResponse(video_id=str(result.video_id), liked=result.liked, likes=result.likes)


@router.post("/accounts/{account_id}/follow", response_model=FollowResponse)
async def toggle_follow(
    account_id: str,
    payload: Optional[FollowRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    desired = payload.following if payload else None
    result = await engagement_service.toggle_follow(
        actor, parse_uuid(account_id, "account id"), db, desired=desired,
    )
    return FollowResponse(
        account_id=str(result.account_id), following=result.following, followers=result.followers,
    )


@router.get("/accounts/{account_id}/followers", response_model=FollowResponse)
async def follower_state(
    account_id: str,
    viewer: Optional[Actor] = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
):
    aid = parse_uuid(account_id, "account id")
    following = viewer is not None and await engagement_service.is_following(viewer.account_id, aid, db)
    return FollowResponse(
        account_id=account_id,
        following=following,
        followers=await engagement_service.follower_count(aid, db),
    )


def _summary_schema(s: AccountSummary) -> AccountSummarySchema:
    return AccountSummarySchema(
        id=str(s.account_id),
        display_name=s.display_name,
        avatar_url=s.avatar_url,
        followers=s.followers,
        videos=s.videos,
    )


@router.get("/accounts/{account_id}", response_model=AccountProfileSchema)
async def account_profile(
    account_id: str,
    viewer: Optional[Actor] = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
):
    aid = parse_uuid(account_id, "account id")
    summary = await engagement_service.account_summary(aid, db)
    following = viewer is not None and await engagement_service.is_following(viewer.account_id, aid, db)
    return AccountProfileSchema(**_summary_schema(summary).model_dump(), following=following)


@router.get("/accounts/{account_id}/following", response_model=List[AccountSummarySchema])
async def list_following(account_id: str, db: AsyncSession = Depends(get_db)):
    """Accounts this account follows, each with follower and published-video counts."""
    rows = await engagement_service.list_following(parse_uuid(account_id, "account id"), db)
    return [_summary_schema(s) for s in rows]
