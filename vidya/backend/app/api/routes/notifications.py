"""
Vidya API — Notification Routes

Every route acts on the caller's own notifications only.
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db
from app.core.identity import Actor, get_current_actor, parse_uuid
from app.schemas.schemas import BulkResult, NotificationSchema, UnreadCount
from app.services.notifications.notification_service import (
    notification_service, serialize_notification,
)

settings = get_settings()
router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[NotificationSchema])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(settings.notification_page_size, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    rows = await notification_service.list_for(actor, db, unread_only=unread_only, limit=limit)
    return [NotificationSchema(**serialize_notification(n)) for n in rows]


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return UnreadCount(unread=await notification_service.unread_count(actor.account_id, db))


@router.post("/read-all", response_model=BulkResult)
async def mark_all_read(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return BulkResult(affected=await notification_service.mark_all_read(actor, db))


@router.post("/{notification_id}/read", response_model=NotificationSchema)
async def mark_read(
    notification_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    n = await notification_service.mark_read(actor, parse_uuid(notification_id, "notification id"), db)
    return NotificationSchema(**serialize_notification(n))


@router.delete("", response_model=BulkResult)
async def clear_all(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return BulkResult(affected=await notification_service.clear_all(actor, db))
