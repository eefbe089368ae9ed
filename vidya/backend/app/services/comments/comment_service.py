"""
Vidya Comment Service

Append-only comments with parent/child integrity:
  - A reply must point at a comment on the same video
  - New comments fan out to the video owner and, for replies, the parent author
  - Threads are assembled in memory from a flat query (children_map)
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, ValidationError
from app.core.events import RealtimeEventType, RealtimeHub, realtime_hub, video_channel
from app.core.identity import Actor
from app.models.models import Account, Comment, NotificationKind, VideoState
from app.services.moderation.moderation_service import load_visible_video
from app.services.notifications.notification_service import (
    NotificationDispatcher, notification_dispatcher,
)

logger = logging.getLogger(__name__)


def serialize_comment(c: Comment, author: Optional[Account] = None) -> Dict[str, Any]:
    return {
        "id": str(c.id),
        "video_id": str(c.video_id),
        "author_id": str(c.author_id),
        "author_name": author.display_name if author else None,
        "author_avatar": author.avatar_url if author else None,
        "parent_id": str(c.parent_id) if c.parent_id else None,
        "content": c.content,
        "created_at": c.created_at,
        "replies": [],
    }


class CommentService:

    def __init__(
        self,
        dispatcher: Optional[NotificationDispatcher] = None,
        hub: Optional[RealtimeHub] = None,
    ):
        self._dispatcher = dispatcher or notification_dispatcher
        self._hub = hub or realtime_hub

    async def add_comment(
        self,
        actor: Actor,
        video_id: uuid.UUID,
        content: str,
        db: AsyncSession,
        parent_id: Optional[uuid.UUID] = None,
    ) -> Comment:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Comment cannot be empty")

        video = await load_visible_video(video_id, actor, db)
        if video.state != VideoState.PUBLISHED:
            raise NotFound("Video not found")
        owner_id = video.owner_id
        title = video.title

        parent_author_id = None
        if parent_id is not None:
            parent = await db.get(Comment, parent_id)
            if parent is None or parent.video_id != video_id:
                raise ValidationError("Reply target is not a comment on this video")
            parent_author_id = parent.author_id

        comment = Comment(
            video_id=video_id,
            author_id=actor.account_id,
            parent_id=parent_id,
            content=text,
        )
        db.add(comment)
        await db.commit()
        await db.refresh(comment)

        # Fan-out: owner plus parent author, each at most once, never the actor
        recipients = [owner_id]
        if parent_author_id is not None and parent_author_id != owner_id:
            recipients.append(parent_author_id)
        for recipient_id in recipients:
            if recipient_id == parent_author_id:
                title_text, body = "New reply", f"{actor.display_name} replied to your comment"
            else:
                title_text, body = "New comment", f'{actor.display_name} commented on "{title}"'
            self._dispatcher.notify(
                recipient_id,
                NotificationKind.COMMENT,
                title_text,
                body,
                video_id=video_id,
                actor_id=actor.account_id,
            )

        payload = serialize_comment(comment)
        payload["author_name"] = actor.display_name
        payload["author_avatar"] = actor.avatar_url
        await self._hub.publish(video_channel(video_id), RealtimeEventType.COMMENT_ADDED, payload)
        return comment

    async def list_thread(
        self,
        video_id: uuid.UUID,
        db: AsyncSession,
        viewer: Optional[Actor] = None,
    ) -> List[Dict[str, Any]]:
        """All comments of a video as a tree; top level newest first, replies oldest first."""
        await load_visible_video(video_id, viewer, db)
        result = await db.execute(
            select(Comment, Account)
            .join(Account, Account.id == Comment.author_id)
            .where(Comment.video_id == video_id)
            .order_by(Comment.created_at.asc())
        )
        nodes: Dict[str, Dict[str, Any]] = {}
        children_map: Dict[Optional[str], List[Dict[str, Any]]] = {}
        for c, author in result.all():
            node = serialize_comment(c, author)
            nodes[node["id"]] = node
            children_map.setdefault(node["parent_id"], []).append(node)

        for parent_key, children in children_map.items():
            if parent_key is not None and parent_key in nodes:
                nodes[parent_key]["replies"] = children

        roots = children_map.get(None, [])
        return list(reversed(roots))


comment_service = CommentService()
