"""
Vidya Sync Client — the browser side of the realtime contract.

Wraps the HTTP surface with httpx and keeps local state for one signed-in
(or anonymous) session:

  ("like", video_id)        → (liked, likes)
  ("follow", account_id)    → (following, followers)
  ("views", video_id)       → views
  ("notification", id)      → notification dict, None once cleared
  ("pending", submission_id)→ queue item, None once decided (moderators)

Every mutating call goes through ``OptimisticStore.apply``; pushes arriving
from the realtime stream are merged with ``handle_event``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from app.core.config import get_settings
from app.core.errors import (
    DependencyFailure, NotFound, ValidationError, VidyaError, error_from_payload,
)
from app.core.events import (
    FEED_CHANNEL, MODERATION_CHANNEL, RealtimeEventType,
    notifications_channel, video_channel,
)
from app.core.identity import Actor
from app.sync.optimistic import OptimisticStore

logger = logging.getLogger(__name__)
settings = get_settings()


# ═══════════════════════════════════════════════════════════════════════
# Anonymous viewer token
# ═══════════════════════════════════════════════════════════════════════

class TokenStore:
    """Holds the durable per-browser anonymous token in memory."""

    def __init__(self, token: Optional[str] = None):
        self._token = token

    def load(self) -> Optional[str]:
        return self._token

    def save(self, token: str):
        self._token = token

    def get_or_create(self) -> str:
        token = self.load()
        if not token:
            token = secrets.token_urlsafe(24)
            self.save(token)
        return token


class FileTokenStore(TokenStore):
    """Persists the token to a small JSON file so it survives restarts."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self._path = Path(path)

    def load(self) -> Optional[str]:
        try:
            data = json.loads(self._path.read_text())
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        token = data.get("viewer_token")
        return token if isinstance(token, str) and token else None

    def save(self, token: str):
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({"viewer_token": token}))


# ═══════════════════════════════════════════════════════════════════════
# Client
# ═══════════════════════════════════════════════════════════════════════

class VidyaClient:

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        actor: Optional[Actor] = None,
        token_store: Optional[TokenStore] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        api_prefix: Optional[str] = None,
    ):
        self.actor = actor
        self.state = OptimisticStore()
        self.open_video_id: Optional[str] = None
        self.comments: Dict[str, List[Dict[str, Any]]] = {}
        self._token_store = token_store or TokenStore()
        self._timeout = timeout if timeout is not None else settings.client_timeout_seconds
        self._prefix = api_prefix if api_prefix is not None else settings.api_prefix
        self._http = http or httpx.AsyncClient(base_url=base_url)
        self._view_task: Optional[asyncio.Task] = None

    async def close(self):
        self.close_video()
        await self._http.aclose()

    # ── Transport ────────────────────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.actor is not None:
            headers["X-Account-Id"] = str(self.actor.account_id)
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        One API call. Connectivity problems (transport errors, timeouts)
        become DependencyFailure; error payloads become the matching
        taxonomy error.
        """
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            resp = await self._http.request(
                method, f"{self._prefix}{path}",
                headers=headers, timeout=self._timeout, **kwargs,
            )
        except httpx.TimeoutException as e:
            raise DependencyFailure(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise DependencyFailure(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            if isinstance(payload, dict) and "error" in payload:
                raise error_from_payload(payload)
            if resp.status_code == 422:
                raise ValidationError(str(payload.get("detail", "Invalid request")))
            if resp.status_code == 404:
                raise NotFound(resp.text)
            raise VidyaError(f"HTTP {resp.status_code}: {resp.text}")

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # ── Subscriptions ────────────────────────────────────────────────

    def channels(self) -> List[str]:
        """Channels this session should be subscribed to right now."""
        chans = [FEED_CHANNEL]
        if self.actor is not None:
            chans.append(notifications_channel(self.actor.account_id))
            if self.actor.is_moderator:
                chans.append(MODERATION_CHANNEL)
        if self.open_video_id:
            chans.append(video_channel(self.open_video_id))
        return chans

    def websocket_path(self) -> str:
        query = f"channels={','.join(self.channels())}"
        if self.actor is not None:
            query += f"&account_id={self.actor.account_id}"
        return f"{self._prefix}/ws/realtime?{query}"

    async def listen(self, events: AsyncIterator[Union[str, Dict[str, Any]]]):
        """Merge every event from a realtime stream (e.g. a WebSocket)."""
        async for event in events:
            self.handle_event(event)

    def handle_event(self, event: Union[str, Dict[str, Any]]):
        if isinstance(event, str):
            try:
                event = json.loads(event)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring malformed realtime frame: {event[:80]!r}")
                return
        kind = event.get("event_type")
        data = event.get("data") or {}

        if kind == RealtimeEventType.NOTIFICATION_CREATED.value:
            self.state.confirm(("notification", data["id"]), data)
        elif kind == RealtimeEventType.NOTIFICATION_READ.value:
            key = ("notification", data["id"])
            current = self.state.confirmed(key)
            if current:
                self.state.confirm(key, {**current, "is_read": True})
        elif kind == RealtimeEventType.NOTIFICATIONS_ALL_READ.value:
            for key, current in list(self.state.items("notification")):
                base = self.state.confirmed(key) or current
                if base:
                    self.state.confirm(key, {**base, "is_read": True})
        elif kind == RealtimeEventType.NOTIFICATIONS_CLEARED.value:
            for key, _ in list(self.state.items("notification")):
                self.state.confirm(key, None)
        elif kind == RealtimeEventType.SUBMISSION_QUEUED.value:
            self.state.confirm(("pending", data["submission_id"]), data)
        elif kind == RealtimeEventType.SUBMISSION_DECIDED.value:
            self.state.confirm(("pending", data["submission_id"]), None)
        elif kind == RealtimeEventType.LIKES_CHANGED.value:
            key = ("like", data["video_id"])
            liked, _ = self.state.confirmed(key) or (False, 0)
            self.state.confirm(key, (liked, data["likes"]))
        elif kind == RealtimeEventType.VIEWS_CHANGED.value:
            self.state.confirm(("views", data["video_id"]), data["views"])
        elif kind == RealtimeEventType.COMMENT_ADDED.value:
            thread = self.comments.setdefault(data["video_id"], [])
            if all(c["id"] != data["id"] for c in thread):
                thread.append(data)
        elif kind == RealtimeEventType.VIDEO_DELETED.value:
            if self.open_video_id == data.get("id"):
                self.close_video()
            self.state.confirm(("pending", data.get("id")), None)

    # ── Derived views of local state ─────────────────────────────────

    def notifications(self) -> List[Dict[str, Any]]:
        items = [v for _, v in self.state.items("notification") if v]
        return sorted(items, key=lambda n: str(n.get("created_at") or ""), reverse=True)

    def unread_count(self) -> int:
        return sum(1 for n in self.notifications() if not n.get("is_read"))

    def pending_queue(self) -> List[Dict[str, Any]]:
        return [v for _, v in self.state.items("pending") if v]

    def like_state(self, video_id: str):
        return self.state.get(("like", str(video_id)), (False, 0))

    def follow_state(self, account_id: str):
        return self.state.get(("follow", str(account_id)), (False, 0))

    # ── Videos & moderation ──────────────────────────────────────────

    async def submit_video(self, **payload) -> Dict[str, Any]:
        return await self._request("POST", "/videos", json=payload)

    async def load_pending(self) -> List[Dict[str, Any]]:
        items = await self._request("GET", "/moderation/queue")
        for item in items:
            self.state.confirm(("pending", item["id"]), {**item, "submission_id": item["id"]})
        return self.pending_queue()

    async def decide_submission(self, submission_id: str, approve: bool) -> Dict[str, Any]:
        return await self.state.apply(
            {("pending", submission_id): None},
            lambda: self._request(
                "POST", f"/moderation/{submission_id}/decision", json={"approve": approve},
            ),
            timeout=self._timeout,
        )

    async def edit_video(self, video_id: str, **changes) -> Dict[str, Any]:
        return await self._request("PATCH", f"/videos/{video_id}", json=changes)

    async def delete_video(self, video_id: str):
        await self._request("DELETE", f"/videos/{video_id}")
        if self.open_video_id == video_id:
            self.close_video()

    # ── Watching ─────────────────────────────────────────────────────

    async def open_video(self, video_id: str) -> Dict[str, Any]:
        """Load a video, subscribe-worthy state, and schedule its debounced view."""
        self.close_video()
        video = await self._request("GET", f"/videos/{video_id}")
        self.open_video_id = video_id
        self.state.confirm(("like", video_id), (video["liked"], video["like_count"]))
        self.state.confirm(("views", video_id), video["view_count"])
        self._view_task = asyncio.get_running_loop().create_task(self._debounced_view(video_id))
        return video

    def close_video(self):
        if self._view_task is not None and not self._view_task.done():
            self._view_task.cancel()
        self._view_task = None
        self.open_video_id = None

    async def _debounced_view(self, video_id: str):
        await asyncio.sleep(settings.view_debounce_seconds)
        try:
            await self.record_view(video_id)
        except VidyaError as e:
            # A lost view is safe to drop
            logger.debug(f"View for {video_id} not recorded: {e.detail}")

    async def record_view(self, video_id: str) -> Dict[str, Any]:
        headers = {}
        if self.actor is None:
            headers["X-Viewer-Token"] = self._token_store.get_or_create()
        result = await self._request("POST", f"/videos/{video_id}/views", headers=headers)
        self.state.confirm(("views", video_id), result["views"])
        return result

    # ── Likes & follows ──────────────────────────────────────────────

    async def toggle_like(self, video_id: str) -> Dict[str, Any]:
        key = ("like", video_id)
        liked, likes = self.state.get(key, (False, 0))
        want = not liked
        optimistic = (want, max(likes + (1 if want else -1), 0))
        return await self.state.apply(
            {key: optimistic},
            lambda: self._request("POST", f"/videos/{video_id}/like", json={"liked": want}),
            timeout=self._timeout,
            confirm=lambda r: {key: (r["liked"], r["likes"])},
        )

    async def toggle_follow(self, account_id: str) -> Dict[str, Any]:
        key = ("follow", account_id)
        following, followers = self.state.get(key, (False, 0))
        want = not following
        optimistic = (want, max(followers + (1 if want else -1), 0))
        return await self.state.apply(
            {key: optimistic},
            lambda: self._request("POST", f"/accounts/{account_id}/follow", json={"following": want}),
            timeout=self._timeout,
            confirm=lambda r: {key: (r["following"], r["followers"])},
        )

    # ── Notifications ────────────────────────────────────────────────

    async def load_notifications(self) -> List[Dict[str, Any]]:
        rows = await self._request("GET", "/notifications")
        for row in rows:
            self.state.confirm(("notification", row["id"]), row)
        return self.notifications()

    async def mark_notification_read(self, notification_id: str):
        key = ("notification", notification_id)
        current = self.state.get(key)
        if not current:
            raise NotFound("Notification not loaded")
        return await self.state.apply(
            {key: {**current, "is_read": True}},
            lambda: self._request("POST", f"/notifications/{notification_id}/read"),
            timeout=self._timeout,
        )

    async def mark_all_notifications_read(self):
        changes = {
            key: {**value, "is_read": True}
            for key, value in self.state.items("notification") if value
        }
        return await self.state.apply(
            changes,
            lambda: self._request("POST", "/notifications/read-all"),
            timeout=self._timeout,
        )

    async def clear_notifications(self):
        changes = {key: None for key, _ in self.state.items("notification")}
        return await self.state.apply(
            changes,
            lambda: self._request("DELETE", "/notifications"),
            timeout=self._timeout,
        )

    # ── Comments ─────────────────────────────────────────────────────

    async def load_comments(self, video_id: str) -> List[Dict[str, Any]]:
        thread = await self._request("GET", f"/videos/{video_id}/comments")
        flat: List[Dict[str, Any]] = []
        stack = list(thread)
        while stack:
            node = stack.pop()
            flat.append(node)
            stack.extend(node.get("replies") or [])
        self.comments[video_id] = flat
        return thread

    async def add_comment(self, video_id: str, content: str, parent_id: Optional[str] = None) -> Dict[str, Any]:
        comment = await self._request(
            "POST", f"/videos/{video_id}/comments",
            json={"content": content, "parent_id": parent_id},
        )
        self.handle_event({"event_type": RealtimeEventType.COMMENT_ADDED.value, "data": comment})
        return comment
