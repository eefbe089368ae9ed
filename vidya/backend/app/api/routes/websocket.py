"""
Vidya API — Realtime Routes

WebSocket primary, SSE fallback. Clients subscribe to named channels:
  - notifications:<account_id>  (owner only)
  - moderation                  (moderators only)
  - video:<video_id>, feed      (anyone)

Client messages over the socket:
  {"type": "subscribe", "channels": [...]}
  {"type": "unsubscribe", "channels": [...]}
  {"type": "replay", "since": <unix ts>}
  {"type": "ping"}
"""
from __future__ import annotations

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.errors import VidyaError
from app.core.events import authorize_channel, realtime_hub
from app.core.identity import Actor, get_optional_actor, resolve_actor

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(tags=["Realtime"])


def _split(channels: Optional[str]) -> List[str]:
    return [c.strip() for c in (channels or "").split(",") if c.strip()]


async def _send(ws: WebSocket, payload: dict):
    await ws.send_text(json.dumps(payload, default=str))


@router.websocket("/ws/realtime")
async def realtime_websocket(
    ws: WebSocket,
    account_id: Optional[str] = Query(None),
    channels: Optional[str] = Query(None),
    replay_since: Optional[float] = Query(None),
):
    await realtime_hub.connect(ws)
    try:
        try:
            async with async_session_factory() as db:
                actor = await resolve_actor(account_id, db)
        except VidyaError as e:
            await _send(ws, {"type": "error", **e.to_dict()})
            await ws.close(code=4403)
            return

        granted = realtime_hub.subscribe(ws, actor, _split(channels))
        await _send(ws, {"type": "subscribed", "channels": granted})
        if replay_since is not None:
            await realtime_hub.replay(ws, since=replay_since, limit=settings.realtime_replay_limit)

        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            kind = msg.get("type")

            if kind == "ping":
                await _send(ws, {"type": "pong"})
            elif kind == "subscribe":
                try:
                    granted = realtime_hub.subscribe(ws, actor, msg.get("channels") or [])
                except VidyaError as e:
                    await _send(ws, {"type": "error", **e.to_dict()})
                    continue
                await _send(ws, {"type": "subscribed", "channels": granted})
            elif kind == "unsubscribe":
                realtime_hub.unsubscribe(ws, msg.get("channels") or [])
                await _send(ws, {"type": "unsubscribed", "channels": msg.get("channels") or []})
            elif kind == "replay":
                await realtime_hub.replay(
                    ws, since=msg.get("since"), limit=settings.realtime_replay_limit,
                )

    except WebSocketDisconnect:
        pass
    except VidyaError as e:
        await _send(ws, {"type": "error", **e.to_dict()})
    finally:
        await realtime_hub.disconnect(ws)


@router.get("/sse/realtime")
async def realtime_sse(
    channels: Optional[str] = Query(None),
    replay_since: Optional[float] = Query(None),
    actor: Optional[Actor] = Depends(get_optional_actor),
):
    """SSE fallback for clients that cannot hold a WebSocket."""
    granted = [authorize_channel(actor, c) for c in _split(channels)]
    return StreamingResponse(
        realtime_hub.sse_stream(granted, since=replay_since),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/ws/stats")
async def realtime_stats():
    return realtime_hub.get_stats()
