"""End-to-end checks through the FastAPI app."""
import httpx
import pytest

from app.main import app
from app.services.notifications.notification_service import notification_dispatcher
from app.services.storage.blob_store import blob_store

from test_blob_store import FakeS3

MEDIA = "https://media.example.com/videos/fractions.mp4"


@pytest.fixture
async def api():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await notification_dispatcher.stop()


def as_(actor):
    return {"X-Account-Id": str(actor.account_id)}


async def test_publish_flow(api, priya, arjun):
    resp = await api.post("/api/v1/videos", json={"title": "Intro to Fractions", "media_url": MEDIA}, headers=as_(priya))
    assert resp.status_code == 200
    submission = resp.json()
    assert submission["state"] == "pending"

    resp = await api.get("/api/v1/moderation/queue", headers=as_(priya))
    assert resp.status_code == 403
    assert resp.json()["error"] == "unauthorized"

    queue = (await api.get("/api/v1/moderation/queue", headers=as_(arjun))).json()
    assert [item["title"] for item in queue] == ["Intro to Fractions"]
    assert (await api.get("/api/v1/moderation/queue/count", headers=as_(arjun))).json() == {"pending": 1}

    resp = await api.post(f"/api/v1/moderation/{submission['id']}/decision", json={"approve": True}, headers=as_(arjun))
    assert resp.status_code == 200
    assert resp.json()["state"] == "published"

    resp = await api.post(f"/api/v1/moderation/{submission['id']}/decision", json={"approve": True}, headers=as_(arjun))
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"

    videos = (await api.get("/api/v1/videos")).json()
    assert [v["title"] for v in videos] == ["Intro to Fractions"]

    await notification_dispatcher.drain()
    inbox = (await api.get("/api/v1/notifications", headers=as_(priya))).json()
    assert [n["kind"] for n in inbox] == ["approval"]
    assert (await api.get("/api/v1/notifications/unread-count", headers=as_(priya))).json() == {"unread": 1}

    resp = await api.post(f"/api/v1/notifications/{inbox[0]['id']}/read", headers=as_(arjun))
    assert resp.status_code == 403
    assert (await api.post("/api/v1/notifications/read-all", headers=as_(priya))).json() == {"affected": 1}
    assert (await api.delete("/api/v1/notifications", headers=as_(priya))).json() == {"affected": 1}


async def test_engagement_endpoints(api, priya, meera, arjun):
    video = (await api.post("/api/v1/videos", json={"title": "Ratios", "media_url": MEDIA}, headers=as_(arjun))).json()
    vid = video["id"]

    for _ in range(3):
        resp = await api.post(f"/api/v1/videos/{vid}/views", headers={"X-Viewer-Token": "tab-1"})
        assert resp.status_code == 200
    assert resp.json()["views"] == 1

    resp = await api.post(f"/api/v1/videos/{vid}/views")
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"

    liked = (await api.post(f"/api/v1/videos/{vid}/like", json={"liked": True}, headers=as_(meera))).json()
    assert (liked["liked"], liked["likes"]) == (True, 1)
    again = (await api.post(f"/api/v1/videos/{vid}/like", json={"liked": True}, headers=as_(meera))).json()
    assert (again["liked"], again["likes"]) == (True, 1)
    detail = (await api.get(f"/api/v1/videos/{vid}", headers=as_(meera))).json()
    assert (detail["liked"], detail["like_count"], detail["view_count"]) == (True, 1, 1)

    resp = await api.post(f"/api/v1/accounts/{priya.account_id}/follow", headers=as_(priya))
    assert resp.status_code == 422

    followed = (await api.post(f"/api/v1/accounts/{priya.account_id}/follow", headers=as_(meera))).json()
    assert (followed["following"], followed["followers"]) == (True, 1)
    state = (await api.get(f"/api/v1/accounts/{priya.account_id}/followers", headers=as_(meera))).json()
    assert state["following"] is True

    resp = await api.post(f"/api/v1/videos/{vid}/like")
    assert resp.status_code == 403


async def test_comments_and_uploads(api, monkeypatch, priya, arjun):
    video = (await api.post("/api/v1/videos", json={"title": "Percentages", "media_url": MEDIA}, headers=as_(arjun))).json()
    resp = await api.post(f"/api/v1/videos/{video['id']}/comments", json={"content": "Great!"}, headers=as_(priya))
    assert resp.status_code == 200
    thread = (await api.get(f"/api/v1/videos/{video['id']}/comments")).json()
    assert [c["content"] for c in thread] == ["Great!"]

    s3 = FakeS3()
    monkeypatch.setattr(blob_store, "_client", s3)
    resp = await api.post(
        "/api/v1/uploads",
        files={"file": ("lesson.mp4", b"0123456789", "video/mp4")},
        data={"kind": "video"},
        headers=as_(priya),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["size"] == 10
    assert body["url"].endswith(body["key"])
    assert len(s3.uploads) == 1


async def test_unknown_account_header_is_rejected(api):
    resp = await api.get("/api/v1/notifications", headers={"X-Account-Id": "not-a-uuid"})
    assert resp.status_code == 422
    resp = await api.get("/api/v1/notifications", headers={"X-Account-Id": "00000000-0000-0000-0000-000000000000"})
    assert resp.status_code == 403


async def test_health(api):
    assert (await api.get("/health")).json()["status"] == "healthy"


async def test_private_video_is_hidden_from_strangers(api, priya, arjun):
    video = (await api.post(
        "/api/v1/videos",
        json={"title": "Draft: Integers", "media_url": MEDIA, "visibility": "private"},
        headers=as_(arjun),
    )).json()
    vid = video["id"]

    assert (await api.get(f"/api/v1/videos/{vid}", headers=as_(priya))).status_code == 404
    assert (await api.get(f"/api/v1/videos/{vid}/comments")).status_code == 404
    resp = await api.post(f"/api/v1/videos/{vid}/comments", json={"content": "Hi"}, headers=as_(priya))
    assert resp.status_code == 404
    assert (await api.post(f"/api/v1/videos/{vid}/like", headers=as_(priya))).status_code == 404
    assert (await api.post(f"/api/v1/videos/{vid}/views", headers={"X-Viewer-Token": "tab-9"})).status_code == 404
    assert (await api.get("/api/v1/videos")).json() == []

    assert (await api.get(f"/api/v1/videos/{vid}", headers=as_(arjun))).status_code == 200
    assert (await api.get(f"/api/v1/videos/{vid}/comments", headers=as_(arjun))).status_code == 200


async def test_account_profile_and_following(api, priya, meera, arjun):
    await api.post("/api/v1/videos", json={"title": "Ratios", "media_url": MEDIA}, headers=as_(arjun))
    await api.post(f"/api/v1/accounts/{arjun.account_id}/follow", json={"following": True}, headers=as_(meera))
    await api.post(f"/api/v1/accounts/{priya.account_id}/follow", json={"following": True}, headers=as_(meera))

    following = (await api.get(f"/api/v1/accounts/{meera.account_id}/following")).json()
    counts = {a["display_name"]: (a["followers"], a["videos"]) for a in following}
    assert counts == {"Arjun": (1, 1), "Priya": (1, 0)}

    profile = (await api.get(f"/api/v1/accounts/{arjun.account_id}", headers=as_(meera))).json()
    assert (profile["display_name"], profile["videos"], profile["following"]) == ("Arjun", 1, True)
    anonymous = (await api.get(f"/api/v1/accounts/{arjun.account_id}")).json()
    assert anonymous["following"] is False

    resp = await api.get("/api/v1/accounts/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404
