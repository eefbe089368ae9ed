"""Shared fixtures: a throwaway SQLite database and isolated hub/dispatcher instances."""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="vidya-tests-")
os.environ["VIDYA_DATABASE_DSN"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"

import pytest  # noqa: E402

from app.core.database import async_session_factory, drop_db, init_db  # noqa: E402
from app.core.events import RealtimeHub  # noqa: E402
from app.core.identity import Actor  # noqa: E402
from app.models.models import Account  # noqa: E402
from app.services.comments.comment_service import CommentService  # noqa: E402
from app.services.engagement.engagement_service import EngagementService  # noqa: E402
from app.services.moderation.moderation_service import ModerationService  # noqa: E402
from app.services.notifications.notification_service import (  # noqa: E402
    NotificationDispatcher, NotificationService,
)


class FakeSocket:
    """Stands in for a WebSocket: records sent frames, can be made to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(text)


@pytest.fixture(autouse=True)
async def fresh_schema():
    await drop_db()
    await init_db()
    yield


@pytest.fixture
async def db():
    async with async_session_factory() as session:
        yield session


@pytest.fixture
def hub():
    return RealtimeHub(buffer_size=200)


@pytest.fixture
async def dispatcher(hub):
    d = NotificationDispatcher(hub=hub)
    yield d
    await d.stop()


@pytest.fixture
def moderation(dispatcher, hub):
    return ModerationService(dispatcher=dispatcher, hub=hub)


@pytest.fixture
def engagement(dispatcher, hub):
    return EngagementService(dispatcher=dispatcher, hub=hub)


@pytest.fixture
def comments(dispatcher, hub):
    return CommentService(dispatcher=dispatcher, hub=hub)


@pytest.fixture
def inbox(hub):
    return NotificationService(hub=hub)


async def make_account(name: str, is_moderator: bool = False) -> Actor:
    async with async_session_factory() as session:
        account = Account(display_name=name, is_moderator=is_moderator)
        session.add(account)
        await session.commit()
        await session.refresh(account)
        return Actor.from_account(account)


@pytest.fixture
async def priya():
    return await make_account("Priya")


@pytest.fixture
async def arjun():
    return await make_account("Arjun", is_moderator=True)


@pytest.fixture
async def meera():
    return await make_account("Meera")


@pytest.fixture
def account_factory():
    return make_account


@pytest.fixture
def submission():
    from app.schemas.schemas import VideoSubmit

    def _build(title: str = "Intro to Fractions", **overrides) -> VideoSubmit:
        fields = {"title": title, "media_url": "https://media.example.com/videos/fractions.mp4"}
        fields.update(overrides)
        return VideoSubmit(**fields)

    return _build


@pytest.fixture
async def published_video(moderation, arjun, submission):
    """A video a moderator published directly, owned by the moderator."""
    async with async_session_factory() as session:
        result = await moderation.submit(arjun, submission("Number Lines"), session)
    return result.id
