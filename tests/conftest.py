"""Shared fixtures: environment, in-memory database, fake Google Calendar service."""

import os

os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "client-id-123.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "super-secret-xyz")
os.environ.setdefault("CLIENT_URL", "https://app.example.com")

from datetime import timedelta  # noqa: E402

import httplib2  # noqa: E402
import pytest  # noqa: E402
from googleapiclient.errors import HttpError  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import models  # noqa: E402,F401
from auth import register_user  # noqa: E402
from config import get_settings  # noqa: E402
from database import create_db_and_tables  # noqa: E402
from models import utcnow  # noqa: E402


class FakeRequest:
    def __init__(self, fn):
        self._fn = fn

    def execute(self):
        return self._fn()


class FakeCalendarService:
    """Mimics the slice of ``service.events()`` the sync engine uses."""

    def __init__(self):
        self.remote_events = []
        self.inserted = []
        self.deleted = []
        self.list_calls = []
        self.errors = {}
        self.build_calls = 0

    def factory(self, credentials):
        self.build_calls += 1
        self.credentials = credentials
        return self

    def events(self):
        return self

    def _maybe_fail(self, op):
        if op in self.errors:
            raise self.errors[op]

    def insert(self, calendarId, body):
        def run():
            self._maybe_fail("insert")
            event = dict(body, id=f"evt-{len(self.inserted) + 1}")
            self.inserted.append(event)
            self.remote_events.append(event)
            return event
        return FakeRequest(run)

    def list(self, **params):
        def run():
            self._maybe_fail("list")
            self.list_calls.append(params)
            return {"items": [e for e in self.remote_events if params.get("q", "") in e.get("summary", "")]}
        return FakeRequest(run)

    def delete(self, calendarId, eventId):
        def run():
            self._maybe_fail("delete")
            self.deleted.append(eventId)
            self.remote_events = [e for e in self.remote_events if e["id"] != eventId]
            return ""
        return FakeRequest(run)


def http_error(status: int = 500) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "backend error"}}')


@pytest.fixture()
def settings():
    return get_settings()


@pytest.fixture()
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_maker(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture()
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture()
def fake_calendar() -> FakeCalendarService:
    return FakeCalendarService()


@pytest.fixture()
async def user(session):
    return await register_user(session, "Asha", "asha@example.com", "correct horse")


@pytest.fixture()
async def linked_user(session, user):
    user.oauth_access_token = "ya29.cached"
    user.oauth_refresh_token = "1//refresh-abc"
    user.oauth_token_expiry = utcnow() + timedelta(hours=1)
    session.add(user)
    await session.commit()
    return user
