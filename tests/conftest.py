"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, in-process
booking lock and an HTTP client wired to the FastAPI app.
"""

import os

# Settings are read at import time; set them before any project import
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./unused-test.db")
os.environ.setdefault("BUSINESS_TIMEZONE", "Asia/Tokyo")
os.environ.setdefault("NOTIFY_ON_BOOKING_CHANGES", "true")

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from services.booking.locks import get_booking_lock
from shared.models import models  # noqa: F401  registers tables
from shared.utils.security import create_access_token


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def db(engine) -> AsyncIterator[AsyncSession]:
    Session = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with Session() as session:
        yield session


# ── Redis / locks ──────────────────────────────────────────────────────────────

class InMemoryBookingLock:
    """Process-local stand-in for RedisBookingLock; records what was locked."""

    def __init__(self):
        self._locks = {}
        self.history: List[set] = []

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]):
        ordered = sorted(set(keys))
        self.history.append(set(ordered))
        held = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                await lock.acquire()
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()


@pytest.fixture
def booking_lock() -> InMemoryBookingLock:
    return InMemoryBookingLock()


# ── HTTP client ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(db, booking_lock) -> AsyncIterator[AsyncClient]:
    from main import app

    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_booking_lock] = lambda: booking_lock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Users ──────────────────────────────────────────────────────────────────────

@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def other_user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def admin_id() -> uuid.UUID:
    return uuid.uuid4()


def auth_headers(user_id: uuid.UUID, role: str = "EMPLOYEE") -> dict:
    token, _ = create_access_token(str(user_id), role, email=f"{user_id.hex[:8]}@example.com")
    return {"Authorization": f"Bearer {token}"}


# ── Helpers ────────────────────────────────────────────────────────────────────

def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_booking(start, end, participants=(), resources=(), reminders=(), title="Meeting", **kwargs):
    """Transient Booking for pure-logic tests; resources are (kind, id) pairs."""
    from shared.models.models import Booking, MeetingType

    creator = kwargs.pop("created_by", None) or (participants[0] if participants else uuid.uuid4())
    return Booking(
        id=kwargs.pop("id", None) or uuid.uuid4(),
        title=title,
        category=kwargs.pop("category", "meeting"),
        start_time=start,
        end_time=end,
        is_all_day=False,
        participants=[str(p) for p in participants],
        resources=[{"kind": kind, "id": rid} for kind, rid in resources],
        reminders=list(reminders),
        meeting_type=MeetingType.IN_PERSON,
        created_by=creator,
        **kwargs,
    )
