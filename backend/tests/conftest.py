from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime, timedelta

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
_test_tmp = tempfile.mkdtemp(prefix="biolock-test-")
os.environ.setdefault("DATA_DIR", os.path.join(_test_tmp, "data"))
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_test_tmp, 'biolock.db')}")
os.environ.setdefault("OVERRIDE_ENABLED", "false")
os.environ.setdefault("AUDIT_WEBHOOK_URL", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import app.models  # noqa: F401: register SQLModel tables
from app.config import Settings
from app.db import get_session
from app.dependencies import get_lock_service
from app.main import app as fastapi_app
from app.services.biolock import LockService
from app.services.channel import MemoryChannel
from app.services.clock import Clock
from app.utils.crypto import make_password_hasher

PASSPHRASE = "correct-horse"
OVERRIDE_SECRET = "break-glass-secret"


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Clock / crypto fixtures ───────────────────────────────────────────


class FakeClock(Clock):
    """Manually advanced clock (naive UTC, like the real one)."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="hasher")
def hasher_fixture():
    """Argon2id with minimal cost so tests stay fast."""
    return make_password_hasher(time_cost=1, memory_cost=8, parallelism=1)


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(
        _env_file=None,
        max_failed_attempts=5,
        challenge_timeout_seconds=30.0,
        registration_prompt_timeout_seconds=5.0,
        registration_timeout_seconds=5.0,
        registration_confirm_timeout_seconds=5.0,
        session_timeout_minutes=60,
    )


@pytest.fixture(name="channel")
def channel_fixture() -> MemoryChannel:
    return MemoryChannel()


@pytest.fixture(name="reply_when_prompted")
def reply_when_prompted_fixture(channel: MemoryChannel):
    """Deliver replies from a user once a private prompt has reached them.

    Replies sent before a conversation opens are never seen by it, so tests
    that drive a flow from the start answer through this helper.
    """

    async def _reply(user_id: str, *replies: str, timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not channel.messages_for(user_id):
            if loop.time() > deadline:
                raise AssertionError(f"No private prompt sent to {user_id}")
            await asyncio.sleep(0.01)
        for text in replies:
            channel.deliver(user_id, text)

    return _reply


@pytest.fixture(name="lock_service")
def lock_service_fixture(settings, engine, channel, clock, hasher) -> LockService:
    return LockService.build(settings, engine, channel, clock=clock, hasher=hasher)


@pytest.fixture(name="registered_user")
def registered_user_fixture(lock_service: LockService) -> str:
    """Register ``alice`` with PASSPHRASE and return her user id."""
    return lock_service.credentials.register("alice", PASSPHRASE)


@pytest.fixture(name="make_service")
def make_service_fixture(engine, channel, clock, hasher):
    """Factory for a LockService with non-default settings."""

    def _make(**overrides) -> LockService:
        values = {
            "challenge_timeout_seconds": 30.0,
            "registration_prompt_timeout_seconds": 5.0,
            "registration_timeout_seconds": 5.0,
            "registration_confirm_timeout_seconds": 5.0,
        }
        values.update(overrides)
        return LockService.build(
            Settings(_env_file=None, **values), engine, channel, clock=clock, hasher=hasher
        )

    return _make


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(session, lock_service):
    """FastAPI TestClient with overridden DB session and lock service."""

    def _get_session_override():
        yield session

    def _get_lock_service_override() -> LockService:
        return lock_service

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    fastapi_app.dependency_overrides[get_lock_service] = _get_lock_service_override
    with TestClient(fastapi_app) as client:
        yield client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture(name="client_no_service")
def client_no_service_fixture(session):
    """TestClient with DB override but the app's own lock service."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as tc:
        yield tc
    fastapi_app.dependency_overrides.clear()
