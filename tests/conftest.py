"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Secrets must exist before kamianime.api.deps is imported: it validates
# JWT_SECRET at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
TEST_WEBHOOK_KEY = "test-webhook-key-for-pytest-" + "k" * 40
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("WEBHOOK_API_KEY", TEST_WEBHOOK_KEY)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from kamianime.database.models import Base, UserBadge, UserProfile  # noqa: E402
from kamianime.engine.bus import EventBus  # noqa: E402
from kamianime.engine.events import Platform  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all KamiAnime tables.

    Uses StaticPool so every thread (``run_db`` → ``asyncio.to_thread``)
    shares the same in-memory database.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


def make_profile(
    engine: Engine,
    user_id: str = "user-1",
    display_name: str = "Mika",
    *,
    badges: tuple[str, ...] = (),
    **fields,
) -> str:
    """Insert a profile (and optionally owned badges); return its id."""
    with Session(engine) as session:
        session.add(UserProfile(id=user_id, display_name=display_name, **fields))
        for badge_id in badges:
            session.add(UserBadge(user_id=user_id, badge_id=badge_id))
        session.commit()
    return user_id


def run_async(coro):
    """Drive a coroutine to completion on a fresh event loop."""
    loop = asyncio.get_event_loop_policy().new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def buses() -> dict[Platform, EventBus]:
    return {platform: EventBus(platform) for platform in Platform}


@pytest.fixture
def bridge(db_engine, buses):
    from kamianime.services.sync_service import SyncBridge

    return SyncBridge(db_engine, buses, webhook_secret=TEST_WEBHOOK_KEY)


@pytest.fixture
def captured(buses):
    """Events published on each bus, in order."""
    seen: dict[Platform, list] = {platform: [] for platform in Platform}
    for platform, bus in buses.items():
        bus.subscribe(seen[platform].append)
    return seen


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "admin-1", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    return make_user_token(sub, username, is_admin=True)


def make_user_token(sub: str = "user-1", username: str = "Mika", *, is_admin: bool = False) -> str:
    import jwt

    from kamianime.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": is_admin},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(bridge):
    """FastAPI TestClient around the test bridge, raise_server_exceptions=False."""
    from fastapi.testclient import TestClient

    from kamianime.api.main import create_app

    return TestClient(create_app(bridge), raise_server_exceptions=False)
