"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of pulse.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

ADAPTER_KEY = "adapter-key-for-pytest"

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from pulse.database.models import Base, User  # noqa: E402
from pulse.engine.rules import RuleBook  # noqa: E402
from pulse.runtime import assemble_services  # noqa: E402
from pulse.services.contest_service import ContestManager  # noqa: E402
from pulse.services.lock_service import DistributedLock  # noqa: E402

_jsonb_sqlite_registered = False

ALL_PLATFORM_SECRETS = {
    "TELEGRAM_BOT_TOKEN": "tg-token",
    "DISCORD_BOT_TOKEN": "dc-token",
    "TWITTER_API_KEY": "tw-key",
}


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


class FrozenClock:
    """Injectable clock for services that take ``clock=``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 10, 8, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Pulse tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).  pysqlite's own
    transaction handling is switched off so SAVEPOINTs behave.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


def make_file_engine(path) -> Engine:
    """A file-backed SQLite engine whose transactions take the write lock up
    front, so independent engines on the same file serialise their writers.
    """
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def redis_client():
    """A fresh in-process Redis with Lua scripting."""
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def lock(redis_client) -> DistributedLock:
    return DistributedLock(redis_client, retry_delay=0.01, max_retries=50)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def rulebook() -> RuleBook:
    """Development rule table with every platform enabled."""
    return RuleBook("development", env=ALL_PLATFORM_SECRETS)


@pytest.fixture
def contests(db_engine, lock, rulebook, clock) -> ContestManager:
    return ContestManager(db_engine, lock, rulebook, clock=clock)


def make_user(engine: Engine, user_id: str = "wallet-1", points: int = 0) -> str:
    """Insert a user row directly and return its id."""
    with Session(engine) as session:
        session.add(User(id=user_id, points=points, lifetime_points=points))
        session.commit()
    return user_id


@pytest.fixture
def user(db_engine) -> str:
    return make_user(db_engine)


@pytest.fixture
def services(db_engine, redis_client, rulebook):
    return assemble_services(db_engine, redis_client, rulebook)


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from pulse.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(services, monkeypatch):
    """A FastAPI TestClient wired to the test services, with raise_server_exceptions=False."""
    from fastapi.testclient import TestClient

    from pulse.api.main import app

    monkeypatch.setenv("ADAPTER_API_KEY", ADAPTER_KEY)
    app.state.services = services
    yield TestClient(app, raise_server_exceptions=False)
    app.state.services = None
