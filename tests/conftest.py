"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os
from dataclasses import replace
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of mahber.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from mahber.config import MahberConfig, RateConfig  # noqa: E402
from mahber.context import build_context  # noqa: E402
from mahber.database.models import Base, Chapter, Forum, User  # noqa: E402
from mahber.database.seed import seed_default_badges  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()

# A fixed Wednesday mid-month keeps week and month boundaries out of the way.
NOW = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Mahber tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in the workers).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_default_badges(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def cfg() -> MahberConfig:
    """Defaults, with the gate cache disabled so every check reads the DB."""
    return replace(MahberConfig(), rate=replace(RateConfig(), cache_ttl_seconds=0))


@pytest.fixture
def ctx(db_engine, cfg):
    return build_context(db_engine, cfg, warm=False)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_chapter(engine: Engine, name: str = "Debre Zeit", **kwargs) -> int:
    with Session(engine) as session:
        chapter = Chapter(name=name, **kwargs)
        session.add(chapter)
        session.commit()
        return chapter.id


def make_user(
    engine: Engine,
    first_name: str = "Abebe",
    last_name: str = "Kebede",
    *,
    role: str = "member",
    chapter_id: int | None = None,
    **kwargs,
) -> int:
    with Session(engine) as session:
        user = User(
            first_name=first_name,
            last_name=last_name,
            role=role,
            chapter_id=chapter_id,
            email=kwargs.pop("email", f"{first_name.lower()}@example.org"),
            **kwargs,
        )
        session.add(user)
        session.commit()
        return user.id


def make_forum(engine: Engine, chapter_id: int, *, is_public: bool = False, **kwargs) -> int:
    with Session(engine) as session:
        forum = Forum(
            chapter_id=chapter_id,
            title=kwargs.pop("title", "Sunday School"),
            is_public=is_public,
            **kwargs,
        )
        session.add(forum)
        session.commit()
        return forum.id


@pytest.fixture
def community(db_engine):
    """One chapter with a member, a teacher, a moderator and a forum."""
    chapter_id = make_chapter(db_engine)
    return {
        "chapter_id": chapter_id,
        "member_id": make_user(db_engine, "Abebe", "Kebede", chapter_id=chapter_id),
        "teacher_id": make_user(db_engine, "Mulu", "Haile", role="teacher", chapter_id=chapter_id),
        "moderator_id": make_user(
            db_engine, "Selam", "Tesfaye", role="moderator", chapter_id=chapter_id
        ),
        "forum_id": make_forum(db_engine, chapter_id),
    }


@pytest.fixture
def client_factory(db_engine, ctx):
    """Build a FastAPI TestClient wired to the test engine and context."""
    from fastapi.testclient import TestClient

    from mahber.api.deps import get_context
    from mahber.api.main import app

    def _factory() -> TestClient:
        app.dependency_overrides[get_context] = lambda: ctx
        return TestClient(app, raise_server_exceptions=False)

    yield _factory
    app.dependency_overrides.clear()


def make_token(user_id: int) -> str:
    from mahber.api.deps import issue_token

    return issue_token(user_id)
