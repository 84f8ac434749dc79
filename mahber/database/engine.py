"""
mahber.database.engine — Database Connection & Async Helper
============================================================

SQLAlchemy + psycopg2 is synchronous.  The API handlers and the periodic
workers run on an ``asyncio`` loop, so every database call from async code
goes through :func:`run_db`, which ships the synchronous function to a
thread via ``asyncio.to_thread()``.

Usage::

    from mahber.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS + badge seed

    summary = await run_db(run_update_cycle, engine, cfg)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, inspect
from sqlalchemy.orm import Session

from mahber.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Tables the background workers cannot run without.
REQUIRED_WORKER_TABLES = (
    "badge_update_queue",
    "leaderboard_update_queue",
    "update_dead_letters",
    "leaderboard_entries",
)


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    options: dict = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10, pool_timeout=10, pool_recycle=3600)

    engine = create_engine(url, **options)
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables and seed the default badge catalogue (idempotent)."""
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from mahber.database.seed import seed_default_badges

    seed_default_badges(engine)


def missing_tables(engine: Engine, required: tuple[str, ...] = REQUIRED_WORKER_TABLES) -> list[str]:
    """Return the names in *required* that do not exist in the database."""
    existing = set(inspect(engine).get_table_names())
    return [name for name in required if name not in existing]


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that commits on success and rolls back
    on exception.
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread."""
    return await asyncio.to_thread(func, *args, **kwargs)
