"""
mahber.services.archive_service — Auto-Archiver
===============================================

Periodic sweep (every 5 minutes) that retires idle forums and chapters.

- Forums: active, never auto-archived, last activity older than
  ``archive.forum_days`` → ``is_active = false, auto_archive_at = now``.
- Chapters: the latest of the chapter's own activity, its forums'
  activity, and its members' ledger events older than
  ``archive.chapter_days`` → archived, and every active forum in it too.

Rows are retired, never deleted.  A sweep only touches rows that are still
active, so running it twice changes nothing the second time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from mahber.config import ArchiveConfig
from mahber.constants import MODERATOR_ROLES, as_utc, utcnow
from mahber.database.engine import get_session
from mahber.database.models import Chapter, Forum, User
from mahber.errors import ConflictError, ForbiddenError, NotFoundError
from mahber.services.ledger_service import last_chapter_activity

logger = logging.getLogger(__name__)


def _archive_forums(session: Session, cutoff: datetime, now: datetime) -> list[int]:
    last_seen = func.coalesce(Forum.last_activity_at, Forum.created_at)
    ids = list(session.scalars(
        select(Forum.id).where(
            Forum.is_active.is_(True),
            Forum.auto_archive_at.is_(None),
            last_seen < cutoff,
        )
    ).all())
    if ids:
        session.execute(
            update(Forum)
            .where(Forum.id.in_(ids))
            .values(is_active=False, auto_archive_at=now)
        )
    return ids


def _chapter_last_activity(session: Session) -> dict[int, datetime]:
    """Latest forum or ledger activity per chapter."""
    latest: dict[int, datetime] = {}
    forum_rows = session.execute(
        select(Forum.chapter_id, func.max(Forum.last_activity_at))
        .group_by(Forum.chapter_id)
    ).all()
    for chapter_id, at in forum_rows:
        if at is not None:
            latest[chapter_id] = as_utc(at)
    for chapter_id, at in last_chapter_activity(session).items():
        if chapter_id not in latest or at > latest[chapter_id]:
            latest[chapter_id] = at
    return latest


def _archive_chapters(
    session: Session, cutoff: datetime, now: datetime
) -> tuple[list[int], int]:
    chapters = session.scalars(
        select(Chapter).where(Chapter.is_active.is_(True), Chapter.auto_archive_at.is_(None))
    ).all()
    activity = _chapter_last_activity(session)

    archived: list[int] = []
    cascaded = 0
    for chapter in chapters:
        seen = [
            at for at in (
                as_utc(chapter.last_activity_at),
                activity.get(chapter.id),
            )
            if at is not None
        ]
        last = max(seen) if seen else as_utc(chapter.created_at)
        if last >= cutoff:
            continue
        chapter.is_active = False
        chapter.auto_archive_at = now
        archived.append(chapter.id)
        result = session.execute(
            update(Forum)
            .where(Forum.chapter_id == chapter.id, Forum.is_active.is_(True))
            .values(is_active=False, auto_archive_at=now)
        )
        cascaded += result.rowcount or 0
    return archived, cascaded


def run_archive_sweep(
    engine: Engine,
    settings: ArchiveConfig = ArchiveConfig(),
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Retire idle forums and chapters.

    Returns a summary dict:
    ``{"forums_archived": N, "chapters_archived": M, "forums_cascaded": K}``.
    """
    now = as_utc(now) if now else utcnow()
    with get_session(engine) as session:
        forum_ids = _archive_forums(session, now - timedelta(days=settings.forum_days), now)
        chapter_ids, cascaded = _archive_chapters(
            session, now - timedelta(days=settings.chapter_days), now
        )

    if forum_ids or chapter_ids:
        logger.info(
            "Archive sweep: %d forums, %d chapters (%d forums cascaded)",
            len(forum_ids), len(chapter_ids), cascaded,
        )
    return {
        "forums_archived": len(forum_ids),
        "chapters_archived": len(chapter_ids),
        "forums_cascaded": cascaded,
        "forum_ids": forum_ids,
        "chapter_ids": chapter_ids,
    }


def restore_chapter(
    session: Session,
    actor: User,
    chapter_id: int,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Reactivate an archived chapter and the forums archived with it."""
    if actor.role not in MODERATOR_ROLES:
        raise ForbiddenError("Only moderators can restore chapters")
    chapter = session.get(Chapter, chapter_id)
    if chapter is None:
        raise NotFoundError("Chapter not found")
    if chapter.is_active:
        raise ConflictError("Chapter is already active")

    now = as_utc(now) if now else utcnow()
    archived_at = chapter.auto_archive_at
    chapter.is_active = True
    chapter.auto_archive_at = None
    chapter.last_activity_at = now

    restored = 0
    if archived_at is not None:
        result = session.execute(
            update(Forum)
            .where(
                Forum.chapter_id == chapter.id,
                Forum.is_active.is_(False),
                Forum.auto_archive_at >= archived_at,
            )
            .values(is_active=True, auto_archive_at=None, last_activity_at=now)
        )
        restored = result.rowcount or 0
    logger.info("Chapter %s restored by %s (%d forums)", chapter.id, actor.id, restored)
    return {"chapter_id": chapter.id, "forums_restored": restored}


def get_archiving_stats(session: Session) -> dict[str, int]:
    def _count(model, *where) -> int:
        return session.scalar(select(func.count()).select_from(model).where(*where)) or 0

    return {
        "active_forums": _count(Forum, Forum.is_active.is_(True)),
        "archived_forums": _count(Forum, Forum.is_active.is_(False)),
        "auto_archived_forums": _count(Forum, Forum.auto_archive_at.is_not(None)),
        "active_chapters": _count(Chapter, Chapter.is_active.is_(True)),
        "archived_chapters": _count(Chapter, Chapter.is_active.is_(False)),
        "auto_archived_chapters": _count(Chapter, Chapter.auto_archive_at.is_not(None)),
    }
