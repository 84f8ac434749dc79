"""
mahber.services.publisher_service — Scheduled Topic Publisher
=============================================================

Teachers and members can queue a topic for later.  The publisher job picks
up due rows and sends each one through :func:`forum_service.create_topic`,
so scheduled content gets exactly the same moderation, rate limits, ledger
event and search indexing as a live submission.

Row status moves ``pending`` → ``published`` (with ``topic_id``) or
``failed`` (with the error code).  A failed row is never retried.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from mahber.constants import as_utc, utcnow
from mahber.database.engine import get_session
from mahber.database.models import Forum, ScheduledTopic
from mahber.engine.access import can_access_forum
from mahber.errors import ForbiddenError, InvalidFieldError, MahberError, NotFoundError
from mahber.services import forum_service

if TYPE_CHECKING:
    from mahber.context import ServiceContext

logger = logging.getLogger(__name__)

PENDING = "pending"
PUBLISHED = "published"
FAILED = "failed"

DEFAULT_BATCH = 50


def schedule_topic(
    ctx: ServiceContext,
    author_id: int,
    forum_id: int,
    *,
    title: str,
    content: str,
    publish_at: datetime,
    is_private: bool = False,
    allowed_chapter_id: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = as_utc(now) if now else utcnow()
    if publish_at is None:
        raise InvalidFieldError("publish_at is required", field="publish_at")
    publish_at = as_utc(publish_at)
    if publish_at <= now:
        raise InvalidFieldError("publish_at must be in the future", field="publish_at")
    title = (title or "").strip()
    content = (content or "").strip()
    if not title:
        raise InvalidFieldError("title is required", field="title")
    if not content:
        raise InvalidFieldError("content is required", field="content")

    with get_session(ctx.engine) as session:
        author = forum_service.load_user(session, author_id)
        forum = session.get(Forum, forum_id)
        if forum is None:
            raise NotFoundError("Forum not found")
        if not can_access_forum(author, forum):
            raise ForbiddenError("You do not have access to this forum")

        row = ScheduledTopic(
            forum_id=forum.id,
            author_id=author.id,
            title=title,
            content=content,
            is_private=bool(is_private),
            allowed_chapter_id=allowed_chapter_id,
            publish_at=publish_at,
            status=PENDING,
            created_at=now,
        )
        session.add(row)
        session.flush()
        return {"id": row.id, "status": row.status, "publish_at": publish_at.isoformat()}


def _due_ids(ctx: ServiceContext, now: datetime, limit: int) -> list[int]:
    with get_session(ctx.engine) as session:
        return list(session.scalars(
            select(ScheduledTopic.id)
            .where(ScheduledTopic.status == PENDING, ScheduledTopic.publish_at <= now)
            .order_by(ScheduledTopic.publish_at.asc(), ScheduledTopic.id.asc())
            .limit(limit)
        ).all())


def _mark(ctx: ServiceContext, row_id: int, **values: Any) -> None:
    with get_session(ctx.engine) as session:
        row = session.get(ScheduledTopic, row_id)
        for key, value in values.items():
            setattr(row, key, value)


def run_publisher(
    ctx: ServiceContext, *, now: datetime | None = None, limit: int = DEFAULT_BATCH
) -> dict[str, int]:
    """Publish every due scheduled topic.  Never raises on a single row."""
    now = as_utc(now) if now else utcnow()
    summary = {"published": 0, "failed": 0}

    for row_id in _due_ids(ctx, now, limit):
        with get_session(ctx.engine) as session:
            row = session.get(ScheduledTopic, row_id)
            job = {
                "author_id": row.author_id,
                "forum_id": row.forum_id,
                "title": row.title,
                "content": row.content,
                "is_private": row.is_private,
                "allowed_chapter_id": row.allowed_chapter_id,
            }
        try:
            result = forum_service.create_topic(
                ctx,
                job["author_id"],
                job["forum_id"],
                title=job["title"],
                content=job["content"],
                is_private=job["is_private"],
                allowed_chapter_id=job["allowed_chapter_id"],
                now=now,
            )
        except MahberError as exc:
            logger.warning("Scheduled topic %s not published: %s", row_id, exc.code)
            _mark(ctx, row_id, status=FAILED, error=exc.code)
            summary["failed"] += 1
            continue
        _mark(ctx, row_id, status=PUBLISHED, topic_id=result["topic"]["id"])
        summary["published"] += 1

    if summary["published"] or summary["failed"]:
        logger.info(
            "Publisher: %d published, %d failed", summary["published"], summary["failed"]
        )
    return summary
