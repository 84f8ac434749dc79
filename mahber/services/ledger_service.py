"""
mahber.services.ledger_service — Engagement Ledger
==================================================

Append-only record of point-earning events plus the aggregates derived
from it.  Every ledger write queues a :class:`BadgeUpdate` in the same
transaction; badges and leaderboards catch up asynchronously.

A member's points are ``Σ user_badges.points + Σ engagement_events.points_earned``.
``badge_awarded`` events carry zero points (the badge row holds them) so
nothing is counted twice.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from mahber.constants import (
    EventType,
    ModerationAction,
    Role,
    as_utc,
    utcnow,
)
from mahber.database.models import (
    EngagementEvent,
    Post,
    Topic,
    User,
    UserBadge,
    UserLessonProgress,
)
from mahber.engine.badges import BadgeContext
from mahber.engine.updates import BadgeUpdate
from mahber.errors import ForbiddenError, InvalidFieldError, NotFoundError
from mahber.services.moderation_service import log_moderation_action
from mahber.services.update_queue import enqueue

logger = logging.getLogger(__name__)

BONUS_ROLES = frozenset({Role.TEACHER, Role.MODERATOR, Role.ADMIN})
MAX_BONUS_POINTS = 1000


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def record_event(
    session: Session,
    user: User,
    event_type: str,
    points: int = 0,
    *,
    target_type: str | None = None,
    target_id: int | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
    evaluate_badges: bool = True,
) -> EngagementEvent:
    """Append one event for *user* and queue badge evaluation."""
    now = as_utc(now) if now else utcnow()
    event = EngagementEvent(
        user_id=user.id,
        chapter_id=user.chapter_id,
        event_type=event_type,
        target_type=target_type,
        target_id=target_id,
        points_earned=points,
        occurred_at=now,
        metadata_=metadata,
    )
    session.add(event)
    session.flush()
    if evaluate_badges:
        enqueue(session, BadgeUpdate(user.id, event_type, event.id), now=now)
    return event


def award_bonus(
    session: Session,
    actor: User,
    user_id: int,
    points: int,
    reason: str,
    *,
    now: datetime | None = None,
) -> EngagementEvent:
    """Manual bonus points from a teacher, moderator or admin."""
    if actor.role not in BONUS_ROLES:
        raise ForbiddenError("Only staff can award bonus points")
    if not isinstance(points, int) or points <= 0 or points > MAX_BONUS_POINTS:
        raise InvalidFieldError(
            f"points must be between 1 and {MAX_BONUS_POINTS}", field="points"
        )
    if not reason or not reason.strip():
        raise InvalidFieldError("A reason is required", field="reason")
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")

    event = record_event(
        session, user, EventType.BONUS, points,
        metadata={"reason": reason.strip(), "granted_by": actor.id}, now=now,
    )
    log_moderation_action(
        session,
        action=ModerationAction.BONUS,
        moderator_id=actor.id,
        user_id=user.id,
        reason=reason.strip(),
        details={"points": points},
        now=now,
    )
    logger.info("Bonus %d points → user %s (by %s)", points, user.id, actor.id)
    return event


def record_lesson_completed(
    session: Session,
    user: User,
    lesson_id: int,
    points: int,
    *,
    now: datetime | None = None,
) -> EngagementEvent | None:
    """Mark a lesson complete.  Returns ``None`` if it already was."""
    now = as_utc(now) if now else utcnow()
    progress = session.scalar(
        select(UserLessonProgress).where(
            UserLessonProgress.user_id == user.id,
            UserLessonProgress.lesson_id == lesson_id,
        )
    )
    if progress is not None and progress.completed:
        return None
    if progress is None:
        progress = UserLessonProgress(user_id=user.id, lesson_id=lesson_id)
        session.add(progress)
    progress.completed = True
    progress.completed_at = now

    return record_event(
        session, user, EventType.LESSON_COMPLETED, points,
        target_type="lesson", target_id=lesson_id, now=now,
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------
def total_points(session: Session, user_id: int, *, since: datetime | None = None) -> int:
    """Badge points plus ledger points, optionally from *since* onward."""
    events = select(func.coalesce(func.sum(EngagementEvent.points_earned), 0)).where(
        EngagementEvent.user_id == user_id
    )
    badges = select(func.coalesce(func.sum(UserBadge.points), 0)).where(
        UserBadge.user_id == user_id
    )
    if since is not None:
        events = events.where(EngagementEvent.occurred_at >= since)
        badges = badges.where(UserBadge.awarded_at >= since)
    return int(session.scalar(events) or 0) + int(session.scalar(badges) or 0)


def badge_context(session: Session, user_id: int) -> BadgeContext:
    """Current aggregates used by badge requirements."""
    lessons = session.scalar(
        select(func.count()).select_from(UserLessonProgress).where(
            UserLessonProgress.user_id == user_id,
            UserLessonProgress.completed.is_(True),
        )
    ) or 0
    posts = session.scalar(
        select(func.count()).select_from(Post).where(
            Post.author_id == user_id, Post.is_hidden.is_(False)
        )
    ) or 0
    topics = session.scalar(
        select(func.count()).select_from(Topic).where(Topic.author_id == user_id)
    ) or 0
    max_likes = session.scalar(
        select(func.coalesce(func.max(Post.like_count), 0)).where(Post.author_id == user_id)
    ) or 0
    return BadgeContext(
        lessons_completed=int(lessons),
        forum_posts=int(posts),
        topics_created=int(topics),
        max_post_likes=int(max_likes),
        total_points=total_points(session, user_id),
    )


def chapter_rollup(
    session: Session, chapter_id: int, *, since: datetime | None = None
) -> dict[str, int]:
    """Ledger totals for events recorded under *chapter_id*."""
    stmt = select(
        func.coalesce(func.sum(EngagementEvent.points_earned), 0),
        func.count(EngagementEvent.id),
        func.count(distinct(EngagementEvent.user_id)),
    ).where(EngagementEvent.chapter_id == chapter_id)
    if since is not None:
        stmt = stmt.where(EngagementEvent.occurred_at >= since)
    points, events, members = session.execute(stmt).one()

    badge_stmt = (
        select(func.coalesce(func.sum(UserBadge.points), 0))
        .join(User, User.id == UserBadge.user_id)
        .where(User.chapter_id == chapter_id)
    )
    if since is not None:
        badge_stmt = badge_stmt.where(UserBadge.awarded_at >= since)
    badge_points = session.scalar(badge_stmt) or 0

    return {
        "chapter_id": chapter_id,
        "event_points": int(points),
        "badge_points": int(badge_points),
        "total_points": int(points) + int(badge_points),
        "events": int(events),
        "active_members": int(members),
    }


def last_chapter_activity(session: Session) -> dict[int, datetime]:
    """Most recent ledger event per chapter."""
    rows = session.execute(
        select(EngagementEvent.chapter_id, func.max(EngagementEvent.occurred_at))
        .where(EngagementEvent.chapter_id.is_not(None))
        .group_by(EngagementEvent.chapter_id)
    ).all()
    return {chapter_id: as_utc(at) for chapter_id, at in rows}
