"""
mahber.services.achievement_service — Badge Awards
==================================================

Database side of badge evaluation: loads a member's aggregates, asks
:mod:`mahber.engine.badges` which badges are newly earned, and awards them.

Awarding is idempotent: the insert runs in a SAVEPOINT against the unique
``(user_id, badge_id)`` constraint, and a conflict means another worker
got there first.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mahber.constants import MODERATOR_ROLES, EventType, as_utc, utcnow
from mahber.database.models import Badge, User, UserBadge
from mahber.engine.badges import BadgeSpec, evaluate_badges, progress
from mahber.engine.updates import BadgeUpdate, LeaderboardUpdate
from mahber.errors import ForbiddenError, NotFoundError
from mahber.services import ledger_service
from mahber.services.update_queue import enqueue

logger = logging.getLogger(__name__)


def _active_badges(session: Session) -> list[BadgeSpec]:
    rows = session.scalars(
        select(Badge).where(Badge.is_active.is_(True)).order_by(Badge.id)
    ).all()
    return [
        BadgeSpec(id=b.id, name=b.name, points=b.points or 0, requirements=dict(b.requirements or {}))
        for b in rows
    ]


def _owned_badge_ids(session: Session, user_id: int) -> set[int]:
    return set(session.scalars(
        select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
    ).all())


def award_badge(
    session: Session,
    user: User,
    badge: BadgeSpec | Badge,
    *,
    now: datetime | None = None,
    granted_by: int | None = None,
) -> UserBadge | None:
    """Insert a UserBadge; return ``None`` if the member already holds it."""
    now = as_utc(now) if now else utcnow()
    user_badge = UserBadge(
        user_id=user.id,
        badge_id=badge.id,
        points=badge.points or 0,
        awarded_at=now,
        metadata_={"granted_by": granted_by} if granted_by else {"source": "automatic"},
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(user_badge)
            session.flush()
    except IntegrityError:
        logger.debug("Badge %s already held by user %s", badge.id, user.id)
        return None

    ledger_service.record_event(
        session, user, EventType.BADGE_AWARDED, 0,
        target_type="badge", target_id=badge.id,
        metadata={"badge": badge.name, "badge_points": badge.points or 0},
        now=now,
        evaluate_badges=False,
    )
    logger.info("Badge %r awarded to user %s", badge.name, user.id)
    return user_badge


def evaluate_user(session: Session, update: BadgeUpdate, *, now: datetime | None = None) -> list[str]:
    """Award every badge *update*'s member now qualifies for.

    Awards can unlock point-threshold badges, so evaluation repeats until
    nothing new is earned.  Always queues a leaderboard refresh.
    """
    now = as_utc(now) if now else utcnow()
    user = session.get(User, update.user_id)
    if user is None:
        logger.warning("Badge update for unknown user %s ignored", update.user_id)
        return []

    badges = _active_badges(session)
    owned = _owned_badge_ids(session, user.id)
    awarded: list[str] = []
    event_type = update.event_type

    for _ in range(len(badges) + 1):
        ctx = ledger_service.badge_context(session, user.id)
        earned = evaluate_badges(badges, ctx, event_type=event_type, owned=owned)
        if not earned:
            break
        for badge in earned:
            owned.add(badge.id)
            if award_badge(session, user, badge, now=now) is not None:
                awarded.append(badge.name)
        event_type = EventType.BADGE_AWARDED

    enqueue(
        session,
        LeaderboardUpdate(user.id, reason="badge_awarded" if awarded else "points_changed"),
        now=now,
    )
    return awarded


def grant_badge(
    session: Session,
    actor: User,
    user_id: int,
    badge_id: int,
    *,
    now: datetime | None = None,
) -> UserBadge | None:
    """Manual award by a moderator or admin."""
    if actor.role not in MODERATOR_ROLES:
        raise ForbiddenError("Only moderators can grant badges")
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    badge = session.get(Badge, badge_id)
    if badge is None:
        raise NotFoundError("Badge not found")

    user_badge = award_badge(session, user, badge, now=now, granted_by=actor.id)
    if user_badge is not None:
        enqueue(session, LeaderboardUpdate(user.id, "badge_awarded", badge.id), now=now)
    return user_badge


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_badges(session: Session, user_id: int) -> list[dict[str, Any]]:
    rows = session.execute(
        select(UserBadge, Badge)
        .join(Badge, Badge.id == UserBadge.badge_id)
        .where(UserBadge.user_id == user_id)
        .order_by(UserBadge.awarded_at.asc(), UserBadge.id.asc())
    ).all()
    return [
        {
            "badge_id": badge.id,
            "name": badge.name,
            "type": badge.type,
            "description": badge.description,
            "points": user_badge.points,
            "awarded_at": as_utc(user_badge.awarded_at).isoformat(),
        }
        for user_badge, badge in rows
    ]


def get_badge_progress(session: Session, user_id: int) -> list[dict[str, Any]]:
    """Progress toward every active badge the member doesn't hold yet."""
    owned = _owned_badge_ids(session, user_id)
    ctx = ledger_service.badge_context(session, user_id)
    return [
        {"badge_id": badge.id, "name": badge.name, "requirements": progress(badge.requirements, ctx)}
        for badge in _active_badges(session)
        if badge.id not in owned and badge.requirements
    ]
