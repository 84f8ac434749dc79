"""
mahber.services.leaderboard_service — Leaderboard Writes & Reads
================================================================

Writes: :func:`refresh_user_entries` recomputes a member's points for
every horizon (chapter lifetime, global lifetime, current week, current
month) and upserts one row each.  ``updated_at`` moves only when the
points change, so ties keep resolving in favour of whoever got there
first.

Reads: ranks are derived with ``RANK() OVER (PARTITION BY chapter_id,
horizon, period_start ORDER BY points DESC, updated_at ASC)`` and are
never stored.  Every row passes through the privacy filter.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from mahber.constants import as_utc, utcnow
from mahber.database.models import LeaderboardEntry, User, UserPrivacySettings
from mahber.engine.privacy import Viewer, filter_leaderboard
from mahber.engine.ranking import BOARD_TYPES, horizon_windows, select_board
from mahber.engine.updates import LeaderboardUpdate
from mahber.errors import InvalidFieldError
from mahber.services.ledger_service import total_points

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


def entry_is_anonymous(user: User, youth_role: str) -> bool:
    return bool(user.is_anonymous) or user.role == youth_role


def refresh_user_entries(
    session: Session,
    update_msg: LeaderboardUpdate,
    *,
    youth_role: str = "youth",
    now: datetime | None = None,
) -> int:
    """Upsert every horizon entry for the member.  Returns rows changed."""
    now = as_utc(now) if now else utcnow()
    user = session.get(User, update_msg.user_id)
    if user is None:
        logger.warning("Leaderboard update for unknown user %s ignored", update_msg.user_id)
        return 0

    anonymous = entry_is_anonymous(user, youth_role)
    changed = 0
    for window in horizon_windows(now):
        points = total_points(session, user.id, since=window.since)
        entry = session.scalar(
            select(LeaderboardEntry).where(
                LeaderboardEntry.user_id == user.id,
                LeaderboardEntry.horizon == window.horizon,
                LeaderboardEntry.period_start == window.period_start,
            )
        )
        if entry is None:
            if points == 0 and window.since is not None:
                continue
            session.add(LeaderboardEntry(
                user_id=user.id,
                chapter_id=user.chapter_id,
                horizon=window.horizon,
                period_start=window.period_start,
                points=points,
                is_anonymous=anonymous,
                updated_at=now,
            ))
            changed += 1
            continue

        entry.chapter_id = user.chapter_id
        entry.is_anonymous = anonymous
        if entry.points != points:
            entry.points = points
            entry.updated_at = now
            changed += 1
    return changed


def set_entries_anonymous(session: Session, user: User, youth_role: str = "youth") -> int:
    """Propagate the member's current anonymity to every stored entry."""
    result = session.execute(
        update(LeaderboardEntry)
        .where(LeaderboardEntry.user_id == user.id)
        .values(is_anonymous=entry_is_anonymous(user, youth_role))
    )
    return result.rowcount or 0


def get_leaderboard(
    session: Session,
    viewer: Viewer,
    *,
    board_type: str = "chapter",
    period: str = "current",
    chapter_id: int | None = None,
    include_anonymous: bool = True,
    limit: int = DEFAULT_LIMIT,
    youth_role: str = "youth",
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Ranked, privacy-filtered leaderboard rows."""
    now = as_utc(now) if now else utcnow()
    try:
        board = select_board(board_type, period, now)
    except ValueError as exc:
        field = "type" if board_type not in BOARD_TYPES else "period"
        raise InvalidFieldError(str(exc), field=field) from exc

    partition = [LeaderboardEntry.horizon, LeaderboardEntry.period_start]
    filters = [
        LeaderboardEntry.horizon == board.horizon,
        LeaderboardEntry.period_start == board.period_start,
        or_(
            UserPrivacySettings.show_on_leaderboard.is_(None),
            UserPrivacySettings.show_on_leaderboard.is_(True),
        ),
    ]
    if board.chapter_scoped:
        chapter_id = chapter_id if chapter_id is not None else viewer.chapter_id
        if chapter_id is None:
            raise InvalidFieldError("A chapter is required for chapter leaderboards", field="chapter_id")
        partition.insert(0, LeaderboardEntry.chapter_id)
        filters.append(LeaderboardEntry.chapter_id == chapter_id)

    rank = func.rank().over(
        partition_by=partition,
        order_by=(LeaderboardEntry.points.desc(), LeaderboardEntry.updated_at.asc()),
    ).label("rank")
    ranked = (
        select(
            LeaderboardEntry.user_id,
            LeaderboardEntry.chapter_id,
            LeaderboardEntry.points,
            LeaderboardEntry.is_anonymous,
            LeaderboardEntry.updated_at,
            rank,
        )
        .outerjoin(UserPrivacySettings, UserPrivacySettings.user_id == LeaderboardEntry.user_id)
        .where(*filters)
        .subquery()
    )
    rows = session.execute(
        select(ranked, User.first_name, User.last_name, User.role, User.is_anonymous.label("user_anonymous"))
        .join(User, User.id == ranked.c.user_id)
        .order_by(ranked.c.rank.asc(), ranked.c.user_id.asc())
        .limit(limit)
    ).all()

    entries = [
        {
            "rank": row.rank,
            "points": row.points,
            "user_id": row.user_id,
            "first_name": row.first_name,
            "last_name": row.last_name,
            "role": row.role,
            "chapter_id": row.chapter_id,
            "is_anonymous": bool(row.is_anonymous or row.user_anonymous),
            "horizon": str(board.horizon),
            "period_start": board.period_start.isoformat(),
        }
        for row in rows
    ]
    return filter_leaderboard(
        entries, viewer, include_anonymous=include_anonymous, youth_role=youth_role
    )
