"""
mahber.engine.ranking — Leaderboard Horizons & Periods
=======================================================

Maps a leaderboard request (board type + period) to the stored horizon,
and a point-in-time to the ``period_start`` of every horizon a user's
entry is written for.  Ranks themselves are derived by the database on
read; nothing here stores one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from mahber.constants import (
    LIFETIME_PERIOD,
    Horizon,
    first_of_month,
    period_start_datetime,
    start_of_week,
)

BOARD_TYPES = ("chapter", "global")
PERIODS = ("current", "weekly", "monthly")


@dataclass(frozen=True, slots=True)
class HorizonWindow:
    horizon: Horizon
    period_start: date
    since: datetime | None  # None = lifetime


@dataclass(frozen=True, slots=True)
class BoardSelection:
    horizon: Horizon
    period_start: date
    chapter_scoped: bool


def horizon_windows(now: datetime) -> list[HorizonWindow]:
    """Every (horizon, period) a user's points are written to at *now*."""
    week = start_of_week(now)
    month = first_of_month(now)
    return [
        HorizonWindow(Horizon.CHAPTER, LIFETIME_PERIOD, None),
        HorizonWindow(Horizon.GLOBAL, LIFETIME_PERIOD, None),
        HorizonWindow(Horizon.WEEKLY, week, period_start_datetime(week)),
        HorizonWindow(Horizon.MONTHLY, month, period_start_datetime(month)),
    ]


def select_board(board_type: str, period: str, now: datetime) -> BoardSelection:
    """Resolve a ``getLeaderboard`` request.

    Raises
    ------
    ValueError
        On an unknown board type or period.
    """
    if board_type not in BOARD_TYPES:
        raise ValueError(f"Unknown leaderboard type {board_type!r}")
    if period not in PERIODS:
        raise ValueError(f"Unknown leaderboard period {period!r}")

    chapter_scoped = board_type == "chapter"
    if period == "weekly":
        return BoardSelection(Horizon.WEEKLY, start_of_week(now), chapter_scoped)
    if period == "monthly":
        return BoardSelection(Horizon.MONTHLY, first_of_month(now), chapter_scoped)
    horizon = Horizon.CHAPTER if chapter_scoped else Horizon.GLOBAL
    return BoardSelection(horizon, LIFETIME_PERIOD, chapter_scoped)
