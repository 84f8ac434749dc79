"""
mahber.constants — Shared Enumerations & Time Helpers
======================================================

Single source of truth for the string values that land in the database
(roles, statuses, event types) and for the period arithmetic used by the
leaderboard horizons.
"""

from __future__ import annotations

import enum
from datetime import UTC, date, datetime, timedelta


class Role(enum.StrEnum):
    YOUTH = "youth"
    MEMBER = "member"
    TEACHER = "teacher"
    MODERATOR = "moderator"
    ADMIN = "admin"


FORUM_CREATOR_ROLES = frozenset({Role.TEACHER, Role.ADMIN})
MODERATOR_ROLES = frozenset({Role.MODERATOR, Role.ADMIN})


class TargetType(enum.StrEnum):
    TOPIC = "topic"
    POST = "post"
    DISCUSSION = "discussion"


class ModerationStatus(enum.StrEnum):
    APPROVED = "approved"
    AUTO_FLAGGED = "auto_flagged"
    BLOCKED = "blocked"
    REJECTED = "rejected"
    APPROVED_AFTER_REVIEW = "approved_after_review"


# A post may only exist behind one of these.
TERMINAL_APPROVALS = frozenset({
    ModerationStatus.APPROVED,
    ModerationStatus.APPROVED_AFTER_REVIEW,
})


class BadgeType(enum.StrEnum):
    LEARNING = "learning"
    PARTICIPATION = "participation"
    LEADERSHIP = "leadership"
    RECOGNITION = "recognition"


class EventType(enum.StrEnum):
    """Engagement ledger event types."""
    TOPIC_CREATED = "topic_created"
    POST_CREATED = "post_created"
    FORUM_CREATED = "forum_created"
    LESSON_COMPLETED = "lesson_completed"
    LIKE_RECEIVED = "like_received"
    BADGE_AWARDED = "badge_awarded"
    BONUS = "bonus"


class ActionType(enum.StrEnum):
    """Actions counted by the rate & history gate."""
    POST = "post"
    TOPIC = "topic"


class Horizon(enum.StrEnum):
    CHAPTER = "chapter"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    GLOBAL = "global"


class ModerationAction(enum.StrEnum):
    """Values written to ``moderation_logs.action``."""
    AUTO_FLAG = "auto_flag"
    RATE_LIMITED = "rate_limited"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    REVIEW_APPROVE = "review_approve"
    REVIEW_REJECT = "review_reject"
    LOCK = "lock"
    UNLOCK = "unlock"
    DELETE = "delete"
    HIDE = "hide"
    WARN = "warn"
    BONUS = "bonus"


# Lifetime horizons (chapter, global) share one fixed period.
LIFETIME_PERIOD = date(1970, 1, 1)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def start_of_week(now: datetime) -> date:
    """Monday of the ISO week containing *now*."""
    day = as_utc(now).date()
    return day - timedelta(days=day.weekday())


def first_of_month(now: datetime) -> date:
    return as_utc(now).date().replace(day=1)


def period_start_datetime(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=UTC)
