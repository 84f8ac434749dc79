"""
mahber.services.privacy_service — Member Privacy Preferences
============================================================

Writes a member's anonymity and privacy settings and projects profiles
and analytics through :mod:`mahber.engine.privacy`.

Anonymity changes reach the leaderboard immediately: every stored entry
for the member is updated in the same transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mahber.constants import EventType, as_utc, utcnow
from mahber.database.models import EngagementEvent, User, UserPrivacySettings
from mahber.engine.privacy import (
    PUBLIC_SURFACE,
    Viewer,
    analytics_row,
    identity_fields,
    project_user,
)
from mahber.errors import InvalidFieldError, NotFoundError
from mahber.services.leaderboard_service import set_entries_anonymous
from mahber.services.ledger_service import total_points

logger = logging.getLogger(__name__)


def get_settings(session: Session, user_id: int) -> UserPrivacySettings:
    """The member's settings row, created with defaults on first use."""
    settings = session.get(UserPrivacySettings, user_id)
    if settings is None:
        settings = UserPrivacySettings(
            user_id=user_id, show_on_leaderboard=True, allow_analytics=True
        )
        session.add(settings)
        session.flush()
    return settings


def update_anonymity(
    session: Session, user: User, is_anonymous: bool, *, youth_role: str = "youth"
) -> dict[str, Any]:
    if not isinstance(is_anonymous, bool):
        raise InvalidFieldError("is_anonymous must be a boolean", field="is_anonymous")
    user.is_anonymous = is_anonymous
    updated = set_entries_anonymous(session, user, youth_role)
    logger.info("User %s anonymity → %s (%d entries)", user.id, is_anonymous, updated)
    return {"user_id": user.id, "is_anonymous": user.is_anonymous, "entries_updated": updated}


def update_privacy_settings(
    session: Session,
    user: User,
    *,
    show_on_leaderboard: bool | None = None,
    allow_analytics: bool | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    settings = get_settings(session, user.id)
    for name, value in (
        ("show_on_leaderboard", show_on_leaderboard),
        ("allow_analytics", allow_analytics),
    ):
        if value is None:
            continue
        if not isinstance(value, bool):
            raise InvalidFieldError(f"{name} must be a boolean", field=name)
        setattr(settings, name, value)
    settings.updated_at = as_utc(now) if now else utcnow()
    return {
        "user_id": user.id,
        "show_on_leaderboard": settings.show_on_leaderboard,
        "allow_analytics": settings.allow_analytics,
    }


def get_profile(
    session: Session,
    viewer: Viewer,
    user_id: int,
    *,
    youth_role: str = "youth",
    surface: str = PUBLIC_SURFACE,
) -> dict[str, Any]:
    """A member's profile with points, redacted for *viewer*."""
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    profile = identity_fields(user)
    profile["points"] = total_points(session, user.id)
    return project_user(viewer, profile, youth_role=youth_role, surface=surface)


def analytics_export(
    session: Session, *, since: datetime | None = None
) -> list[dict[str, Any]]:
    """Per-member activity counts keyed by hashed id.

    Members who opted out of analytics are skipped entirely.
    """
    opted_out = set(session.scalars(
        select(UserPrivacySettings.user_id).where(UserPrivacySettings.allow_analytics.is_(False))
    ).all())

    stmt = (
        select(EngagementEvent.user_id, EngagementEvent.event_type, func.count())
        .group_by(EngagementEvent.user_id, EngagementEvent.event_type)
    )
    if since is not None:
        stmt = stmt.where(EngagementEvent.occurred_at >= since)
    counts: dict[int, dict[str, int]] = defaultdict(dict)
    for user_id, event_type, count in session.execute(stmt).all():
        counts[user_id][event_type] = int(count)

    rows = []
    for user in session.scalars(select(User).order_by(User.id)).all():
        if user.id in opted_out:
            continue
        activity = counts.get(user.id, {})
        rows.append(analytics_row(
            identity_fields(user),
            topics=activity.get(EventType.TOPIC_CREATED, 0),
            posts=activity.get(EventType.POST_CREATED, 0),
            lessons=activity.get(EventType.LESSON_COMPLETED, 0),
            badges=activity.get(EventType.BADGE_AWARDED, 0),
        ))
    return rows
