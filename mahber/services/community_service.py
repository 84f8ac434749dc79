"""
mahber.services.community_service — Community Operations
========================================================

Request-path operations outside the forum tree: leaderboards, anonymity
and privacy preferences, badges, lesson completion, bonus points, search,
chapter restore and the moderator overview.

Like :mod:`mahber.services.forum_service`, each call is one transaction
and raises :class:`~mahber.errors.MahberError` on failure.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from mahber.constants import MODERATOR_ROLES, Role, as_utc, utcnow
from mahber.database.engine import get_session
from mahber.database.models import BadgeQueueItem, LeaderboardQueueItem
from mahber.engine.privacy import MODERATION_SURFACE, PUBLIC_SURFACE, Viewer
from mahber.errors import ForbiddenError, InvalidFieldError
from mahber.services import (
    achievement_service,
    archive_service,
    leaderboard_service,
    ledger_service,
    moderation_service,
    privacy_service,
    search_service,
)
from mahber.services.forum_service import load_user
from mahber.services.update_queue import queue_depth

if TYPE_CHECKING:
    from mahber.context import ServiceContext


def _viewer(session, viewer_id: int | None) -> Viewer:
    return Viewer.of(load_user(session, viewer_id)) if viewer_id is not None else Viewer()


# ---------------------------------------------------------------------------
# Leaderboards & privacy
# ---------------------------------------------------------------------------
def get_leaderboard(
    ctx: ServiceContext,
    viewer_id: int | None,
    *,
    board_type: str = "chapter",
    period: str = "current",
    chapter_id: int | None = None,
    include_anonymous: bool = True,
    limit: int = leaderboard_service.DEFAULT_LIMIT,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    if not 1 <= limit <= 100:
        raise InvalidFieldError("limit must be between 1 and 100", field="limit")
    with get_session(ctx.engine) as session:
        return leaderboard_service.get_leaderboard(
            session,
            _viewer(session, viewer_id),
            board_type=board_type,
            period=period,
            chapter_id=chapter_id,
            include_anonymous=include_anonymous,
            limit=limit,
            youth_role=ctx.youth_role,
            now=now,
        )


def update_anonymity(ctx: ServiceContext, user_id: int, is_anonymous: bool) -> dict[str, Any]:
    with get_session(ctx.engine) as session:
        user = load_user(session, user_id)
        return privacy_service.update_anonymity(
            session, user, is_anonymous, youth_role=ctx.youth_role
        )


def update_privacy_settings(
    ctx: ServiceContext,
    user_id: int,
    *,
    show_on_leaderboard: bool | None = None,
    allow_analytics: bool | None = None,
) -> dict[str, Any]:
    with get_session(ctx.engine) as session:
        user = load_user(session, user_id)
        return privacy_service.update_privacy_settings(
            session, user,
            show_on_leaderboard=show_on_leaderboard,
            allow_analytics=allow_analytics,
        )


def get_profile(ctx: ServiceContext, viewer_id: int | None, user_id: int) -> dict[str, Any]:
    """Public profile.  Moderators get the same redaction as everyone else."""
    with get_session(ctx.engine) as session:
        viewer = _viewer(session, viewer_id)
        return privacy_service.get_profile(
            session, viewer, user_id, youth_role=ctx.youth_role, surface=PUBLIC_SURFACE
        )


def member_profile(ctx: ServiceContext, moderator_id: int, user_id: int) -> dict[str, Any]:
    """Unredacted profile for the moderation surface."""
    with get_session(ctx.engine) as session:
        moderator = load_user(session, moderator_id)
        if moderator.role not in MODERATOR_ROLES:
            raise ForbiddenError("Only moderators can view member identities")
        return privacy_service.get_profile(
            session, Viewer.of(moderator), user_id,
            youth_role=ctx.youth_role, surface=MODERATION_SURFACE,
        )


def analytics_export(ctx: ServiceContext, actor_id: int) -> list[dict[str, Any]]:
    with get_session(ctx.engine) as session:
        actor = load_user(session, actor_id)
        if actor.role != Role.ADMIN:
            raise ForbiddenError("Only admins can export analytics")
        return privacy_service.analytics_export(session)


# ---------------------------------------------------------------------------
# Badges, lessons, bonuses
# ---------------------------------------------------------------------------
def get_user_badges(ctx: ServiceContext, user_id: int) -> list[dict[str, Any]]:
    with get_session(ctx.engine) as session:
        load_user(session, user_id)
        return achievement_service.get_badges(session, user_id)


def get_badge_progress(ctx: ServiceContext, user_id: int) -> list[dict[str, Any]]:
    with get_session(ctx.engine) as session:
        load_user(session, user_id)
        return achievement_service.get_badge_progress(session, user_id)


def complete_lesson(
    ctx: ServiceContext, user_id: int, lesson_id: int, *, now: datetime | None = None
) -> dict[str, Any]:
    with get_session(ctx.engine) as session:
        user = load_user(session, user_id)
        event = ledger_service.record_lesson_completed(
            session, user, lesson_id, ctx.config.points.lesson, now=now
        )
        return {
            "lesson_id": lesson_id,
            "newly_completed": event is not None,
            "points_earned": event.points_earned if event is not None else 0,
        }


def award_bonus(
    ctx: ServiceContext,
    actor_id: int,
    user_id: int,
    points: int,
    reason: str,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    with get_session(ctx.engine) as session:
        actor = load_user(session, actor_id)
        event = ledger_service.award_bonus(session, actor, user_id, points, reason, now=now)
        return {"event_id": event.id, "user_id": user_id, "points": event.points_earned}


def grant_badge(
    ctx: ServiceContext,
    actor_id: int,
    user_id: int,
    badge_id: int,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    with get_session(ctx.engine) as session:
        actor = load_user(session, actor_id)
        awarded = achievement_service.grant_badge(session, actor, user_id, badge_id, now=now)
        return {"user_id": user_id, "badge_id": badge_id, "awarded": awarded is not None}


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
def search_posts(
    ctx: ServiceContext,
    viewer_id: int | None,
    query: str,
    *,
    chapter_id: int | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    if not (query or "").strip():
        raise InvalidFieldError("q is required", field="q")
    with get_session(ctx.engine) as session:
        return search_service.search_forum_posts(
            session,
            query,
            chapter_id=chapter_id,
            viewer=_viewer(session, viewer_id),
            limit=limit,
            settings=ctx.config.search,
            youth_role=ctx.youth_role,
        )


# ---------------------------------------------------------------------------
# Chapters & oversight
# ---------------------------------------------------------------------------
def restore_chapter(
    ctx: ServiceContext, actor_id: int, chapter_id: int, *, now: datetime | None = None
) -> dict[str, int]:
    with get_session(ctx.engine) as session:
        actor = load_user(session, actor_id)
        return archive_service.restore_chapter(session, actor, chapter_id, now=now)


def chapter_stats(
    ctx: ServiceContext, chapter_id: int, *, since: datetime | None = None
) -> dict[str, int]:
    with get_session(ctx.engine) as session:
        return ledger_service.chapter_rollup(
            session, chapter_id, since=as_utc(since) if since else None
        )


def moderation_overview(ctx: ServiceContext, moderator_id: int) -> dict[str, Any]:
    """Review backlog, archive counts, queue depths and watched members."""
    now = utcnow()
    with get_session(ctx.engine) as session:
        moderator = load_user(session, moderator_id)
        if moderator.role not in MODERATOR_ROLES:
            raise ForbiddenError("Moderator role required")
        stats = moderation_service.moderation_stats(session)
        return {
            "pending_review": stats.pending_review,
            "by_status": stats.by_status,
            "archive": archive_service.get_archiving_stats(session),
            "queues": {
                "badge": queue_depth(session, BadgeQueueItem),
                "leaderboard": queue_depth(session, LeaderboardQueueItem),
            },
            "suspicious_users": ctx.monitor.suspicious_users(now),
        }
