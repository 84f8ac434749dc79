"""
mahber.api.routes.community — Leaderboards, privacy, badges & lessons
=====================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel

from mahber.api.deps import Context, CurrentUser, OptionalUser, respond
from mahber.errors import operation
from mahber.services import community_service

router = APIRouter(tags=["community"])


class AnonymityUpdate(BaseModel):
    is_anonymous: bool


class PrivacyUpdate(BaseModel):
    show_on_leaderboard: bool | None = None
    allow_analytics: bool | None = None


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------
@router.get("/leaderboard")
def get_leaderboard(
    user_id: OptionalUser,
    ctx: Context,
    type: str = Query("chapter"),
    period: str = Query("current"),
    chapter_id: int | None = None,
    include_anonymous: bool = True,
    limit: int = Query(50),
):
    return respond(operation(community_service.get_leaderboard)(
        ctx, user_id,
        board_type=type,
        period=period,
        chapter_id=chapter_id,
        include_anonymous=include_anonymous,
        limit=limit,
    ))


@router.get("/chapters/{chapter_id}/stats")
def chapter_stats(chapter_id: int, ctx: Context):
    return respond(operation(community_service.chapter_stats)(ctx, chapter_id))


# ---------------------------------------------------------------------------
# Privacy
# ---------------------------------------------------------------------------
@router.put("/me/anonymity")
def update_anonymity(body: AnonymityUpdate, user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.update_anonymity)(
        ctx, user_id, body.is_anonymous
    ))


@router.put("/me/privacy")
def update_privacy(body: PrivacyUpdate, user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.update_privacy_settings)(
        ctx, user_id,
        show_on_leaderboard=body.show_on_leaderboard,
        allow_analytics=body.allow_analytics,
    ))


@router.get("/users/{target_id}")
def get_profile(target_id: int, user_id: OptionalUser, ctx: Context):
    return respond(operation(community_service.get_profile)(ctx, user_id, target_id))


# ---------------------------------------------------------------------------
# Badges & lessons
# ---------------------------------------------------------------------------
@router.get("/users/{target_id}/badges")
def get_badges(target_id: int, ctx: Context):
    return respond(operation(community_service.get_user_badges)(ctx, target_id))


@router.get("/me/badge-progress")
def get_badge_progress(user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.get_badge_progress)(ctx, user_id))


@router.post("/lessons/{lesson_id}/complete")
def complete_lesson(lesson_id: int, user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.complete_lesson)(ctx, user_id, lesson_id))
