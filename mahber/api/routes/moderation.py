"""
mahber.api.routes.moderation — Review queue & moderator actions
===============================================================

Role checks happen in the service layer; these routes only authenticate.
"""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel

from mahber.api.deps import Context, CurrentUser, respond
from mahber.errors import operation
from mahber.services import community_service, forum_service

router = APIRouter(prefix="/moderation", tags=["moderation"])


class ReviewDecision(BaseModel):
    action: str
    reason: str | None = None


class LockRequest(BaseModel):
    locked: bool = True
    reason: str | None = None


class PostAction(BaseModel):
    action: str
    reason: str | None = None


class BonusAward(BaseModel):
    user_id: int
    points: int
    reason: str


class BadgeGrant(BaseModel):
    user_id: int
    badge_id: int


@router.get("/queue")
def review_queue(user_id: CurrentUser, ctx: Context, limit: int = Query(50, ge=1, le=200)):
    return respond(operation(forum_service.list_review_queue)(ctx, user_id, limit=limit))


@router.post("/records/{record_id}/review")
def review_record(record_id: int, body: ReviewDecision, user_id: CurrentUser, ctx: Context):
    return respond(operation(forum_service.review_flagged)(
        ctx, user_id, record_id, body.action, reason=body.reason,
    ))


@router.post("/topics/{topic_id}/lock")
def lock_topic(topic_id: int, body: LockRequest, user_id: CurrentUser, ctx: Context):
    return respond(operation(forum_service.lock_topic)(
        ctx, user_id, topic_id, locked=body.locked, reason=body.reason,
    ))


@router.post("/posts/{post_id}")
def moderate_post(post_id: int, body: PostAction, user_id: CurrentUser, ctx: Context):
    return respond(operation(forum_service.moderate_post)(
        ctx, user_id, post_id, body.action, reason=body.reason,
    ))


@router.post("/bonus")
def award_bonus(body: BonusAward, user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.award_bonus)(
        ctx, user_id, body.user_id, body.points, body.reason,
    ))


@router.post("/badges/grant")
def grant_badge(body: BadgeGrant, user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.grant_badge)(
        ctx, user_id, body.user_id, body.badge_id,
    ))


@router.post("/chapters/{chapter_id}/restore")
def restore_chapter(chapter_id: int, user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.restore_chapter)(ctx, user_id, chapter_id))


@router.get("/overview")
def overview(user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.moderation_overview)(ctx, user_id))


@router.get("/analytics")
def analytics(user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.analytics_export)(ctx, user_id))


@router.get("/users/{target_id}")
def member_profile(target_id: int, user_id: CurrentUser, ctx: Context):
    return respond(operation(community_service.member_profile)(ctx, user_id, target_id))
