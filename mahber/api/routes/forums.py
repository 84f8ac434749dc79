"""
mahber.api.routes.forums — Forums, topics, posts, likes & search
================================================================
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Query
from pydantic import BaseModel

from mahber.api.deps import Context, CurrentUser, OptionalUser, respond
from mahber.errors import operation
from mahber.services import community_service, forum_service, publisher_service

router = APIRouter(tags=["forums"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ForumCreate(BaseModel):
    title: str
    description: str | None = None
    category: str | None = None
    is_public: bool = False


class TopicCreate(BaseModel):
    title: str
    content: str
    is_private: bool = False
    allowed_chapter_id: int | None = None


class TopicSchedule(TopicCreate):
    publish_at: datetime


class PostCreate(BaseModel):
    content: str
    parent_id: int | None = None


# ---------------------------------------------------------------------------
# Forums & topics
# ---------------------------------------------------------------------------
@router.post("/forums")
def create_forum(body: ForumCreate, user_id: CurrentUser, ctx: Context):
    return respond(operation(forum_service.create_forum)(
        ctx, user_id,
        title=body.title,
        description=body.description,
        category=body.category,
        is_public=body.is_public,
    ))


@router.post("/forums/{forum_id}/topics")
def create_topic(forum_id: int, body: TopicCreate, user_id: CurrentUser, ctx: Context):
    return respond(operation(forum_service.create_topic)(
        ctx, user_id, forum_id,
        title=body.title,
        content=body.content,
        is_private=body.is_private,
        allowed_chapter_id=body.allowed_chapter_id,
    ))


@router.post("/forums/{forum_id}/scheduled-topics")
def schedule_topic(forum_id: int, body: TopicSchedule, user_id: CurrentUser, ctx: Context):
    return respond(operation(publisher_service.schedule_topic)(
        ctx, user_id, forum_id,
        title=body.title,
        content=body.content,
        publish_at=body.publish_at,
        is_private=body.is_private,
        allowed_chapter_id=body.allowed_chapter_id,
    ))


@router.get("/topics/{topic_id}")
def get_topic(topic_id: int, user_id: OptionalUser, ctx: Context):
    return respond(operation(forum_service.get_topic)(ctx, user_id, topic_id))


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
@router.post("/topics/{topic_id}/posts")
def create_post(topic_id: int, body: PostCreate, user_id: CurrentUser, ctx: Context):
    return respond(operation(forum_service.create_post)(
        ctx, user_id, topic_id, content=body.content, parent_id=body.parent_id,
    ))


@router.post("/posts/{post_id}/like")
def like_post(post_id: int, user_id: CurrentUser, ctx: Context):
    return respond(operation(forum_service.like_post)(ctx, user_id, post_id))


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
@router.get("/search")
def search_posts(
    user_id: OptionalUser,
    ctx: Context,
    q: str = Query(""),
    chapter_id: int | None = None,
    limit: int = Query(20, ge=1, le=100),
):
    return respond(operation(community_service.search_posts)(
        ctx, user_id, q, chapter_id=chapter_id, limit=limit,
    ))
