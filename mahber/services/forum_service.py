"""
mahber.services.forum_service — Forum Operations
================================================

Request-path operations for forums, topics and posts.  Each call opens one
transaction that groups the moderation decision, the content insert, the
ledger event, the queued badge work and the search index entry.

A non-approved decision is committed **before** the caller sees the error,
so blocked and auto-flagged submissions always leave a moderation record
behind.

Every function raises :class:`~mahber.errors.MahberError` subclasses;
wrap with :func:`mahber.errors.operation` for the response envelope.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mahber.constants import (
    FORUM_CREATOR_ROLES,
    MODERATOR_ROLES,
    TERMINAL_APPROVALS,
    EventType,
    ModerationAction,
    ModerationStatus,
    TargetType,
    as_utc,
    utcnow,
)
from mahber.database.engine import get_session
from mahber.database.models import (
    Chapter,
    Forum,
    ModerationRecord,
    Post,
    PostLike,
    Topic,
    User,
)
from mahber.engine.access import can_access_forum, can_read
from mahber.engine.privacy import (
    MODERATION_SURFACE,
    Viewer,
    filter_forum_post,
    identity_fields,
)
from mahber.engine.text import sanitize
from mahber.errors import (
    ConflictError,
    ForbiddenError,
    InvalidFieldError,
    InvariantViolation,
    NotFoundError,
)
from mahber.services import ledger_service, moderation_service, search_service

if TYPE_CHECKING:
    from mahber.context import ServiceContext

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_CONTENT_LENGTH = 10_000
MODERATE_ACTIONS = ("delete", "hide", "warn")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _require_text(value: str | None, field: str, max_length: int) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidFieldError(f"{field} is required", field=field)
    if len(text) > max_length:
        raise InvalidFieldError(f"{field} exceeds {max_length} characters", field=field)
    return text


def load_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _require_moderator(user: User) -> None:
    if user.role not in MODERATOR_ROLES:
        raise ForbiddenError("Moderator role required")


def _touch_activity(session: Session, forum: Forum, now: datetime) -> None:
    forum.last_activity_at = now
    chapter = session.get(Chapter, forum.chapter_id)
    if chapter is not None:
        chapter.last_activity_at = now


def _assert_publishable(record: ModerationRecord) -> None:
    if record.status not in TERMINAL_APPROVALS:
        raise InvariantViolation(
            f"Moderation record {record.id} is {record.status}; refusing to write content"
        )


def forum_to_dict(forum: Forum) -> dict[str, Any]:
    return {
        "id": forum.id,
        "chapter_id": forum.chapter_id,
        "title": forum.title,
        "description": forum.description,
        "category": forum.category,
        "is_public": forum.is_public,
        "is_active": forum.is_active,
    }


def topic_to_dict(topic: Topic, author: User) -> dict[str, Any]:
    """Serialized topic with raw author identity; filter before returning."""
    return {
        "id": topic.id,
        "forum_id": topic.forum_id,
        "title": topic.title,
        "content": topic.content,
        "is_private": topic.is_private,
        "allowed_chapter_id": topic.allowed_chapter_id,
        "is_locked": topic.is_locked,
        "is_pinned": topic.is_pinned,
        "view_count": topic.view_count or 0,
        "like_count": topic.like_count or 0,
        "created_at": as_utc(topic.created_at).isoformat(),
        "author": identity_fields(author),
    }


def post_to_dict(post: Post, author: User) -> dict[str, Any]:
    """Serialized post with raw author identity; filter before returning."""
    return {
        "id": post.id,
        "topic_id": post.topic_id,
        "parent_id": post.parent_id,
        "content": post.content,
        "like_count": post.like_count or 0,
        "is_hidden": post.is_hidden,
        "created_at": as_utc(post.created_at).isoformat(),
        "author": identity_fields(author),
    }


# ---------------------------------------------------------------------------
# Publishing (content already approved)
# ---------------------------------------------------------------------------
def _publish_topic(
    session: Session,
    ctx: ServiceContext,
    author: User,
    forum: Forum,
    record: ModerationRecord,
    *,
    title: str,
    content: str,
    is_private: bool,
    allowed_chapter_id: int | None,
    now: datetime,
) -> dict[str, Any]:
    _assert_publishable(record)
    topic = Topic(
        forum_id=forum.id,
        author_id=author.id,
        title=title,
        content=content,
        is_private=is_private,
        allowed_chapter_id=allowed_chapter_id if is_private else None,
        last_post_at=now,
        created_at=now,
    )
    session.add(topic)
    session.flush()

    opening = Post(
        topic_id=topic.id,
        author_id=author.id,
        moderation_id=record.id,
        content=content,
        created_at=now,
    )
    session.add(opening)
    session.flush()
    record.target_id = topic.id

    _touch_activity(session, forum, now)
    ledger_service.record_event(
        session, author, EventType.TOPIC_CREATED, ctx.config.points.topic,
        target_type=TargetType.TOPIC, target_id=topic.id, now=now,
    )
    search_service.index_forum_post(
        session, opening,
        chapter_id=forum.chapter_id,
        text=f"{title} {content}",
        max_keywords=ctx.config.search.max_keywords,
        now=now,
    )
    logger.info("Topic %s created in forum %s by user %s", topic.id, forum.id, author.id)
    return {
        "topic": filter_forum_post(
            topic_to_dict(topic, author), Viewer.of(author), youth_role=ctx.youth_role
        ),
        "post_id": opening.id,
        "moderation": {"record_id": record.id, "status": record.status},
    }


def _publish_post(
    session: Session,
    ctx: ServiceContext,
    author: User,
    topic: Topic,
    forum: Forum,
    record: ModerationRecord,
    *,
    content: str,
    parent_id: int | None,
    now: datetime,
) -> dict[str, Any]:
    _assert_publishable(record)
    post = Post(
        topic_id=topic.id,
        author_id=author.id,
        parent_id=parent_id,
        moderation_id=record.id,
        content=content,
        created_at=now,
    )
    session.add(post)
    session.flush()
    record.target_id = post.id
    topic.last_post_at = now

    _touch_activity(session, forum, now)
    ledger_service.record_event(
        session, author, EventType.POST_CREATED, ctx.config.points.post,
        target_type=TargetType.POST, target_id=post.id, now=now,
    )
    search_service.index_forum_post(
        session, post,
        chapter_id=forum.chapter_id,
        max_keywords=ctx.config.search.max_keywords,
        now=now,
    )
    return {
        "post": filter_forum_post(
            post_to_dict(post, author), Viewer.of(author), youth_role=ctx.youth_role
        ),
        "moderation": {"record_id": record.id, "status": record.status},
    }


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------
def create_forum(
    ctx: ServiceContext,
    author_id: int,
    *,
    title: str,
    description: str | None = None,
    category: str | None = None,
    is_public: bool = False,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Teachers and admins with a chapter may open a forum in it."""
    now = as_utc(now) if now else utcnow()
    title = _require_text(title, "title", MAX_TITLE_LENGTH)
    with get_session(ctx.engine) as session:
        author = load_user(session, author_id)
        if author.role not in FORUM_CREATOR_ROLES:
            raise ForbiddenError("Only teachers and admins can create forums")
        if author.chapter_id is None:
            raise ForbiddenError("A chapter is required to create a forum")

        forum = Forum(
            chapter_id=author.chapter_id,
            title=title,
            description=(description or "").strip() or None,
            category=category,
            is_public=bool(is_public),
            created_by=author.id,
            last_activity_at=now,
            created_at=now,
        )
        session.add(forum)
        session.flush()
        _touch_activity(session, forum, now)
        ledger_service.record_event(
            session, author, EventType.FORUM_CREATED, ctx.config.points.forum,
            target_type="forum", target_id=forum.id, now=now,
        )
        return forum_to_dict(forum)


def create_topic(
    ctx: ServiceContext,
    author_id: int,
    forum_id: int,
    *,
    title: str,
    content: str,
    is_private: bool = False,
    allowed_chapter_id: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Moderate ``title`` + ``content`` and, if approved, open a topic."""
    now = as_utc(now) if now else utcnow()
    title = _require_text(title, "title", MAX_TITLE_LENGTH)
    content = _require_text(content, "content", MAX_CONTENT_LENGTH)

    with get_session(ctx.engine) as session:
        author = load_user(session, author_id)
        forum = session.get(Forum, forum_id)
        if forum is None:
            raise NotFoundError("Forum not found")
        if not can_access_forum(author, forum):
            raise ForbiddenError("You do not have access to this forum")
        if is_private and allowed_chapter_id is None:
            allowed_chapter_id = author.chapter_id
            if allowed_chapter_id is None:
                raise InvalidFieldError(
                    "Private topics need a chapter", field="allowed_chapter_id"
                )

        decision = moderation_service.submit(
            session, ctx, TargetType.TOPIC, f"{title}\n{content}", author,
            context={
                "forum_id": forum.id,
                "title": title,
                "content": content,
                "is_private": bool(is_private),
                "allowed_chapter_id": allowed_chapter_id,
            },
            now=now,
        )
        result = None
        if decision.approved:
            result = _publish_topic(
                session, ctx, author, forum, decision.record,
                title=sanitize(title),
                content=sanitize(content),
                is_private=bool(is_private),
                allowed_chapter_id=allowed_chapter_id,
                now=now,
            )

    decision.raise_for_status()
    return result


def create_post(
    ctx: ServiceContext,
    author_id: int,
    topic_id: int,
    *,
    content: str,
    parent_id: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Moderate *content* and, if approved, reply in the topic."""
    now = as_utc(now) if now else utcnow()
    content = _require_text(content, "content", MAX_CONTENT_LENGTH)

    with get_session(ctx.engine) as session:
        author = load_user(session, author_id)
        topic = session.get(Topic, topic_id)
        if topic is None:
            raise NotFoundError("Topic not found")
        forum = session.get(Forum, topic.forum_id)
        if not can_read(author, forum, topic):
            raise ForbiddenError("You do not have access to this topic")
        if topic.is_locked:
            raise ForbiddenError("Topic is locked")
        if parent_id is not None:
            parent = session.get(Post, parent_id)
            if parent is None or parent.topic_id != topic.id:
                raise InvalidFieldError("parent_id is not a post in this topic", field="parent_id")

        decision = moderation_service.submit(
            session, ctx, TargetType.POST, content, author,
            context={"topic_id": topic.id, "parent_id": parent_id},
            now=now,
        )
        result = None
        if decision.approved:
            result = _publish_post(
                session, ctx, author, topic, forum, decision.record,
                content=decision.sanitized,
                parent_id=parent_id,
                now=now,
            )

    decision.raise_for_status()
    return result


def like_post(
    ctx: ServiceContext, user_id: int, post_id: int, *, now: datetime | None = None
) -> dict[str, Any]:
    """Like once.  A second like by the same member is a conflict."""
    now = as_utc(now) if now else utcnow()
    with get_session(ctx.engine) as session:
        user = load_user(session, user_id)
        post = session.get(Post, post_id)
        if post is None or post.is_hidden:
            raise NotFoundError("Post not found")
        topic = session.get(Topic, post.topic_id)
        forum = session.get(Forum, topic.forum_id)
        if not can_read(user, forum, topic):
            raise ForbiddenError("You do not have access to this post")

        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(PostLike(post_id=post.id, user_id=user.id, created_at=now))
                session.flush()
        except IntegrityError:
            raise ConflictError("Post already liked", field="post_id")

        post.like_count = (post.like_count or 0) + 1
        author = session.get(User, post.author_id)
        if author is not None and author.id != user.id:
            ledger_service.record_event(
                session, author, EventType.LIKE_RECEIVED, 0,
                target_type=TargetType.POST, target_id=post.id,
                metadata={"liked_by": user.id}, now=now,
            )
        return {"post_id": post.id, "like_count": post.like_count}


def get_topic(
    ctx: ServiceContext, viewer_id: int | None, topic_id: int
) -> dict[str, Any]:
    """Topic with its visible posts, authors privacy-filtered."""
    with get_session(ctx.engine) as session:
        viewer_user = load_user(session, viewer_id) if viewer_id is not None else None
        topic = session.get(Topic, topic_id)
        if topic is None:
            raise NotFoundError("Topic not found")
        forum = session.get(Forum, topic.forum_id)
        if not can_read(viewer_user, forum, topic):
            raise ForbiddenError("You do not have access to this topic")

        topic.view_count = (topic.view_count or 0) + 1
        viewer = Viewer.of(viewer_user)
        stmt = (
            select(Post, User)
            .join(User, User.id == Post.author_id)
            .where(Post.topic_id == topic.id)
            .order_by(Post.created_at.asc(), Post.id.asc())
        )
        if not viewer.is_moderator:
            stmt = stmt.where(Post.is_hidden.is_(False))
        posts = [
            filter_forum_post(post_to_dict(post, author), viewer, youth_role=ctx.youth_role)
            for post, author in session.execute(stmt).all()
        ]
        topic_author = session.get(User, topic.author_id)
        return {
            "topic": filter_forum_post(
                topic_to_dict(topic, topic_author), viewer, youth_role=ctx.youth_role
            ),
            "posts": posts,
        }


# ---------------------------------------------------------------------------
# Moderator actions
# ---------------------------------------------------------------------------
def lock_topic(
    ctx: ServiceContext,
    moderator_id: int,
    topic_id: int,
    *,
    locked: bool = True,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = as_utc(now) if now else utcnow()
    with get_session(ctx.engine) as session:
        moderator = load_user(session, moderator_id)
        _require_moderator(moderator)
        topic = session.get(Topic, topic_id)
        if topic is None:
            raise NotFoundError("Topic not found")
        topic.is_locked = locked
        moderation_service.log_moderation_action(
            session,
            action=ModerationAction.LOCK if locked else ModerationAction.UNLOCK,
            moderator_id=moderator.id,
            user_id=topic.author_id,
            target_type=TargetType.TOPIC,
            target_id=topic.id,
            reason=reason,
            now=now,
        )
        return {"topic_id": topic.id, "is_locked": topic.is_locked}


def moderate_post(
    ctx: ServiceContext,
    moderator_id: int,
    post_id: int,
    action: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """``delete`` removes the post, ``hide`` takes it out of view and
    search, ``warn`` records a warning against the author.
    """
    if action not in MODERATE_ACTIONS:
        raise InvalidFieldError(
            f"action must be one of {', '.join(MODERATE_ACTIONS)}", field="action"
        )
    now = as_utc(now) if now else utcnow()
    with get_session(ctx.engine) as session:
        moderator = load_user(session, moderator_id)
        _require_moderator(moderator)
        post = session.get(Post, post_id)
        if post is None:
            raise NotFoundError("Post not found")
        author_id = post.author_id

        if action == "delete":
            search_service.remove_from_index(session, post.id)
            session.execute(
                update(Post).where(Post.parent_id == post.id).values(parent_id=None)
            )
            session.query(PostLike).filter(PostLike.post_id == post.id).delete()
            session.delete(post)
        elif action == "hide":
            post.is_hidden = True
            post.is_moderated = True
            post.moderation_reason = reason
            search_service.remove_from_index(session, post.id)

        moderation_service.log_moderation_action(
            session,
            action=ModerationAction(action),
            moderator_id=moderator.id,
            user_id=author_id,
            target_type=TargetType.POST,
            target_id=post_id,
            reason=reason,
            now=now,
        )
        logger.info("Post %s: %s by moderator %s", post_id, action, moderator.id)
        return {"post_id": post_id, "action": action}


def list_review_queue(
    ctx: ServiceContext, moderator_id: int, *, limit: int = 50
) -> list[dict[str, Any]]:
    """Auto-flagged records with author identity (moderation surface)."""
    with get_session(ctx.engine) as session:
        moderator = load_user(session, moderator_id)
        _require_moderator(moderator)
        viewer = Viewer.of(moderator)
        items = []
        for record in moderation_service.list_review_queue(session, limit=limit):
            item = moderation_service.record_to_dict(record)
            author = session.get(User, record.author_id)
            if author is not None:
                item = filter_forum_post(
                    {**item, "author": identity_fields(author)},
                    viewer,
                    youth_role=ctx.youth_role,
                    surface=MODERATION_SURFACE,
                )
            items.append(item)
        return items


def review_flagged(
    ctx: ServiceContext,
    moderator_id: int,
    record_id: int,
    action: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Decide an auto-flagged record.  Approval publishes the held content."""
    now = as_utc(now) if now else utcnow()
    with get_session(ctx.engine) as session:
        moderator = load_user(session, moderator_id)
        record = moderation_service.review(
            session, moderator, record_id, action, reason=reason, now=now
        )
        published = None
        if record.status == ModerationStatus.APPROVED_AFTER_REVIEW and record.context:
            published = _publish_reviewed(session, ctx, record, now)
        result = {"record": moderation_service.record_to_dict(record), "published": published}

    ctx.gate.invalidate(result["record"]["author_id"])
    return result


def _publish_reviewed(
    session: Session, ctx: ServiceContext, record: ModerationRecord, now: datetime
) -> dict[str, Any] | None:
    author = session.get(User, record.author_id)
    held = record.context or {}
    if author is None:
        return None

    if record.target_type == TargetType.TOPIC:
        forum = session.get(Forum, held.get("forum_id"))
        if forum is None or not forum.is_active:
            logger.warning("Approved topic record %s has no active forum", record.id)
            return None
        return _publish_topic(
            session, ctx, author, forum, record,
            title=sanitize(held.get("title", "")),
            content=sanitize(held.get("content", "")),
            is_private=bool(held.get("is_private")),
            allowed_chapter_id=held.get("allowed_chapter_id"),
            now=now,
        )

    if record.target_type == TargetType.POST:
        topic = session.get(Topic, held.get("topic_id"))
        if topic is None or topic.is_locked:
            logger.warning("Approved post record %s has no open topic", record.id)
            return None
        forum = session.get(Forum, topic.forum_id)
        parent_id = held.get("parent_id")
        if parent_id is not None and session.get(Post, parent_id) is None:
            parent_id = None
        return _publish_post(
            session, ctx, author, topic, forum, record,
            content=sanitize(record.content_text),
            parent_id=parent_id,
            now=now,
        )
    return None


__all__ = [
    "create_forum",
    "create_post",
    "create_topic",
    "get_topic",
    "like_post",
    "list_review_queue",
    "lock_topic",
    "moderate_post",
    "review_flagged",
]
