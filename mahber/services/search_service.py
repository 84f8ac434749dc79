"""
mahber.services.search_service — Forum Search Index
===================================================

One ``search_index`` row per approved post: normalized text plus up to ten
keywords.  Indexing happens in the same transaction as the post insert,
so every approved post is searchable as soon as it is visible.

Queries split into terms longer than two characters; a post matches if
any term appears in its normalized text or keywords.  Hidden and
moderated posts never match, and private topics only match for members
of the allowed chapter.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, false, or_, select
from sqlalchemy.orm import Session

from mahber.config import SearchConfig
from mahber.constants import as_utc, utcnow
from mahber.database.models import Forum, Post, SearchIndexEntry, Topic, User
from mahber.engine.privacy import Viewer, filter_forum_post, identity_fields
from mahber.engine.text import extract_keywords, normalize

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200


def index_forum_post(
    session: Session,
    post: Post,
    *,
    chapter_id: int | None,
    text: str | None = None,
    max_keywords: int = 10,
    now: datetime | None = None,
) -> SearchIndexEntry:
    """Insert or replace the index entry for *post*."""
    now = as_utc(now) if now else utcnow()
    source = text if text is not None else post.content
    normalized = normalize(source)
    keywords = " ".join(extract_keywords(source, max_keywords))

    entry = session.scalar(select(SearchIndexEntry).where(SearchIndexEntry.post_id == post.id))
    if entry is None:
        entry = SearchIndexEntry(post_id=post.id, topic_id=post.topic_id)
        session.add(entry)
    entry.topic_id = post.topic_id
    entry.chapter_id = chapter_id
    entry.normalized_content = normalized
    entry.keywords = keywords
    entry.indexed_at = now
    return entry


def remove_from_index(session: Session, post_id: int) -> None:
    session.execute(delete(SearchIndexEntry).where(SearchIndexEntry.post_id == post_id))


def query_terms(query: str, min_length: int = 3) -> list[str]:
    """Distinct normalized terms of at least *min_length* characters."""
    terms: dict[str, None] = {}
    for raw in normalize(query).split():
        if len(raw) >= min_length:
            terms.setdefault(raw, None)
    return list(terms)


def search_forum_posts(
    session: Session,
    query: str,
    *,
    chapter_id: int | None = None,
    viewer: Viewer | None = None,
    limit: int | None = None,
    settings: SearchConfig = SearchConfig(),
    youth_role: str = "youth",
) -> list[dict[str, Any]]:
    """Newest matching posts first."""
    terms = query_terms(query, settings.min_term_length)
    if not terms:
        return []
    limit = limit or settings.default_limit

    match = or_(*(
        or_(
            SearchIndexEntry.normalized_content.contains(term, autoescape=True),
            SearchIndexEntry.keywords.contains(term, autoescape=True),
        )
        for term in terms
    ))
    stmt = (
        select(SearchIndexEntry, Post, Topic, User)
        .join(Post, Post.id == SearchIndexEntry.post_id)
        .join(Topic, Topic.id == Post.topic_id)
        .join(User, User.id == Post.author_id)
        .where(match, Post.is_hidden.is_(False), Post.is_moderated.is_(False))
    )
    if chapter_id is not None:
        stmt = stmt.where(SearchIndexEntry.chapter_id == chapter_id)
    if viewer is not None:
        visible_private = (
            Topic.allowed_chapter_id == viewer.chapter_id
            if viewer.chapter_id is not None else false()
        )
        stmt = stmt.where(or_(Topic.is_private.is_(False), visible_private))
    stmt = stmt.order_by(Post.created_at.desc(), Post.id.desc()).limit(limit)

    viewer = viewer or Viewer()
    results = []
    for entry, post, topic, author in session.execute(stmt).all():
        results.append(filter_forum_post(
            {
                "post_id": post.id,
                "topic_id": topic.id,
                "topic_title": topic.title,
                "chapter_id": entry.chapter_id,
                "snippet": post.content[:SNIPPET_LENGTH],
                "keywords": entry.keyword_list,
                "created_at": as_utc(post.created_at).isoformat(),
                "author": identity_fields(author),
            },
            viewer,
            youth_role=youth_role,
        ))
    return results


def rebuild_index(session: Session, *, max_keywords: int = 10) -> int:
    """Re-index every visible post.  Returns entries written."""
    rows = session.execute(
        select(Post, Forum.chapter_id)
        .join(Topic, Topic.id == Post.topic_id)
        .join(Forum, Forum.id == Topic.forum_id)
        .where(Post.is_hidden.is_(False), Post.is_moderated.is_(False))
    ).all()
    for post, chapter_id in rows:
        index_forum_post(session, post, chapter_id=chapter_id, max_keywords=max_keywords)
    logger.info("Search index rebuilt: %d posts", len(rows))
    return len(rows)
