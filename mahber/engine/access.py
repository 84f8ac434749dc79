"""
mahber.engine.access — Chapter-Scoped Visibility Rules
=======================================================

Pure predicates over forum / topic / user attributes.  Callers pass ORM
objects or anything exposing the same attribute names.
"""

from __future__ import annotations

from typing import Protocol


class _Member(Protocol):
    chapter_id: int | None


class _Forum(Protocol):
    chapter_id: int
    is_public: bool
    is_active: bool


class _Topic(Protocol):
    is_private: bool
    allowed_chapter_id: int | None


def can_access_forum(user: _Member | None, forum: _Forum) -> bool:
    """Active public forums are open to everyone; active chapter forums
    to members of that chapter.
    """
    if not forum.is_active:
        return False
    if forum.is_public:
        return True
    return user is not None and user.chapter_id is not None and user.chapter_id == forum.chapter_id


def can_view_topic(user: _Member | None, topic: _Topic) -> bool:
    if not topic.is_private:
        return True
    return (
        user is not None
        and user.chapter_id is not None
        and user.chapter_id == topic.allowed_chapter_id
    )


def can_read(user: _Member | None, forum: _Forum, topic: _Topic) -> bool:
    return can_access_forum(user, forum) and can_view_topic(user, topic)
