"""
mahber.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- users                    — Community members (created out-of-band)
- chapters                 — Geographic / congregation groupings
- forums, topics, posts    — Three-level discussion hierarchy
- post_likes               — One like per (post, user)
- moderation               — One decision per submitted piece of content
- moderation_logs          — Append-only moderator / automation audit trail
- badges, user_badges      — Badge catalogue and awards (unique per user)
- engagement_events        — Append-only point ledger
- leaderboard_entries      — Points per (user, horizon, period); rank derived on read
- badge_update_queue       — Pending badge evaluations
- leaderboard_update_queue — Pending leaderboard recomputations
- update_dead_letters      — Queue items that failed too many times
- search_index             — One entry per visible approved post
- user_privacy_settings    — Leaderboard visibility / analytics opt-out
- user_actions             — Rate & history gate action log
- user_lesson_progress     — Lesson completion (badge input)
- scheduled_topics         — Topics waiting for the publisher job

Time-critical columns use Python-side UTC defaults so ordering is stable
across PostgreSQL and SQLite.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Mahber ORM models."""


# ---------------------------------------------------------------------------
# Users & chapters
# ---------------------------------------------------------------------------
class Chapter(Base):
    __tablename__ = "chapters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auto_archive_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    forums: Mapped[list[Forum]] = relationship(back_populates="chapter")

    def __repr__(self) -> str:
        return f"<Chapter id={self.id} name={self.name!r} active={self.is_active}>"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
    chapter_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True
    )
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    privacy: Mapped[UserPrivacySettings | None] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_chapter", "chapter_id"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role} chapter={self.chapter_id}>"


class UserPrivacySettings(Base):
    __tablename__ = "user_privacy_settings"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    show_on_leaderboard: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_analytics: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    user: Mapped[User] = relationship(back_populates="privacy")

    def __repr__(self) -> str:
        return (
            f"<UserPrivacySettings user={self.user_id} "
            f"leaderboard={self.show_on_leaderboard}>"
        )


# ---------------------------------------------------------------------------
# Forum hierarchy
# ---------------------------------------------------------------------------
class Forum(Base):
    __tablename__ = "forums"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chapter_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auto_archive_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    chapter: Mapped[Chapter] = relationship(back_populates="forums")

    __table_args__ = (
        Index("ix_forums_chapter_active", "chapter_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Forum id={self.id} chapter={self.chapter_id} active={self.is_active}>"


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    forum_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("forums.id", ondelete="CASCADE"), nullable=False
    )
    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    allowed_chapter_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    like_count: Mapped[int] = mapped_column(Integer, default=0)
    last_post_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_topics_forum", "forum_id"),
        Index("ix_topics_author", "author_id"),
    )

    def __repr__(self) -> str:
        return f"<Topic id={self.id} forum={self.forum_id} locked={self.is_locked}>"


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    topic_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("topics.id", ondelete="CASCADE"), nullable=False
    )
    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="SET NULL"), nullable=True
    )
    moderation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("moderation.id"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    like_count: Mapped[int] = mapped_column(Integer, default=0)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    is_moderated: Mapped[bool] = mapped_column(Boolean, default=False)
    moderation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_posts_topic_time", "topic_id", "created_at"),
        Index("ix_posts_author", "author_id"),
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id} topic={self.topic_id} author={self.author_id}>"


class PostLike(Base):
    __tablename__ = "post_likes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("post_id", "user_id", name="uq_post_like"),
    )

    def __repr__(self) -> str:
        return f"<PostLike post={self.post_id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------
class ModerationRecord(Base):
    __tablename__ = "moderation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content_text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    spam_score: Mapped[int] = mapped_column(Integer, default=0)
    flags: Mapped[list] = mapped_column(JSONB, default=list)
    # Where held content goes if a moderator approves it.
    context: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    decided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_moderation_status_time", "status", "created_at"),
        Index("ix_moderation_author_time", "author_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ModerationRecord id={self.id} {self.target_type}={self.target_id} "
            f"status={self.status} score={self.spam_score}>"
        )


class ModerationLog(Base):
    __tablename__ = "moderation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    moderator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_moderation_logs_action_time", "action", "created_at"),
        Index("ix_moderation_logs_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<ModerationLog id={self.id} action={self.action} user={self.user_id}>"


# ---------------------------------------------------------------------------
# Badges & ledger
# ---------------------------------------------------------------------------
class Badge(Base):
    __tablename__ = "badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="participation")
    points: Mapped[int] = mapped_column(Integer, default=0)
    requirements: Mapped[dict] = mapped_column(JSONB, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def __repr__(self) -> str:
        return f"<Badge id={self.id} name={self.name!r} points={self.points}>"


class UserBadge(Base):
    __tablename__ = "user_badges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    badge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("badges.id", ondelete="CASCADE"), nullable=False
    )
    points: Mapped[int] = mapped_column(Integer, default=0)  # badge points at award time
    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)

    badge: Mapped[Badge] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),
    )

    def __repr__(self) -> str:
        return f"<UserBadge user={self.user_id} badge={self.badge_id}>"


class EngagementEvent(Base):
    __tablename__ = "engagement_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    chapter_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    points_earned: Mapped[int] = mapped_column(Integer, default=0)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)

    __table_args__ = (
        Index("ix_engagement_user_time", "user_id", "occurred_at"),
        Index("ix_engagement_chapter_time", "chapter_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EngagementEvent id={self.id} user={self.user_id} "
            f"type={self.event_type} pts={self.points_earned}>"
        )


class UserLessonProgress(Base):
    __tablename__ = "user_lesson_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    lesson_id: Mapped[int] = mapped_column(Integer, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("user_id", "lesson_id", name="uq_user_lesson"),
    )

    def __repr__(self) -> str:
        return f"<UserLessonProgress user={self.user_id} lesson={self.lesson_id}>"


# ---------------------------------------------------------------------------
# Leaderboard — rank is never stored
# ---------------------------------------------------------------------------
class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    chapter_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    horizon: Mapped[str] = mapped_column(String(20), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    points: Mapped[int] = mapped_column(Integer, default=0)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "horizon", "period_start", name="uq_leaderboard_user_period"
        ),
        Index(
            "ix_leaderboard_partition", "horizon", "period_start", "chapter_id", "points"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<LeaderboardEntry user={self.user_id} {self.horizon}@{self.period_start} "
            f"pts={self.points}>"
        )


# ---------------------------------------------------------------------------
# Update queues
# ---------------------------------------------------------------------------
class _QueueColumns:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class BadgeQueueItem(_QueueColumns, Base):
    __tablename__ = "badge_update_queue"

    __table_args__ = (
        Index("ix_badge_queue_pending", "processed", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<BadgeQueueItem id={self.id} user={self.user_id} done={self.processed}>"


class LeaderboardQueueItem(_QueueColumns, Base):
    __tablename__ = "leaderboard_update_queue"

    __table_args__ = (
        Index("ix_leaderboard_queue_pending", "processed", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LeaderboardQueueItem id={self.id} user={self.user_id} "
            f"done={self.processed}>"
        )


class DeadLetter(Base):
    __tablename__ = "update_dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue: Mapped[str] = mapped_column(String(30), nullable=False)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    enqueued_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def __repr__(self) -> str:
        return f"<DeadLetter id={self.id} queue={self.queue} item={self.item_id}>"


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------
class SearchIndexEntry(Base):
    __tablename__ = "search_index"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    topic_id: Mapped[int] = mapped_column(Integer, nullable=False)
    chapter_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    normalized_content: Mapped[str] = mapped_column(Text, nullable=False)
    keywords: Mapped[str] = mapped_column(Text, nullable=False, default="")  # space-separated
    indexed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_search_index_chapter", "chapter_id"),
    )

    @property
    def keyword_list(self) -> list[str]:
        return self.keywords.split() if self.keywords else []

    def __repr__(self) -> str:
        return f"<SearchIndexEntry post={self.post_id} chapter={self.chapter_id}>"


# ---------------------------------------------------------------------------
# Gate action log
# ---------------------------------------------------------------------------
class UserAction(Base):
    __tablename__ = "user_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content_prefix: Mapped[str | None] = mapped_column(String(50), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_user_actions_user_time", "user_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<UserAction user={self.user_id} type={self.action_type}>"


# ---------------------------------------------------------------------------
# Scheduled publishing
# ---------------------------------------------------------------------------
class ScheduledTopic(Base):
    __tablename__ = "scheduled_topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    forum_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("forums.id", ondelete="CASCADE"), nullable=False
    )
    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    allowed_chapter_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    publish_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    topic_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_topics_due", "status", "publish_at"),
    )

    def __repr__(self) -> str:
        return f"<ScheduledTopic id={self.id} status={self.status}>"
