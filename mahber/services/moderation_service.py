"""
mahber.services.moderation_service — Moderation Pipeline
========================================================

Composes the rate gate and the content classifier into one decision per
submission and persists it as a :class:`ModerationRecord`:

1. Gate — denied → ``blocked`` (rate-limit violations feed the security
   monitor and ``moderation_logs``).
2. Classifier — score ≥ threshold or any high-severity flag →
   ``auto_flagged``; the caller must refuse the write.  Classifier
   failures also land here: moderation fails **closed**.
3. Otherwise the text is sanitized and the decision is ``approved``.

Auto-flagged records wait in the review queue.  A moderator's terminal
action sets ``approved_after_review`` or ``rejected``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mahber.constants import (
    MODERATOR_ROLES,
    ActionType,
    ModerationAction,
    ModerationStatus,
    TargetType,
    as_utc,
    utcnow,
)
from mahber.database.models import ModerationLog, ModerationRecord, Post, User
from mahber.engine.classifier import Classification, classify
from mahber.engine.text import sanitize
from mahber.errors import (
    ConflictError,
    ContentFlaggedError,
    ForbiddenError,
    InvalidFieldError,
    NotFoundError,
    RateLimitedError,
)

if TYPE_CHECKING:
    from mahber.context import ServiceContext

logger = logging.getLogger(__name__)

CLASSIFIER_ERROR_FLAG = "classifier_error"
REVIEW_ACTIONS = ("approve", "reject")


@dataclass(frozen=True, slots=True)
class Decision:
    status: ModerationStatus
    record: ModerationRecord
    score: int = 0
    flags: tuple[str, ...] = ()
    sanitized: str | None = None
    reason: str | None = None
    retry_after: int | None = None

    @property
    def approved(self) -> bool:
        return self.status == ModerationStatus.APPROVED

    def raise_for_status(self) -> None:
        """Raise the caller-facing error for a non-approved decision."""
        if self.status == ModerationStatus.BLOCKED:
            if self.reason == "banned":
                raise ForbiddenError("Account is suspended")
            raise RateLimitedError(self.reason or "rate_limited", self.retry_after)
        if self.status == ModerationStatus.AUTO_FLAGGED:
            raise ContentFlaggedError(list(self.flags))


@dataclass(slots=True)
class ModerationStats:
    pending_review: int = 0
    by_status: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------
def log_moderation_action(
    session: Session,
    *,
    action: str,
    moderator_id: int | None = None,
    user_id: int | None = None,
    target_type: str | None = None,
    target_id: int | None = None,
    reason: str | None = None,
    details: dict | None = None,
    now: datetime | None = None,
) -> None:
    """Insert a row into moderation_logs within the current transaction."""
    session.add(ModerationLog(
        moderator_id=moderator_id,
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        reason=reason,
        details=details,
        created_at=now or utcnow(),
    ))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
def _action_for(target_type: str) -> ActionType:
    return ActionType.TOPIC if target_type == TargetType.TOPIC else ActionType.POST


def _persist(
    session: Session,
    *,
    target_type: str,
    author: User,
    content: str,
    status: ModerationStatus,
    now: datetime,
    score: int = 0,
    flags: tuple[str, ...] = (),
    reason: str | None = None,
    context: dict | None = None,
) -> ModerationRecord:
    pending = status == ModerationStatus.AUTO_FLAGGED
    record = ModerationRecord(
        target_type=target_type,
        author_id=author.id,
        content_text=content,
        status=status,
        spam_score=score,
        flags=list(flags),
        reason=reason,
        context=context,
        created_at=now,
        decided_at=None if pending else now,
    )
    session.add(record)
    session.flush()
    return record


def submit(
    session: Session,
    ctx: ServiceContext,
    target_type: str,
    content: str,
    author: User,
    *,
    context: dict | None = None,
    now: datetime | None = None,
) -> Decision:
    """Run *content* by *author* through gate, classifier and sanitizer.

    *context* is stored on auto-flagged records so an approving moderator
    can publish the held content later.
    """
    now = as_utc(now) if now else utcnow()
    action = _action_for(target_type)

    # 1. Rate & history gate
    gate = ctx.gate.may_act(session, author, action, content=content, now=now)
    if not gate.allowed:
        record = _persist(
            session, target_type=target_type, author=author, content=content,
            status=ModerationStatus.BLOCKED, reason=gate.reason, now=now,
        )
        if gate.reason != "banned":
            _note_violation(session, ctx, author, gate.reason, gate.retry_after, now)
        logger.info("Blocked %s by user %s: %s", target_type, author.id, gate.reason)
        return Decision(
            ModerationStatus.BLOCKED, record,
            reason=gate.reason, retry_after=gate.retry_after,
        )

    # 2. Classifier (fails closed)
    try:
        result = classify(content, ctx.rules)
    except Exception:
        logger.exception("Classifier failed for user %s, holding for review", author.id)
        result = Classification(score=100, flags=(CLASSIFIER_ERROR_FLAG,))

    high = ctx.config.moderation.high_severity_flags
    if result.score >= ctx.config.spam_score_threshold or result.has_any(high):
        record = _persist(
            session, target_type=target_type, author=author, content=content,
            status=ModerationStatus.AUTO_FLAGGED, score=result.score,
            flags=result.flags, context=context, now=now,
        )
        log_moderation_action(
            session,
            action=ModerationAction.AUTO_FLAG,
            user_id=author.id,
            target_type=target_type,
            reason="automatic",
            details={"record_id": record.id, "score": result.score, "flags": list(result.flags)},
            now=now,
        )
        ctx.gate.note_flag(session, author.id, now)
        logger.info(
            "Auto-flagged %s by user %s (score=%d, flags=%s)",
            target_type, author.id, result.score, ",".join(result.flags),
        )
        return Decision(
            ModerationStatus.AUTO_FLAGGED, record,
            score=result.score, flags=result.flags,
        )

    # 3. Approved
    sanitized = sanitize(content)
    record = _persist(
        session, target_type=target_type, author=author, content=content,
        status=ModerationStatus.APPROVED, score=result.score, flags=result.flags, now=now,
    )
    ctx.gate.register_action(session, author, action, content=content, now=now)
    return Decision(
        ModerationStatus.APPROVED, record,
        score=result.score, flags=result.flags, sanitized=sanitized,
    )


def _note_violation(
    session: Session,
    ctx: ServiceContext,
    author: User,
    reason: str | None,
    retry_after: int | None,
    now: datetime,
) -> None:
    log_moderation_action(
        session,
        action=ModerationAction.RATE_LIMITED,
        user_id=author.id,
        reason=reason,
        details={"retry_after": retry_after},
        now=now,
    )
    count = ctx.monitor.record_violation(author.id, now)
    if count == ctx.monitor.threshold:
        logger.warning(
            "Suspicious activity: user %s hit rate limits %d times within %s",
            author.id, count, ctx.monitor.window,
        )
        log_moderation_action(
            session,
            action=ModerationAction.SUSPICIOUS_ACTIVITY,
            user_id=author.id,
            reason="repeated rate-limit violations",
            details={"violations": count},
            now=now,
        )


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------
def list_review_queue(session: Session, *, limit: int = 50) -> list[ModerationRecord]:
    """Oldest auto-flagged records first."""
    return list(session.scalars(
        select(ModerationRecord)
        .where(ModerationRecord.status == ModerationStatus.AUTO_FLAGGED)
        .order_by(ModerationRecord.created_at.asc(), ModerationRecord.id.asc())
        .limit(limit)
    ).all())


def review(
    session: Session,
    moderator: User,
    record_id: int,
    action: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> ModerationRecord:
    """Apply a moderator's terminal decision to an auto-flagged record.

    Rejection hides the target post when one exists.
    """
    if moderator.role not in MODERATOR_ROLES:
        raise ForbiddenError("Only moderators can review flagged content")
    if action not in REVIEW_ACTIONS:
        raise InvalidFieldError(f"action must be one of {', '.join(REVIEW_ACTIONS)}", field="action")

    record = session.get(ModerationRecord, record_id)
    if record is None:
        raise NotFoundError("Moderation record not found")
    if record.status != ModerationStatus.AUTO_FLAGGED:
        raise ConflictError(f"Record already decided ({record.status})")

    now = as_utc(now) if now else utcnow()
    record.reviewer_id = moderator.id
    record.decided_at = now
    record.reason = reason
    if action == "approve":
        record.status = ModerationStatus.APPROVED_AFTER_REVIEW
        log_action = ModerationAction.REVIEW_APPROVE
    else:
        record.status = ModerationStatus.REJECTED
        log_action = ModerationAction.REVIEW_REJECT
        if record.target_type == TargetType.POST and record.target_id is not None:
            post = session.get(Post, record.target_id)
            if post is not None:
                post.is_hidden = True
                post.moderation_reason = reason

    log_moderation_action(
        session,
        action=log_action,
        moderator_id=moderator.id,
        user_id=record.author_id,
        target_type=record.target_type,
        target_id=record.target_id,
        reason=reason,
        details={"record_id": record.id},
        now=now,
    )
    return record


def record_to_dict(record: ModerationRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "target_type": record.target_type,
        "target_id": record.target_id,
        "author_id": record.author_id,
        "content_text": record.content_text,
        "status": record.status,
        "spam_score": record.spam_score,
        "flags": list(record.flags or []),
        "reviewer_id": record.reviewer_id,
        "created_at": as_utc(record.created_at).isoformat(),
        "decided_at": as_utc(record.decided_at).isoformat() if record.decided_at else None,
    }


def moderation_stats(session: Session) -> ModerationStats:
    rows = session.execute(
        select(ModerationRecord.status, func.count()).group_by(ModerationRecord.status)
    ).all()
    by_status = {status: count for status, count in rows}
    return ModerationStats(
        pending_review=by_status.get(ModerationStatus.AUTO_FLAGGED, 0),
        by_status=by_status,
    )
