"""
mahber.services.gate — Rate & History Gate
===========================================

Decides whether a member may post right now.  Counters are derived from
persisted rows (``user_actions`` and ``moderation``), so limits survive a
restart and hold across workers.  A short per-user snapshot cache keeps
the hot path to one lookup every ``cache_ttl_seconds`` (≤ 10 s); actions
registered through this gate are appended to the snapshot when their
transaction commits; a rollback drops the affected snapshots.

Windows (defaults from :class:`~mahber.config.RateConfig`):

- posts per minute ≤ 5, per hour ≤ 20 (topics count as posts)
- topics per day ≤ 10
- same 20-character prefix ≤ 3 per 24 h
- more than 5 auto-flagged decisions in 24 h blocks the member
- banned members are always blocked

The gate fails **open**: a datastore error while reading counters is
logged and the action is allowed, so a database blip never locks members
out.  Moderation itself still fails closed.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock

from sqlalchemy import delete, event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mahber.config import RateConfig
from mahber.constants import ActionType, ModerationStatus, as_utc, utcnow
from mahber.database.models import ModerationRecord, User, UserAction
from mahber.engine.text import content_prefix

logger = logging.getLogger(__name__)

MINUTE = timedelta(minutes=1)
HOUR = timedelta(hours=1)
DAY = timedelta(days=1)

_PENDING_KEY = "rate_gate_pending"

_POSTING_ACTIONS = frozenset({ActionType.POST, ActionType.TOPIC})

# Auto-flags count against the member unless a moderator approved them.
_FLAG_STATUSES = (ModerationStatus.AUTO_FLAGGED, ModerationStatus.REJECTED)


@dataclass(frozen=True, slots=True)
class GateDecision:
    allowed: bool
    reason: str | None = None
    retry_after: int | None = None  # seconds


@dataclass(slots=True)
class _Snapshot:
    loaded_at: float
    actions: list[tuple[str, datetime, str | None]] = field(default_factory=list)
    flagged: list[datetime] = field(default_factory=list)


def _retry_after(times: list[datetime], limit: int, window: timedelta, now: datetime) -> int:
    """Seconds until enough of *times* leave *window* to get under *limit*."""
    ordered = sorted(times)
    release = ordered[len(ordered) - limit] + window
    return max(1, math.ceil((release - now).total_seconds()))


class RateGate:
    """Sliding-window limits backed by the datastore."""

    def __init__(self, rate: RateConfig, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate = rate
        self._clock = clock
        self._lock = Lock()
        self._cache: dict[int, _Snapshot] = {}

    # -------------------------------------------------------------------
    # Snapshot cache
    # -------------------------------------------------------------------
    def _load(self, session: Session, user_id: int, now: datetime) -> _Snapshot:
        since = now - DAY
        rows = session.execute(
            select(UserAction.action_type, UserAction.occurred_at, UserAction.content_prefix)
            .where(UserAction.user_id == user_id, UserAction.occurred_at > since)
        ).all()
        flagged = session.scalars(
            select(ModerationRecord.created_at).where(
                ModerationRecord.author_id == user_id,
                ModerationRecord.status.in_(_FLAG_STATUSES),
                ModerationRecord.created_at > since,
            )
        ).all()
        return _Snapshot(
            loaded_at=self._clock(),
            actions=[(kind, as_utc(at), prefix) for kind, at, prefix in rows],
            flagged=[as_utc(at) for at in flagged],
        )

    def _snapshot(self, session: Session, user_id: int, now: datetime) -> _Snapshot:
        with self._lock:
            cached = self._cache.get(user_id)
            if cached is not None and self._clock() - cached.loaded_at <= self.rate.cache_ttl_seconds:
                return cached
        with session.begin_nested():
            snapshot = self._load(session, user_id, now)
        with self._lock:
            self._cache[user_id] = snapshot
        return snapshot

    def invalidate(self, user_id: int | None = None) -> None:
        with self._lock:
            if user_id is None:
                self._cache.clear()
            else:
                self._cache.pop(user_id, None)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def may_act(
        self,
        session: Session,
        user: User,
        action_type: str,
        *,
        content: str | None = None,
        now: datetime | None = None,
    ) -> GateDecision:
        """Check every window for *user* performing *action_type*."""
        now = as_utc(now) if now else utcnow()
        if user.is_banned:
            return GateDecision(False, "banned")

        try:
            snapshot = self._snapshot(session, user.id, now)
        except SQLAlchemyError:
            logger.warning(
                "Rate gate lookup failed for user %s — allowing", user.id, exc_info=True
            )
            return GateDecision(True)

        rate = self.rate
        flagged = [at for at in snapshot.flagged if at > now - DAY]
        if len(flagged) > rate.max_flags_per_day:
            return GateDecision(
                False, "too_many_flags",
                _retry_after(flagged, rate.max_flags_per_day + 1, DAY, now),
            )

        if action_type not in _POSTING_ACTIONS:
            return GateDecision(True)

        posting = [at for kind, at, _ in snapshot.actions if kind in _POSTING_ACTIONS]
        for window, limit, reason in (
            (MINUTE, rate.posts_per_minute, "posts_per_minute"),
            (HOUR, rate.posts_per_hour, "posts_per_hour"),
        ):
            recent = [at for at in posting if at > now - window]
            if len(recent) >= limit:
                return GateDecision(False, reason, _retry_after(recent, limit, window, now))

        if action_type == ActionType.TOPIC:
            topics = [
                at for kind, at, _ in snapshot.actions
                if kind == ActionType.TOPIC and at > now - DAY
            ]
            if len(topics) >= rate.topics_per_day:
                return GateDecision(
                    False, "topics_per_day",
                    _retry_after(topics, rate.topics_per_day, DAY, now),
                )

        if content:
            prefix = content_prefix(content, rate.similar_prefix_chars)
            similar = [
                at for _, at, seen in snapshot.actions
                if seen == prefix and at > now - DAY
            ]
            if prefix and len(similar) >= rate.similar_content_per_day:
                return GateDecision(
                    False, "similar_content",
                    _retry_after(similar, rate.similar_content_per_day, DAY, now),
                )

        return GateDecision(True)

    def register_action(
        self,
        session: Session,
        user: User,
        action_type: str,
        *,
        content: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Persist an accepted action; the cached snapshot sees it once *session* commits."""
        now = as_utc(now) if now else utcnow()
        prefix = content_prefix(content, self.rate.similar_prefix_chars) if content else None
        session.add(UserAction(
            user_id=user.id,
            action_type=action_type,
            content_prefix=prefix,
            occurred_at=now,
        ))
        self._pending(session).append((user.id, "action", (str(action_type), now, prefix)))

    def note_flag(self, session: Session, user_id: int, at: datetime) -> None:
        """Fold a fresh auto-flag into the cached snapshot once *session* commits."""
        self._pending(session).append((user_id, "flag", as_utc(at)))

    # -------------------------------------------------------------------
    # Transaction hooks
    # -------------------------------------------------------------------
    def _pending(self, session: Session) -> list[tuple[int, str, object]]:
        key = (_PENDING_KEY, id(self))
        pending = session.info.get(key)
        if pending is None:
            pending = session.info[key] = []
            event.listen(session, "after_commit", self._apply_pending)
            event.listen(session, "after_rollback", self._discard_pending)
        return pending

    def _apply_pending(self, session: Session) -> None:
        if session.in_nested_transaction():
            return
        pending = session.info.get((_PENDING_KEY, id(self)))
        if not pending:
            return
        with self._lock:
            for user_id, kind, entry in pending:
                cached = self._cache.get(user_id)
                if cached is None:
                    continue
                if kind == "action":
                    cached.actions.append(entry)
                else:
                    cached.flagged.append(entry)
        pending.clear()

    def _discard_pending(self, session: Session) -> None:
        # Also fires when a savepoint rolls back.
        pending = session.info.get((_PENDING_KEY, id(self)))
        if not pending:
            return
        with self._lock:
            for user_id, _, _ in pending:
                self._cache.pop(user_id, None)
        pending.clear()


def prune_actions(session: Session, now: datetime | None = None) -> int:
    """Delete gate rows older than the longest window.  Returns rows removed."""
    cutoff = (as_utc(now) if now else utcnow()) - DAY
    result = session.execute(delete(UserAction).where(UserAction.occurred_at <= cutoff))
    return result.rowcount or 0
