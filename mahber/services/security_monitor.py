"""
mahber.services.security_monitor — Suspicious Activity Tracking
================================================================

Counts rate-limit violations per member in a one-hour sliding window.
Three violations in the window is reported as suspicious activity.

The counters are the only in-process mutable state in the core.  They are
rebuilt from ``moderation_logs`` at startup, so a restart loses nothing
that was persisted.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from threading import Lock

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from mahber.constants import ModerationAction, as_utc, utcnow
from mahber.database.models import ModerationLog

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 3
DEFAULT_WINDOW = timedelta(hours=1)


class SecurityMonitor:
    """Thread-safe per-user violation windows."""

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        window: timedelta = DEFAULT_WINDOW,
    ) -> None:
        self.threshold = threshold
        self.window = window
        self._lock = Lock()
        self._violations: defaultdict[int, list[datetime]] = defaultdict(list)

    def _prune(self, user_id: int, now: datetime) -> list[datetime]:
        cutoff = now - self.window
        recent = [at for at in self._violations[user_id] if at > cutoff]
        if recent:
            self._violations[user_id] = recent
        else:
            self._violations.pop(user_id, None)
        return recent

    def record_violation(self, user_id: int, at: datetime | None = None) -> int:
        """Record one violation and return the count inside the window."""
        at = as_utc(at) if at else utcnow()
        with self._lock:
            self._violations[user_id].append(at)
            return len(self._prune(user_id, at))

    def is_suspicious(self, user_id: int, now: datetime | None = None) -> bool:
        now = as_utc(now) if now else utcnow()
        with self._lock:
            return len(self._prune(user_id, now)) >= self.threshold

    def violation_count(self, user_id: int, now: datetime | None = None) -> int:
        now = as_utc(now) if now else utcnow()
        with self._lock:
            return len(self._prune(user_id, now))

    def suspicious_users(self, now: datetime | None = None) -> list[int]:
        now = as_utc(now) if now else utcnow()
        with self._lock:
            return sorted(
                user_id for user_id in list(self._violations)
                if len(self._prune(user_id, now)) >= self.threshold
            )

    def cleanup(self, now: datetime | None = None) -> int:
        """Drop users whose windows are empty.  Returns users still tracked."""
        now = as_utc(now) if now else utcnow()
        with self._lock:
            for user_id in list(self._violations):
                self._prune(user_id, now)
            return len(self._violations)

    def rebuild(self, engine: Engine, now: datetime | None = None) -> int:
        """Reload the window from persisted rate-limit logs.  Returns rows loaded."""
        now = as_utc(now) if now else utcnow()
        with Session(engine) as session:
            rows = session.execute(
                select(ModerationLog.user_id, ModerationLog.created_at).where(
                    ModerationLog.action == ModerationAction.RATE_LIMITED,
                    ModerationLog.created_at > now - self.window,
                    ModerationLog.user_id.is_not(None),
                )
            ).all()

        with self._lock:
            self._violations.clear()
            for user_id, created_at in rows:
                self._violations[user_id].append(as_utc(created_at))
        logger.info("Security monitor rebuilt with %d recent violations", len(rows))
        return len(rows)
