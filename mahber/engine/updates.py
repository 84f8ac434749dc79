"""
mahber.engine.updates — Typed Update Messages
==============================================

The two kinds of work carried by the update queues.  Producers build one
of these and hand it to :func:`mahber.services.update_queue.enqueue`;
the processor decodes queue rows back into them with :func:`decode`.

Flow is one-directional: ledger event → :class:`BadgeUpdate` → badge
evaluation → :class:`LeaderboardUpdate` → leaderboard upsert.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class BadgeUpdate:
    """Re-evaluate badges for *user_id* after an engagement event."""

    user_id: int
    event_type: str | None = None
    event_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"kind": "badge", "event_type": self.event_type, "event_id": self.event_id}


@dataclass(frozen=True, slots=True)
class LeaderboardUpdate:
    """Recompute *user_id*'s points and upsert their leaderboard entries."""

    user_id: int
    reason: str = "points_changed"
    badge_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"kind": "leaderboard", "reason": self.reason, "badge_id": self.badge_id}


Update = BadgeUpdate | LeaderboardUpdate


def decode(user_id: int, payload: dict[str, Any]) -> Update:
    """Rebuild a message from a queue row.

    Raises
    ------
    ValueError
        If the payload kind is unknown.
    """
    kind = payload.get("kind")
    if kind == "badge":
        return BadgeUpdate(
            user_id=user_id,
            event_type=payload.get("event_type"),
            event_id=payload.get("event_id"),
        )
    if kind == "leaderboard":
        return LeaderboardUpdate(
            user_id=user_id,
            reason=payload.get("reason", "points_changed"),
            badge_id=payload.get("badge_id"),
        )
    raise ValueError(f"Unknown update kind {kind!r}")
