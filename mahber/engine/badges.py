"""
mahber.engine.badges — Badge Requirement Evaluation
====================================================

Handler-registry implementation for badge eligibility.  Each requirement
key in a badge's ``requirements`` object maps to a pure handler
``(threshold, ctx) -> bool``; a badge is earned when **every** listed
requirement passes.

A badge is only evaluated when the triggering event can move one of its
requirement inputs (see :data:`RELEVANT_EVENTS`).  Badges with no
requirements are manual-only.

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from mahber.constants import EventType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Context — one user's current aggregates
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BadgeContext:
    lessons_completed: int = 0
    forum_posts: int = 0
    topics_created: int = 0
    max_post_likes: int = 0
    total_points: int = 0

    def value(self, key: str) -> int:
        return int(getattr(self, key, 0))


@dataclass(frozen=True, slots=True)
class BadgeSpec:
    """Detached view of a Badge row."""

    id: int
    name: str
    points: int
    requirements: Mapping[str, int]


# ---------------------------------------------------------------------------
# Requirement handlers
# ---------------------------------------------------------------------------
def _at_least(key: str) -> Callable[[int, BadgeContext], bool]:
    def handler(threshold: int, ctx: BadgeContext) -> bool:
        return ctx.value(key) >= threshold

    handler.__name__ = f"_check_{key}"
    return handler


REQUIREMENT_HANDLERS: dict[str, Callable[[int, BadgeContext], bool]] = {
    key: _at_least(key)
    for key in (
        "lessons_completed",
        "forum_posts",
        "topics_created",
        "max_post_likes",
        "total_points",
    )
}

_ALL_EVENTS = frozenset(EventType)

# Which event types can change each requirement input.
RELEVANT_EVENTS: dict[str, frozenset[str]] = {
    "lessons_completed": frozenset({EventType.LESSON_COMPLETED}),
    "forum_posts": frozenset({EventType.POST_CREATED, EventType.TOPIC_CREATED}),
    "topics_created": frozenset({EventType.TOPIC_CREATED}),
    "max_post_likes": frozenset({EventType.LIKE_RECEIVED}),
    "total_points": _ALL_EVENTS,
}


def is_relevant(requirements: Mapping[str, int], event_type: str | None) -> bool:
    """True if *event_type* can change any input of *requirements*.

    ``event_type=None`` means a full re-evaluation.
    """
    if not requirements:
        return False
    if event_type is None:
        return True
    return any(event_type in RELEVANT_EVENTS.get(key, ()) for key in requirements)


def meets_requirements(requirements: Mapping[str, int], ctx: BadgeContext) -> bool:
    if not requirements:
        return False
    for key, threshold in requirements.items():
        handler = REQUIREMENT_HANDLERS.get(key)
        if handler is None:
            logger.warning("Unknown badge requirement %r — badge never auto-awarded", key)
            return False
        try:
            if not handler(int(threshold), ctx):
                return False
        except (TypeError, ValueError):
            logger.warning("Invalid threshold %r for requirement %r", threshold, key)
            return False
    return True


def evaluate_badges(
    badges: Iterable[BadgeSpec],
    ctx: BadgeContext,
    *,
    event_type: str | None,
    owned: set[int],
) -> list[BadgeSpec]:
    """Badges from *badges* newly earned by the user described by *ctx*."""
    earned = []
    for badge in badges:
        if badge.id in owned:
            continue
        if not is_relevant(badge.requirements, event_type):
            continue
        if meets_requirements(badge.requirements, ctx):
            earned.append(badge)
    return earned


def progress(requirements: Mapping[str, int], ctx: BadgeContext) -> dict[str, dict[str, int]]:
    """``{key: {"current": n, "required": m}}`` for each requirement."""
    return {
        key: {"current": ctx.value(key), "required": int(threshold)}
        for key, threshold in requirements.items()
        if key in REQUIREMENT_HANDLERS
    }
