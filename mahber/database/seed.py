"""
mahber.database.seed — Default Badge Catalogue
===============================================

Baseline badges seeded on first startup so new members can earn
recognition immediately.

Idempotent — only inserts badges whose name doesn't already exist.
Badges edited by administrators are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from mahber.constants import BadgeType
from mahber.database.models import Badge

logger = logging.getLogger(__name__)


# name → (type, points, requirements, description)
DEFAULT_BADGES: dict[str, tuple[BadgeType, int, dict, str]] = {
    "first_post": (
        BadgeType.PARTICIPATION, 10, {"forum_posts": 1},
        "Shared a first post with the community",
    ),
    "active_participant": (
        BadgeType.PARTICIPATION, 25, {"forum_posts": 10},
        "Contributed ten posts to forum discussions",
    ),
    "discussion_starter": (
        BadgeType.PARTICIPATION, 15, {"topics_created": 5},
        "Started five discussion topics",
    ),
    "forum_leader": (
        BadgeType.LEADERSHIP, 50, {"forum_posts": 50},
        "Fifty posts of sustained forum leadership",
    ),
    "popular_contributor": (
        BadgeType.RECOGNITION, 30, {"max_post_likes": 10},
        "Wrote a post that received ten likes",
    ),
    "first_lesson": (
        BadgeType.LEARNING, 10, {"lessons_completed": 1},
        "Completed a first lesson",
    ),
    "dedicated_learner": (
        BadgeType.LEARNING, 40, {"lessons_completed": 10},
        "Completed ten lessons",
    ),
}


def seed_default_badges(engine: Engine) -> int:
    """Insert any missing default badges.  Returns the number inserted."""
    inserted = 0
    with Session(engine) as session:
        existing = set(session.scalars(select(Badge.name)).all())
        for name, (badge_type, points, requirements, description) in DEFAULT_BADGES.items():
            if name in existing:
                continue
            session.add(Badge(
                name=name,
                type=badge_type,
                points=points,
                requirements=requirements,
                description=description,
            ))
            inserted += 1
        session.commit()

    if inserted:
        logger.info("Seeded %d default badges", inserted)
    return inserted
