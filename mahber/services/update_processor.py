"""
mahber.services.update_processor — Achievement & Leaderboard Processor
======================================================================

Drains the badge queue, then the leaderboard queue, once per cycle.
Badge evaluation enqueues leaderboard refreshes, and both queues are
drained in the same cycle, so an update enqueued before a cycle starts is
visible on the leaderboard when that cycle ends (cycles run every 60 s).

Per cycle and per queue:

- at most ``batch_size`` unprocessed items younger than ``expiry_seconds``
  are taken, in enqueue order;
- each item is applied inside its own SAVEPOINT, so one failure never
  spoils the batch;
- after a member's item fails, that member's later items wait for the
  next cycle, which keeps per-member ordering;
- a failure increments ``attempt_count``; at ``max_attempts`` the item
  moves to ``update_dead_letters``;
- a queue deeper than ``backpressure_depth`` logs a warning and carries on.

Workers never raise: everything is logged and counted in the returned
summary.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from mahber.config import MahberConfig
from mahber.constants import as_utc, utcnow
from mahber.database.engine import get_session
from mahber.database.models import BadgeQueueItem, DeadLetter, LeaderboardQueueItem
from mahber.engine.updates import BadgeUpdate, LeaderboardUpdate, Update, decode
from mahber.services import achievement_service, leaderboard_service
from mahber.services.update_queue import QueueModel, pending_items, queue_depth

logger = logging.getLogger(__name__)

ApplyFn = Callable[[Session, Update, MahberConfig, datetime], object]


# ---------------------------------------------------------------------------
# Appliers
# ---------------------------------------------------------------------------
def _apply_badge_update(session: Session, update: Update, cfg: MahberConfig, now: datetime):
    if not isinstance(update, BadgeUpdate):
        raise TypeError(f"Badge queue received {update!r}")
    return achievement_service.evaluate_user(session, update, now=now)


def _apply_leaderboard_update(session: Session, update: Update, cfg: MahberConfig, now: datetime):
    if not isinstance(update, LeaderboardUpdate):
        raise TypeError(f"Leaderboard queue received {update!r}")
    return leaderboard_service.refresh_user_entries(
        session, update, youth_role=cfg.youth_role_name, now=now
    )


# ---------------------------------------------------------------------------
# Drain loop
# ---------------------------------------------------------------------------
def _record_failure(
    session: Session,
    item,
    queue_name: str,
    exc: Exception,
    max_attempts: int,
) -> bool:
    """Count a failed attempt.  Returns True if the item was dead-lettered."""
    item.attempt_count = (item.attempt_count or 0) + 1
    item.last_error = f"{type(exc).__name__}: {exc}"[:1000]
    if item.attempt_count < max_attempts:
        return False

    session.add(DeadLetter(
        queue=queue_name,
        item_id=item.id,
        user_id=item.user_id,
        payload=item.payload,
        attempt_count=item.attempt_count,
        last_error=item.last_error,
        enqueued_at=item.created_at,
    ))
    session.delete(item)
    logger.error(
        "%s queue item %s for user %s dead-lettered after %d attempts: %s",
        queue_name, item.id, item.user_id, item.attempt_count, item.last_error,
    )
    return True


def _drain(
    engine: Engine,
    cfg: MahberConfig,
    model: QueueModel,
    queue_name: str,
    apply: ApplyFn,
    now: datetime,
) -> dict[str, int]:
    summary = {"processed": 0, "failed": 0, "dead_lettered": 0, "deferred": 0, "depth": 0}
    settings = cfg.update

    with get_session(engine) as session:
        depth = queue_depth(session, model)
        summary["depth"] = depth
        if depth > settings.backpressure_depth:
            logger.warning(
                "Backpressure: %s queue depth %d exceeds %d",
                queue_name, depth, settings.backpressure_depth,
            )

        items = pending_items(
            session, model,
            now=now,
            expiry_seconds=settings.expiry_seconds,
            limit=settings.batch_size,
        )
        blocked_users: set[int] = set()
        for item in items:
            if item.user_id in blocked_users:
                summary["deferred"] += 1
                continue
            try:
                update = decode(item.user_id, item.payload)
                with session.begin_nested():   # SAVEPOINT per item
                    apply(session, update, cfg, now)
                    item.processed = True
                    item.processed_at = now
                    session.flush()
            except Exception as exc:
                logger.exception("Failed to apply %s queue item %s", queue_name, item.id)
                blocked_users.add(item.user_id)
                summary["failed"] += 1
                if _record_failure(session, item, queue_name, exc, settings.max_attempts):
                    summary["dead_lettered"] += 1
                continue
            summary["processed"] += 1

    if summary["processed"] or summary["failed"]:
        logger.info(
            "%s queue: %d processed, %d failed, %d dead-lettered, %d deferred",
            queue_name, summary["processed"], summary["failed"],
            summary["dead_lettered"], summary["deferred"],
        )
    return summary


def process_badge_queue(
    engine: Engine, cfg: MahberConfig, *, now: datetime | None = None
) -> dict[str, int]:
    now = as_utc(now) if now else utcnow()
    return _drain(engine, cfg, BadgeQueueItem, "badge", _apply_badge_update, now)


def process_leaderboard_queue(
    engine: Engine, cfg: MahberConfig, *, now: datetime | None = None
) -> dict[str, int]:
    now = as_utc(now) if now else utcnow()
    return _drain(engine, cfg, LeaderboardQueueItem, "leaderboard", _apply_leaderboard_update, now)


def run_update_cycle(
    engine: Engine, cfg: MahberConfig, *, now: datetime | None = None
) -> dict[str, dict[str, int]]:
    """One full pass: badges first, then the leaderboard refreshes they queued."""
    now = as_utc(now) if now else utcnow()
    return {
        "badges": process_badge_queue(engine, cfg, now=now),
        "leaderboard": process_leaderboard_queue(engine, cfg, now=now),
    }
