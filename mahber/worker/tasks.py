"""
mahber.worker.tasks — Periodic Background Jobs
==============================================

Each job is a synchronous cycle function over a
:class:`~mahber.context.ServiceContext`, run on a background thread via
``run_db()`` so the event loop stays free:

- **moderation** (60 s): drains the badge queue fed by approved content,
  prunes old gate actions, trims security-monitor windows and reports the
  review backlog and any expired queue items.
- **leaderboard** (60 s): drains the leaderboard queue.
- **updates** (60 s): both queues in one pass, badges first.
- **archiver** (300 s): retires idle forums and chapters.
- **publisher** (300 s): publishes due scheduled topics.

A failing cycle is logged and the loop carries on; workers never raise.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from mahber.constants import as_utc, utcnow
from mahber.context import ServiceContext
from mahber.database.engine import get_session, run_db
from mahber.services import (
    archive_service,
    moderation_service,
    publisher_service,
    update_processor,
)
from mahber.services.gate import prune_actions
from mahber.services.update_queue import QUEUES, stale_items

logger = logging.getLogger(__name__)

JOB_NAMES = ("moderation", "leaderboard", "updates", "archiver", "publisher")


@dataclass(frozen=True, slots=True)
class PeriodicJob:
    name: str
    period_seconds: float
    cycle: Callable[[ServiceContext], Any]


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------
def moderation_housekeeping(ctx: ServiceContext, *, now: datetime | None = None) -> dict[str, Any]:
    now = as_utc(now) if now else utcnow()
    with get_session(ctx.engine) as session:
        pruned = prune_actions(session, now)
        pending = moderation_service.moderation_stats(session).pending_review
        stale = {
            name: len(stale_items(
                session, model, now=now, expiry_seconds=ctx.config.update.expiry_seconds
            ))
            for name, model in QUEUES.items()
        }
    tracked = ctx.monitor.cleanup(now)

    for name, count in stale.items():
        if count:
            logger.warning("%d expired %s queue items need operator attention", count, name)
    if pending:
        logger.info("%d flagged submissions awaiting review", pending)
    return {
        "actions_pruned": pruned,
        "pending_review": pending,
        "stale_items": stale,
        "monitored_users": tracked,
    }


def moderation_cycle(ctx: ServiceContext) -> dict[str, Any]:
    return {
        "badges": update_processor.process_badge_queue(ctx.engine, ctx.config),
        "housekeeping": moderation_housekeeping(ctx),
    }


def leaderboard_cycle(ctx: ServiceContext) -> dict[str, int]:
    return update_processor.process_leaderboard_queue(ctx.engine, ctx.config)


def update_cycle(ctx: ServiceContext) -> dict[str, dict[str, int]]:
    return update_processor.run_update_cycle(ctx.engine, ctx.config)


def archive_cycle(ctx: ServiceContext) -> dict[str, Any]:
    return archive_service.run_archive_sweep(ctx.engine, ctx.config.archive)


def publisher_cycle(ctx: ServiceContext) -> dict[str, int]:
    return publisher_service.run_publisher(ctx)


def build_jobs(name: str, ctx: ServiceContext) -> list[PeriodicJob]:
    """Jobs for a CLI job name.  ``all`` runs every distinct job once."""
    processor_period = ctx.config.update.worker_period_seconds
    slow_period = ctx.config.archive.period_seconds
    jobs = {
        "moderation": PeriodicJob("moderation", processor_period, moderation_cycle),
        "leaderboard": PeriodicJob("leaderboard", processor_period, leaderboard_cycle),
        "updates": PeriodicJob("updates", processor_period, update_cycle),
        "archiver": PeriodicJob("archiver", slow_period, archive_cycle),
        "publisher": PeriodicJob(
            "publisher", ctx.config.update.publisher_period_seconds, publisher_cycle
        ),
    }
    if name == "all":
        return [
            jobs["updates"],
            PeriodicJob("moderation", processor_period, moderation_housekeeping),
            jobs["archiver"],
            jobs["publisher"],
        ]
    if name not in jobs:
        raise ValueError(f"Unknown job {name!r}")
    return [jobs[name]]


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------
async def run_once(job: PeriodicJob, ctx: ServiceContext) -> bool:
    """Run one cycle.  Returns False if it raised."""
    try:
        result = await run_db(job.cycle, ctx)
    except Exception:
        logger.exception("%s cycle failed", job.name, extra={"task": job.name})
        return False
    logger.debug("%s cycle: %s", job.name, result)
    return True


async def run_periodic(
    job: PeriodicJob, ctx: ServiceContext, *, iterations: int | None = None
) -> None:
    """Run *job* every ``period_seconds`` until cancelled."""
    done = 0
    while True:
        await run_once(job, ctx)
        done += 1
        if iterations is not None and done >= iterations:
            return
        await asyncio.sleep(job.period_seconds)


async def run_jobs(jobs: list[PeriodicJob], ctx: ServiceContext, *, once: bool = False) -> bool:
    """Run every job concurrently.  With *once*, a single cycle each."""
    if once:
        results = [await run_once(job, ctx) for job in jobs]
        return all(results)

    for job in jobs:
        logger.info("Starting %s job (every %ss)", job.name, job.period_seconds)
    await asyncio.gather(*(run_periodic(job, ctx) for job in jobs))
    return True
