"""
mahber.services.update_queue — Badge & Leaderboard Queues
=========================================================

Producers call :func:`enqueue` inside their own transaction, so a post,
its ledger event, and the queued work commit (or roll back) together.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mahber.constants import as_utc, utcnow
from mahber.database.models import BadgeQueueItem, LeaderboardQueueItem
from mahber.engine.updates import BadgeUpdate, LeaderboardUpdate, Update

QueueModel = type[BadgeQueueItem] | type[LeaderboardQueueItem]

QUEUES: dict[str, QueueModel] = {
    "badge": BadgeQueueItem,
    "leaderboard": LeaderboardQueueItem,
}


def model_for(update: Update) -> QueueModel:
    if isinstance(update, BadgeUpdate):
        return BadgeQueueItem
    if isinstance(update, LeaderboardUpdate):
        return LeaderboardQueueItem
    raise TypeError(f"Not an update message: {update!r}")


def enqueue(session: Session, update: Update, *, now: datetime | None = None):
    """Add *update* to its queue within the current transaction."""
    model = model_for(update)
    item = model(
        user_id=update.user_id,
        payload=update.to_payload(),
        created_at=as_utc(now) if now else utcnow(),
    )
    session.add(item)
    return item


def queue_depth(session: Session, model: QueueModel) -> int:
    return session.scalar(
        select(func.count()).select_from(model).where(model.processed.is_(False))
    ) or 0


def pending_items(
    session: Session,
    model: QueueModel,
    *,
    now: datetime,
    expiry_seconds: int,
    limit: int,
) -> list:
    """Unprocessed, unexpired items in enqueue order."""
    cutoff = now - timedelta(seconds=expiry_seconds)
    return list(session.scalars(
        select(model)
        .where(model.processed.is_(False), model.created_at >= cutoff)
        .order_by(model.created_at.asc(), model.id.asc())
        .limit(limit)
    ).all())


def stale_items(
    session: Session,
    model: QueueModel,
    *,
    now: datetime | None = None,
    expiry_seconds: int = 300,
) -> list:
    """Unprocessed items past the expiry window, left for an operator."""
    now = as_utc(now) if now else utcnow()
    cutoff = now - timedelta(seconds=expiry_seconds)
    return list(session.scalars(
        select(model)
        .where(model.processed.is_(False), model.created_at < cutoff)
        .order_by(model.created_at.asc())
    ).all())
