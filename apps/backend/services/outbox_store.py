"""Outbox store: atomic claim, bookkeeping writes and stale-lock recovery."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session

from apps.backend.database import dialect_name
from apps.backend.models.outbox import (
    OutboxMessage,
    OUTBOX_QUEUED,
    OUTBOX_PROCESSING,
    OUTBOX_SENT,
    OUTBOX_FAILED,
)

logger = logging.getLogger(__name__)

FAR_FUTURE_DAYS = 365
STALE_LOCK_ERROR = "stale_lock_reclaimed"


def far_future(now: datetime | None = None) -> datetime:
    return (now or datetime.utcnow()) + timedelta(days=FAR_FUTURE_DAYS)


def _eligible(now: datetime):
    return (
        OutboxMessage.status == OUTBOX_QUEUED,
        or_(OutboxMessage.next_run_at.is_(None), OutboxMessage.next_run_at <= now),
        OutboxMessage.locked_by.is_(None),
    )


def claim_outbox(db: Session, batch_size: int, worker_id: str, now: datetime | None = None) -> list[OutboxMessage]:
    """
    Atomically move up to batch_size due jobs to processing under worker_id.

    One UPDATE ... WHERE id IN (SELECT ... [FOR UPDATE SKIP LOCKED]) AND status='queued'
    RETURNING id. A concurrent caller that loses the race gets fewer or zero rows.
    """
    now = now or datetime.utcnow()
    limit = max(1, int(batch_size))
    candidates = (
        select(OutboxMessage.id)
        .where(*_eligible(now))
        .order_by(OutboxMessage.next_run_at.asc(), OutboxMessage.id.asc())
        .limit(limit)
    )
    if dialect_name(db) == "postgresql":
        candidates = candidates.with_for_update(skip_locked=True)
    stmt = (
        update(OutboxMessage)
        .where(
            OutboxMessage.id.in_(candidates.scalar_subquery()),
            OutboxMessage.status == OUTBOX_QUEUED,
        )
        .values(status=OUTBOX_PROCESSING, locked_at=now, locked_by=worker_id, updated_at=now)
        .returning(OutboxMessage.id)
        .execution_options(synchronize_session=False)
    )
    claimed_ids = list(db.execute(stmt).scalars().all())
    db.commit()
    if not claimed_ids:
        return []
    rows = db.execute(
        select(OutboxMessage)
        .where(OutboxMessage.id.in_(claimed_ids))
        .order_by(OutboxMessage.next_run_at.asc(), OutboxMessage.id.asc())
        .execution_options(populate_existing=True)
    ).scalars().all()
    return list(rows)


def claim_outbox_message(db: Session, outbox_id: int, worker_id: str, now: datetime | None = None) -> OutboxMessage | None:
    """Single-row claim for the insert-hook fast path. None when the job is not queued any more."""
    now = now or datetime.utcnow()
    stmt = (
        update(OutboxMessage)
        .where(OutboxMessage.id == outbox_id, *_eligible(now))
        .values(status=OUTBOX_PROCESSING, locked_at=now, locked_by=worker_id, updated_at=now)
        .returning(OutboxMessage.id)
        .execution_options(synchronize_session=False)
    )
    claimed = db.execute(stmt).scalar_one_or_none()
    db.commit()
    if claimed is None:
        return None
    return db.execute(
        select(OutboxMessage)
        .where(OutboxMessage.id == claimed)
        .execution_options(populate_existing=True)
    ).scalar_one()


def _release(job: OutboxMessage, now: datetime) -> None:
    job.locked_at = None
    job.locked_by = None
    job.updated_at = now


def mark_outbox_sent(db: Session, job: OutboxMessage, now: datetime | None = None) -> None:
    now = now or datetime.utcnow()
    job.status = OUTBOX_SENT
    job.attempts = (job.attempts or 0) + 1
    job.last_error = None
    job.next_run_at = None
    _release(job, now)
    db.add(job)
    db.commit()


def requeue_outbox(
    db: Session,
    job: OutboxMessage,
    next_run_at: datetime,
    error: str,
    *,
    count_attempt: bool,
    now: datetime | None = None,
) -> None:
    now = now or datetime.utcnow()
    job.status = OUTBOX_QUEUED
    if count_attempt:
        job.attempts = (job.attempts or 0) + 1
    job.last_error = (error or "")[:200] or None
    job.next_run_at = next_run_at
    _release(job, now)
    db.add(job)
    db.commit()


def fail_outbox(db: Session, job: OutboxMessage, error: str, *, attempts: int | None = None, now: datetime | None = None) -> None:
    """Terminal failure: the job is retired with a far-future next_run_at, never deleted."""
    now = now or datetime.utcnow()
    job.status = OUTBOX_FAILED
    job.attempts = attempts if attempts is not None else (job.attempts or 0) + 1
    job.last_error = (error or "failed")[:200]
    job.next_run_at = far_future(now)
    _release(job, now)
    db.add(job)
    db.commit()


def reclaim_stale_outbox(db: Session, stale_seconds: int = 600, now: datetime | None = None) -> int:
    """Return jobs stuck in processing past the lock threshold to the queue. Attempts are kept."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(seconds=max(60, int(stale_seconds)))
    stmt = (
        update(OutboxMessage)
        .where(
            OutboxMessage.status == OUTBOX_PROCESSING,
            OutboxMessage.locked_at < cutoff,
        )
        .values(
            status=OUTBOX_QUEUED,
            locked_at=None,
            locked_by=None,
            next_run_at=now,
            last_error=STALE_LOCK_ERROR,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    count = result.rowcount or 0
    if count:
        logger.warning("outbox_stale_locks_reclaimed count=%s cutoff=%s", count, cutoff.isoformat())
    return count


def retry_outbox(db: Session, job: OutboxMessage, now: datetime | None = None) -> None:
    """Operator retry of a retired job: fresh attempt budget, due immediately."""
    now = now or datetime.utcnow()
    job.status = OUTBOX_QUEUED
    job.attempts = 0
    job.next_run_at = now
    job.last_error = None
    _release(job, now)
    db.add(job)
    db.commit()


def outbox_stats(db: Session, stale_seconds: int = 600, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    cutoff = now - timedelta(seconds=max(60, int(stale_seconds)))
    counts = dict(
        db.execute(select(OutboxMessage.status, func.count()).group_by(OutboxMessage.status)).all()
    )
    oldest_due = db.execute(
        select(func.min(OutboxMessage.created_at)).where(
            OutboxMessage.status == OUTBOX_QUEUED,
            or_(OutboxMessage.next_run_at.is_(None), OutboxMessage.next_run_at <= now),
        )
    ).scalar()
    stale = db.execute(
        select(func.count()).select_from(OutboxMessage).where(
            OutboxMessage.status == OUTBOX_PROCESSING,
            OutboxMessage.locked_at < cutoff,
        )
    ).scalar() or 0
    return {
        "queued": int(counts.get(OUTBOX_QUEUED, 0)),
        "processing": int(counts.get(OUTBOX_PROCESSING, 0)),
        "sent": int(counts.get(OUTBOX_SENT, 0)),
        "failed": int(counts.get(OUTBOX_FAILED, 0)),
        "stale_processing": int(stale),
        "oldest_queued_minutes": round((now - oldest_due).total_seconds() / 60) if oldest_due else 0,
    }
