"""Per-workspace send throttle shared by all workers through the database."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from apps.backend.database import dialect_name
from apps.backend.models.rate_limit import RateLimitCounter

logger = logging.getLogger(__name__)


def window_start_for(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0)


def take_rate_limit_slot(db: Session, workspace_id: str, cap: int, now: datetime | None = None) -> bool:
    """
    Take one slot in the workspace's current 60s window.

    Single INSERT ... ON CONFLICT DO UPDATE SET count = count + 1 WHERE count < cap.
    No returned row means the window is full. cap <= 0 disables the limiter.
    """
    if not cap or cap <= 0:
        return True
    now = now or datetime.utcnow()
    insert_fn = pg_insert if dialect_name(db) == "postgresql" else sqlite_insert
    stmt = insert_fn(RateLimitCounter).values(
        workspace_id=workspace_id,
        window_start=window_start_for(now),
        count=1,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[RateLimitCounter.workspace_id, RateLimitCounter.window_start],
        set_={"count": RateLimitCounter.count + 1},
        where=RateLimitCounter.count < cap,
    ).returning(RateLimitCounter.count)
    taken = db.execute(stmt).scalar_one_or_none()
    db.commit()
    return taken is not None


def prune_rate_limit_windows(db: Session, older_than: datetime) -> int:
    result = db.execute(delete(RateLimitCounter).where(RateLimitCounter.window_start < older_than))
    db.commit()
    return result.rowcount or 0
