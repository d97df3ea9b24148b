"""Outbox endpoints: enqueue, list, retry, and the database insert-hook trigger."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.auth import require_internal_secret, require_webhook_secret
from apps.backend.config import get_settings
from apps.backend.deps import get_db
from apps.backend.models.outbox import OutboxMessage, OUTBOX_FAILED, OUTBOX_QUEUED
from apps.backend.services.outbox_enqueue import EnqueueError, enqueue_send
from apps.backend.services.outbox_store import retry_outbox

router = APIRouter()
logger = logging.getLogger(__name__)


class EnqueueRequest(BaseModel):
    workspace_id: str
    to_phone: str
    message_type: str = "text"
    text: str | None = None
    template_name: str | None = None
    language: str | None = None
    parameters: list[dict] | None = None
    thread_id: int | None = None
    connection_id: int | None = None
    idempotency_key: str | None = None


class OutboxHookRecord(BaseModel):
    id: int
    status: str | None = None


class OutboxHookPayload(BaseModel):
    type: str | None = None
    table: str | None = None
    record: OutboxHookRecord | None = None


def _outbox_item(o: OutboxMessage) -> dict:
    return {
        "id": o.id,
        "workspace_id": o.workspace_id,
        "status": o.status,
        "attempts": o.attempts,
        "next_run_at": o.next_run_at.isoformat() if o.next_run_at else None,
        "last_error": o.last_error,
    }


def enqueue_fast_path(outbox_id: int) -> bool:
    """Hand one job to the RQ outbox queue; the polling worker remains the fallback."""
    from redis import Redis
    from rq import Queue

    s = get_settings()
    r = Redis(host=s.redis_host, port=s.redis_port)
    q = Queue(s.rq_outbox_queue_name or "outbox", connection=r)
    q.enqueue("apps.worker.jobs.process_outbox", outbox_id)
    return True


@router.post("", dependencies=[Depends(require_internal_secret)])
def create_outbox(body: EnqueueRequest, db: Session = Depends(get_db)):
    try:
        job, created = enqueue_send(db, **body.model_dump())
    except EnqueueError as e:
        return JSONResponse({"ok": False, "error": e.code}, status_code=400)
    return {
        "ok": True,
        "outbox_id": job.id,
        "message_id": (job.payload_json or {}).get("message_id"),
        "idempotency_key": job.idempotency_key,
        "created": created,
    }


@router.get("", dependencies=[Depends(require_internal_secret)])
def list_outbox(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    status: str | None = Query(None),
    workspace_id: str | None = Query(None),
    db: Session = Depends(get_db),
):
    q = select(OutboxMessage)
    if status:
        q = q.where(OutboxMessage.status == status)
    if workspace_id:
        q = q.where(OutboxMessage.workspace_id == workspace_id)
    q = q.order_by(OutboxMessage.id.desc()).offset(skip).limit(limit)
    items = db.execute(q).scalars().all()
    return {"items": [_outbox_item(o) for o in items]}


@router.post("/{id}/retry", dependencies=[Depends(require_internal_secret)])
def retry_outbox_item(id: int, db: Session = Depends(get_db)):
    o = db.get(OutboxMessage, id)
    if not o:
        raise HTTPException(status_code=404, detail="Outbox item not found")
    if o.status != OUTBOX_FAILED:
        raise HTTPException(status_code=409, detail=f"Outbox item is {o.status}")
    retry_outbox(db, o)
    return _outbox_item(o)


@router.post("/trigger", dependencies=[Depends(require_webhook_secret)])
def outbox_trigger(body: OutboxHookPayload):
    """Called by the database hook on INSERT/UPDATE of outbox_messages."""
    if body.record is None:
        return JSONResponse({"error": "missing_record_id"}, status_code=400)
    if body.record.status and body.record.status != OUTBOX_QUEUED:
        return {"ok": True, "skipped": True, "reason": "not_queued"}
    try:
        enqueue_fast_path(body.record.id)
    except Exception:
        logger.exception("outbox_trigger_enqueue_failed outbox_id=%s", body.record.id)
        return {"ok": True, "queued": False}
    return {"ok": True, "queued": True}
