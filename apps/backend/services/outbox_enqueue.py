"""Enqueue outbound WhatsApp sends (outbound message row + outbox job)."""
from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.backend.models.outbox import OutboxMessage, OUTBOX_QUEUED
from apps.backend.models.wa_connection import WaConnection
from apps.backend.models.wa_inbox import WaMessage
from apps.backend.services.wa_status import STATUS_PENDING, status_time

logger = logging.getLogger(__name__)

IDEMPOTENCY_BUCKET_SECONDS = 30


class EnqueueError(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


def build_idempotency_key(
    kind: str,
    workspace_id: str,
    thread_id,
    content: str,
    now: float | None = None,
    bucket_seconds: int = IDEMPOTENCY_BUCKET_SECONDS,
) -> str:
    """Same content for the same thread within one time bucket collapses into one send."""
    ts = time.time() if now is None else now
    digest = hashlib.sha256((content or "").encode("utf-8")).hexdigest()[:16]
    return f"{kind}:{workspace_id}:{thread_id or '-'}:{digest}:{int(ts // bucket_seconds)}"


def find_by_idempotency_key(db: Session, key: str) -> OutboxMessage | None:
    return db.execute(
        select(OutboxMessage).where(OutboxMessage.idempotency_key == key)
    ).scalar_one_or_none()


def enqueue_send(
    db: Session,
    *,
    workspace_id: str,
    to_phone: str,
    message_type: str = "text",
    text: str | None = None,
    template_name: str | None = None,
    language: str | None = None,
    parameters: list | None = None,
    thread_id: int | None = None,
    connection_id: int | None = None,
    idempotency_key: str | None = None,
) -> tuple[OutboxMessage, bool]:
    """Returns (job, created). created is False when the idempotency key already has a job."""
    if message_type not in ("text", "template"):
        raise EnqueueError("unsupported_message_type")
    if message_type == "text" and not (text or "").strip():
        raise EnqueueError("text_required")
    if message_type == "template" and not template_name:
        raise EnqueueError("template_name_required")
    if not to_phone:
        raise EnqueueError("to_phone_required")

    if not idempotency_key:
        content = text if message_type == "text" else json.dumps(
            [template_name, language, parameters], ensure_ascii=False, sort_keys=True
        )
        idempotency_key = build_idempotency_key(f"wa-send-{message_type}", workspace_id, thread_id, content)

    existing = find_by_idempotency_key(db, idempotency_key)
    if existing:
        logger.info("outbox_enqueue_duplicate key=%s outbox_id=%s", idempotency_key, existing.id)
        return existing, False

    phone_number_id = None
    if connection_id:
        conn = db.get(WaConnection, connection_id)
        phone_number_id = conn.phone_number_id if conn else None

    now = datetime.utcnow()
    status_at = status_time(now)
    message = WaMessage(
        workspace_id=workspace_id,
        thread_id=thread_id,
        phone_number_id=phone_number_id,
        direction="outbound",
        msg_type=message_type,
        text_body=text if message_type == "text" else f"[template:{template_name}]",
        status=STATUS_PENDING,
        status_updated_at=status_at,
        created_at=now,
    )
    db.add(message)
    db.flush()

    payload: dict = {"message_id": message.id}
    if connection_id:
        payload["connection_id"] = connection_id
    if message_type == "text":
        payload["text"] = text
    else:
        payload["template_name"] = template_name
        payload["language"] = language or "en"
        if parameters:
            payload["parameters"] = parameters

    job = OutboxMessage(
        workspace_id=workspace_id,
        thread_id=thread_id,
        connection_id=connection_id,
        to_phone=to_phone,
        message_type=message_type,
        payload_json=payload,
        status=OUTBOX_QUEUED,
        attempts=0,
        next_run_at=now,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_by_idempotency_key(db, idempotency_key)
        if existing is None:
            raise
        return existing, False
    db.refresh(job)
    logger.info(
        "outbox_enqueued outbox_id=%s message_id=%s workspace_id=%s type=%s",
        job.id, message.id, workspace_id, message_type,
    )
    return job, True
