"""WhatsApp webhook ingestion: durable raw log first, then threads/messages/statuses.

The wa_webhook_events table is the source of truth. Every step below is
idempotent, so any event can be replayed by the reconciliation sweep. Each
message/status item runs in its own savepoint: a bad item is recorded on the
event and the rest of the payload still lands.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from apps.backend.database import dialect_name
from apps.backend.models.wa_connection import WaConnection
from apps.backend.models.wa_inbox import WaThread, WaMessage
from apps.backend.models.wa_webhook_event import WaWebhookEvent
from apps.backend.services.backoff import next_backoff_ms
from apps.backend.services.wa_status import apply_status_update, parse_unix_ts, APPLIED

logger = logging.getLogger(__name__)

PREVIEW_MAX = 160
ERROR_TEXT_MAX = 500
MEDIA_TYPES = ("image", "document", "audio", "video", "sticker")


class WebhookProcessingError(Exception):
    pass


@dataclass
class IngestResult:
    inserted: bool
    new_thread: bool
    thread_id: int | None = None
    message_id: int | None = None


@dataclass
class RetryPolicy:
    """Sweep schedule for events whose processing failed."""

    max_attempts: int = 8
    base_seconds: int = 60
    cap_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(settings.webhook_max_attempts)),
            base_seconds=max(1, int(settings.webhook_retry_base_seconds)),
            cap_seconds=max(1, int(settings.webhook_retry_cap_seconds)),
        )


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _insert_for(db: Session):
    return pg_insert if dialect_name(db) == "postgresql" else sqlite_insert


def iter_changes(payload: dict):
    """Yield value dicts from entry[].changes[].value, skipping malformed parts."""
    for entry in _as_list(_as_dict(payload).get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(change).get("value")
            if isinstance(value, dict):
                yield value


def _phone_number_ids(payload: dict) -> list[str]:
    out: list[str] = []
    for value in iter_changes(payload):
        pn = _as_dict(value.get("metadata")).get("phone_number_id")
        if pn and str(pn) not in out:
            out.append(str(pn))
    return out


def resolve_workspace_id(db: Session, payload: dict) -> str | None:
    for pn in _phone_number_ids(payload):
        conn = db.execute(
            select(WaConnection).where(WaConnection.phone_number_id == pn)
        ).scalar_one_or_none()
        if conn:
            return conn.workspace_id
    return None


def persist_webhook_event(db: Session, payload: dict, workspace_id: str | None = None) -> WaWebhookEvent:
    """Store the raw push and commit before any interpretation."""
    event = WaWebhookEvent(
        workspace_id=workspace_id,
        channel="whatsapp",
        payload_json=payload,
        received_at=datetime.utcnow(),
        attempts=0,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def message_text(msg: dict) -> str:
    msg_type = msg.get("type")
    text = msg.get("text")
    if isinstance(text, str) and text:
        return text
    body = _as_dict(text).get("body")
    if body:
        return str(body)
    nfm = _as_dict(_as_dict(msg.get("interactive")).get("nfm_reply")).get("response_json")
    if isinstance(nfm, dict) and nfm.get("body"):
        return str(nfm["body"])
    button = _as_dict(msg.get("button")).get("text")
    if button:
        return str(button)
    if msg_type in MEDIA_TYPES:
        media = _as_dict(msg.get(msg_type))
        return media.get("caption") or media.get("filename") or f"[{msg_type}]"
    return f"[{msg_type}]" if msg_type else "[message]"


def _media_id(msg: dict) -> str | None:
    for kind in MEDIA_TYPES:
        media = msg.get(kind)
        if isinstance(media, dict) and media.get("id"):
            return str(media["id"])
    return None


def upsert_thread(
    db: Session,
    workspace_id: str,
    phone_number_id: str,
    contact_wa_id: str,
    contact_name: str | None,
    now: datetime,
) -> tuple[int, bool]:
    """Create-if-absent on (workspace, phone_number_id, contact). Returns (thread_id, is_new)."""
    insert_fn = _insert_for(db)
    connection_id = db.execute(
        select(WaConnection.id).where(WaConnection.phone_number_id == phone_number_id)
    ).scalar_one_or_none()
    stmt = insert_fn(WaThread).values(
        workspace_id=workspace_id,
        phone_number_id=phone_number_id,
        contact_wa_id=contact_wa_id,
        contact_name=contact_name,
        connection_id=connection_id,
        status="open",
        unread_count=0,
        created_at=now,
        updated_at=now,
    )
    set_: dict[str, Any] = {"updated_at": stmt.excluded.updated_at}
    if contact_name:
        set_["contact_name"] = stmt.excluded.contact_name
    stmt = stmt.on_conflict_do_update(
        index_elements=[WaThread.workspace_id, WaThread.phone_number_id, WaThread.contact_wa_id],
        set_=set_,
    ).returning(WaThread.id, WaThread.created_at, WaThread.updated_at)
    row = db.execute(stmt).one()
    return int(row.id), row.created_at == row.updated_at


def ingest_inbound_message(
    db: Session,
    workspace_id: str,
    msg: dict,
    phone_number_id: str | None,
    contact_wa_id: str | None,
    contact_name: str | None,
    now: datetime | None = None,
) -> IngestResult:
    now = now or datetime.utcnow()
    wa_message_id = msg.get("id")
    counterparty = contact_wa_id or msg.get("from")
    if not wa_message_id or not counterparty:
        return IngestResult(inserted=False, new_thread=False)
    phone_id = phone_number_id or "unknown"
    received_at = parse_unix_ts(msg.get("timestamp")) or now

    thread_id, new_thread = upsert_thread(db, workspace_id, phone_id, str(counterparty), contact_name, now)

    existing = db.execute(
        select(WaMessage.id).where(
            WaMessage.workspace_id == workspace_id,
            WaMessage.phone_number_id == phone_id,
            WaMessage.wa_message_id == str(wa_message_id),
        ).limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return IngestResult(inserted=False, new_thread=new_thread, thread_id=thread_id, message_id=existing)

    text_body = message_text(msg)
    insert_fn = _insert_for(db)
    stmt = insert_fn(WaMessage).values(
        workspace_id=workspace_id,
        thread_id=thread_id,
        phone_number_id=phone_id,
        wa_message_id=str(wa_message_id),
        direction="inbound",
        msg_type=msg.get("type") or "text",
        text_body=text_body,
        media_id=_media_id(msg),
        payload_json=msg,
        wa_timestamp=received_at,
        created_at=received_at,
    ).on_conflict_do_nothing(
        index_elements=[WaMessage.workspace_id, WaMessage.phone_number_id, WaMessage.wa_message_id],
    ).returning(WaMessage.id)
    message_id = db.execute(stmt).scalar_one_or_none()
    if message_id is None:
        # Lost a race with a concurrent redelivery of the same message.
        return IngestResult(inserted=False, new_thread=new_thread, thread_id=thread_id)

    db.execute(
        update(WaThread)
        .where(WaThread.id == thread_id)
        .values(
            unread_count=WaThread.unread_count + 1,
            last_message_at=received_at,
            last_message_preview=text_body[:PREVIEW_MAX],
            status="open",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return IngestResult(inserted=True, new_thread=new_thread, thread_id=thread_id, message_id=int(message_id))


def _contact_for(contacts: list, sender) -> dict:
    for c in contacts:
        if isinstance(c, dict) and c.get("wa_id") == sender:
            return c
    return contacts[0] if contacts and isinstance(contacts[0], dict) else {}


def _item_error(kind: str, item, error: Exception | str) -> str:
    item_id = item.get("id") if isinstance(item, dict) else None
    return f"{kind} {item_id or '?'}: {error}"[:200]


def handle_payload(db: Session, workspace_id: str, payload: dict) -> dict:
    """Ingest every message and status item. Failed items are rolled back alone and listed in errors."""
    result: dict[str, Any] = {
        "messages_created": 0,
        "threads_created": 0,
        "status_events": 0,
        "statuses_applied": 0,
        "errors": [],
    }
    for value in iter_changes(payload):
        phone_number_id = _as_dict(value.get("metadata")).get("phone_number_id")
        contacts = _as_list(value.get("contacts"))
        for msg in _as_list(value.get("messages")):
            if not isinstance(msg, dict):
                result["errors"].append(_item_error("message", msg, "not_an_object"))
                continue
            try:
                with db.begin_nested():
                    profile = _contact_for(contacts, msg.get("from"))
                    ingested = ingest_inbound_message(
                        db,
                        workspace_id,
                        msg,
                        str(phone_number_id) if phone_number_id else None,
                        profile.get("wa_id") or msg.get("from"),
                        _as_dict(profile.get("profile")).get("name"),
                    )
            except Exception as e:
                logger.warning("wa_webhook_message_failed wa_message_id=%s error=%s", msg.get("id"), str(e)[:200])
                result["errors"].append(_item_error("message", msg, e))
                continue
            result["messages_created"] += 1 if ingested.inserted else 0
            result["threads_created"] += 1 if ingested.new_thread else 0
        for status in _as_list(value.get("statuses")):
            if not isinstance(status, dict):
                result["errors"].append(_item_error("status", status, "not_an_object"))
                continue
            try:
                with db.begin_nested():
                    outcome = apply_status_update(db, workspace_id, status)
            except Exception as e:
                logger.warning("wa_webhook_status_failed wa_message_id=%s error=%s", status.get("id"), str(e)[:200])
                result["errors"].append(_item_error("status", status, e))
                continue
            result["status_events"] += 1
            result["statuses_applied"] += 1 if outcome == APPLIED else 0
    return result


def _schedule_retry(event: WaWebhookEvent, error_text: str, now: datetime, policy: RetryPolicy) -> None:
    event.attempts = (event.attempts or 0) + 1
    event.error_text = error_text[:ERROR_TEXT_MAX]
    if event.attempts >= policy.max_attempts:
        event.next_attempt_at = None
        logger.warning(
            "wa_webhook_event_parked event_id=%s attempts=%s error=%s",
            event.id, event.attempts, error_text[:200],
        )
        return
    delay_ms = next_backoff_ms(event.attempts, policy.base_seconds * 1000, policy.cap_seconds * 1000)
    event.next_attempt_at = now + timedelta(milliseconds=delay_ms)


def process_webhook_event(
    db: Session,
    event: WaWebhookEvent,
    now: datetime | None = None,
    policy: RetryPolicy | None = None,
) -> dict:
    """Derive state from one stored event. Whole-event errors are recorded on the event and re-raised."""
    now = now or datetime.utcnow()
    policy = policy or RetryPolicy()
    try:
        workspace_id = event.workspace_id or resolve_workspace_id(db, event.payload_json or {})
        if not workspace_id:
            raise WebhookProcessingError("workspace_not_found")
        result = handle_payload(db, workspace_id, event.payload_json or {})
    except Exception as e:
        db.rollback()
        fresh = db.get(WaWebhookEvent, event.id)
        if fresh is not None:
            fresh.processed_at = None
            _schedule_retry(fresh, str(e) or e.__class__.__name__, now, policy)
            db.add(fresh)
            db.commit()
        logger.warning("wa_webhook_event_failed event_id=%s error=%s", event.id, str(e)[:200])
        raise

    event.workspace_id = workspace_id
    event.processed_at = now
    if result["errors"]:
        _schedule_retry(event, "; ".join(result["errors"]), now, policy)
    else:
        event.error_text = None
        event.next_attempt_at = None
    db.add(event)
    db.commit()
    return result


def _due_events(
    db: Session,
    workspace_id: str | None,
    now: datetime,
    policy: RetryPolicy,
    limit: int,
    ignore_schedule: bool = False,
):
    q = select(WaWebhookEvent).where(
        WaWebhookEvent.channel == "whatsapp",
        or_(WaWebhookEvent.processed_at.is_(None), WaWebhookEvent.error_text.is_not(None)),
        WaWebhookEvent.attempts < policy.max_attempts,
    )
    if not ignore_schedule:
        q = q.where(or_(WaWebhookEvent.next_attempt_at.is_(None), WaWebhookEvent.next_attempt_at <= now))
    if workspace_id:
        q = q.where(or_(WaWebhookEvent.workspace_id == workspace_id, WaWebhookEvent.workspace_id.is_(None)))
    q = q.order_by(WaWebhookEvent.received_at.asc(), WaWebhookEvent.id.asc()).limit(limit)
    return db.execute(q).scalars().all()


def process_pending_events(
    db: Session,
    workspace_id: str | None = None,
    limit: int = 25,
    reconcile: bool = False,
    reconcile_limit: int = 100,
    now: datetime | None = None,
    policy: RetryPolicy | None = None,
    ignore_schedule: bool = False,
) -> dict:
    """
    Reconciliation sweep: events never processed or with a recorded error, oldest first.

    Only events whose retry is due are picked; an event that keeps failing backs off
    and is parked after policy.max_attempts, so it cannot crowd out newer events.
    ignore_schedule (operator-triggered runs) skips the backoff wait, never the parking.
    """
    now = now or datetime.utcnow()
    policy = policy or RetryPolicy()
    totals = {
        "processed": 0,
        "errors": 0,
        "item_errors": 0,
        "messages_created": 0,
        "threads_created": 0,
        "status_events": 0,
        "reconciled_events": 0,
    }
    for event in _due_events(db, workspace_id, now, policy, limit, ignore_schedule):
        try:
            result = process_webhook_event(db, event, now=now, policy=policy)
        except Exception:
            totals["errors"] += 1
            continue
        totals["processed"] += 1
        totals["item_errors"] += len(result["errors"])
        for key in ("messages_created", "threads_created", "status_events"):
            totals[key] += result[key]

    if reconcile:
        q = select(WaWebhookEvent).where(
            WaWebhookEvent.channel == "whatsapp",
            WaWebhookEvent.processed_at.is_not(None),
        )
        if workspace_id:
            q = q.where(WaWebhookEvent.workspace_id == workspace_id)
        recent = db.execute(q.order_by(WaWebhookEvent.received_at.desc()).limit(reconcile_limit)).scalars().all()
        for event in recent:
            try:
                result = process_webhook_event(db, event, now=now, policy=policy)
            except Exception:
                totals["errors"] += 1
                continue
            totals["reconciled_events"] += 1
            totals["messages_created"] += result["messages_created"]
            totals["threads_created"] += result["threads_created"]
    if totals["processed"] or totals["errors"]:
        logger.info(
            "wa_webhook_sweep processed=%s errors=%s messages_created=%s",
            totals["processed"], totals["errors"], totals["messages_created"],
        )
    return totals
