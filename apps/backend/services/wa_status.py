"""Delivery-status reconciliation for WhatsApp messages.

Provider status pushes arrive at-least-once and in any order. Times are compared
at whole seconds, the precision of the provider's unix timestamps. A push older
than the stored status_updated_at is stale; within the same second the higher
rank wins (pending < sent < delivered < read). "failed" is outside the ranking
and may land on top of any state.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.models.wa_inbox import WaMessage, WaMessageStatusEvent

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_FAILED = "failed"

STATUS_PRIORITY = {
    STATUS_PENDING: 0,
    STATUS_SENT: 1,
    STATUS_DELIVERED: 2,
    STATUS_READ: 3,
}

TERMINAL_TIMESTAMP_FIELD = {
    STATUS_SENT: "sent_at",
    STATUS_DELIVERED: "delivered_at",
    STATUS_READ: "read_at",
    STATUS_FAILED: "failed_at",
}

APPLIED = "applied"
UNKNOWN_MESSAGE = "unknown_message"
STALE = "stale"
REGRESSION = "regression"
INVALID = "invalid"
DUPLICATE = "duplicate"


def status_time(value: datetime) -> datetime:
    """Truncate to the second so local writes and provider pushes compare on one scale."""
    return value.replace(microsecond=0)


def normalize_status(raw: str | None) -> str | None:
    value = (raw or "").strip().lower()
    if value in TERMINAL_TIMESTAMP_FIELD:
        return value
    return None


def parse_unix_ts(ts) -> datetime | None:
    if ts is None or ts == "":
        return None
    try:
        return datetime.utcfromtimestamp(int(float(ts)))
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _first_error(status: dict) -> tuple[str | None, str | None]:
    errors = status.get("errors") or []
    if not errors or not isinstance(errors[0], dict):
        return None, None
    err = errors[0]
    code = err.get("code")
    message = err.get("title") or err.get("message")
    return (str(code) if code is not None else None), message


def is_transition_allowed(current: str | None, new: str) -> bool:
    if new == STATUS_FAILED:
        return True
    if current == STATUS_FAILED:
        return False
    current_rank = STATUS_PRIORITY.get(current or "", -1)
    return STATUS_PRIORITY[new] > current_rank


def _outranks(current: str | None, new: str) -> bool:
    if current == STATUS_FAILED:
        return False
    return is_transition_allowed(current, new)


def ordering_outcome(message: WaMessage, new_status: str, event_at: datetime) -> str:
    """APPLIED when new_status at event_at may replace the stored state, else STALE or REGRESSION."""
    event_at = status_time(event_at)
    if message.status_updated_at is not None:
        stored_at = status_time(message.status_updated_at)
        if event_at < stored_at:
            return STALE
        if event_at == stored_at and not _outranks(message.status, new_status):
            return STALE
    if not is_transition_allowed(message.status, new_status):
        return REGRESSION
    return APPLIED


def _find_message(db: Session, workspace_id: str, wa_message_id: str) -> WaMessage | None:
    return db.execute(
        select(WaMessage)
        .where(WaMessage.workspace_id == workspace_id, WaMessage.wa_message_id == wa_message_id)
        .order_by(WaMessage.id.asc())
        .limit(1)
    ).scalar_one_or_none()


def _recorded_reason(db: Session, workspace_id: str, external_id: str, status: str, event_at: datetime) -> str | None:
    """Outcome already audited for this exact push, if any."""
    return db.execute(
        select(WaMessageStatusEvent.reason)
        .where(
            WaMessageStatusEvent.workspace_id == workspace_id,
            WaMessageStatusEvent.external_message_id == external_id,
            WaMessageStatusEvent.status == status,
            WaMessageStatusEvent.event_at == event_at,
        )
        .order_by(WaMessageStatusEvent.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _apply(message: WaMessage, new_status: str, event_at: datetime, error_code=None, error_message=None) -> None:
    message.status = new_status
    message.status_updated_at = status_time(event_at)
    setattr(message, TERMINAL_TIMESTAMP_FIELD[new_status], event_at)
    if new_status == STATUS_FAILED:
        message.error_code = (error_code or "")[:64] or None
        message.error_message = (error_message or "")[:500] or None


def apply_status_update(db: Session, workspace_id: str, status: dict, now: datetime | None = None) -> str:
    """Apply one entry of value.statuses[]. Returns the outcome; never raises on stale input."""
    now = now or datetime.utcnow()
    external_id = status.get("id")
    new_status = normalize_status(status.get("status"))
    if not external_id or not new_status:
        return INVALID

    external_id = str(external_id)
    event_at = status_time(parse_unix_ts(status.get("timestamp")) or now)
    # A replayed push (sweep retry, reconcile) is decided once; only an unknown message is looked up again.
    prior = _recorded_reason(db, workspace_id, external_id, new_status, event_at)
    if prior is not None and prior != UNKNOWN_MESSAGE:
        return DUPLICATE

    message = _find_message(db, workspace_id, external_id)
    if message is None:
        outcome = UNKNOWN_MESSAGE
    else:
        outcome = ordering_outcome(message, new_status, event_at)
        if outcome == APPLIED:
            error_code, error_message = _first_error(status)
            _apply(message, new_status, event_at, error_code, error_message)
            db.add(message)

    if prior is None or outcome != UNKNOWN_MESSAGE:
        db.add(
            WaMessageStatusEvent(
                workspace_id=workspace_id,
                external_message_id=external_id,
                status=new_status,
                event_at=event_at,
                payload_json=status,
                applied=outcome == APPLIED,
                reason=outcome,
            )
        )
    db.flush()
    if outcome != APPLIED:
        logger.info(
            "wa_status_skipped workspace_id=%s wa_message_id=%s status=%s reason=%s",
            workspace_id, external_id, new_status, outcome,
        )
    return outcome


def mark_message_sent(db: Session, message_id: int, wa_message_id: str | None, now: datetime | None = None) -> None:
    """Dispatcher-side success. A webhook that already moved the message further wins."""
    now = status_time(now or datetime.utcnow())
    message = db.get(WaMessage, message_id)
    if not message:
        logger.warning("wa_message_missing message_id=%s", message_id)
        return
    if wa_message_id:
        message.wa_message_id = wa_message_id
    if ordering_outcome(message, STATUS_SENT, now) == APPLIED:
        _apply(message, STATUS_SENT, now)
        message.error_code = None
        message.error_message = None
    db.add(message)
    db.commit()


def mark_message_failed(db: Session, message_id: int, error: str, now: datetime | None = None) -> None:
    now = status_time(now or datetime.utcnow())
    message = db.get(WaMessage, message_id)
    if not message:
        logger.warning("wa_message_missing message_id=%s", message_id)
        return
    _apply(message, STATUS_FAILED, now, error_code=error, error_message=error)
    db.add(message)
    db.commit()
