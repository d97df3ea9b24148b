"""Webhook ingestion: idempotent replays, thread detection, status routing, sweep."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from apps.backend.database import Base, get_test_engine
from apps.backend.models.wa_connection import WaConnection
from apps.backend.models.wa_inbox import WaMessage, WaThread
from apps.backend.models.wa_webhook_event import WaWebhookEvent
from apps.backend.services.wa_webhook import (
    RetryPolicy,
    WebhookProcessingError,
    handle_payload,
    ingest_inbound_message,
    message_text,
    persist_webhook_event,
    process_pending_events,
    process_webhook_event,
    resolve_workspace_id,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def test_db_session():
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _connection(db, workspace_id="ws1", phone_number_id="1001") -> WaConnection:
    conn = WaConnection(workspace_id=workspace_id, phone_number_id=phone_number_id, status="active")
    db.add(conn)
    db.commit()
    return conn


def _inbound_payload(wamid="wamid.IN1", text="Halo", wa_id="628111", name="Budi") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": "62800", "phone_number_id": "1001"},
                            "contacts": [{"wa_id": wa_id, "profile": {"name": name}}],
                            "messages": [
                                {
                                    "from": wa_id,
                                    "id": wamid,
                                    "timestamp": "1772366400",
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


def _status_payload(wamid: str, status: str, ts: int) -> dict:
    return {
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "metadata": {"phone_number_id": "1001"},
                            "statuses": [{"id": wamid, "status": status, "timestamp": str(ts)}],
                        }
                    }
                ]
            }
        ]
    }


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_message_text_variants():
    assert message_text({"type": "text", "text": {"body": "hi"}}) == "hi"
    assert message_text({"type": "text", "text": "hi"}) == "hi"
    assert message_text({"type": "image", "image": "m1"}) == "[image]"
    assert message_text({"type": "button", "button": {"text": "Yes"}}) == "Yes"
    assert message_text({"type": "image", "image": {"id": "m1", "caption": "look"}}) == "look"
    assert message_text({"type": "document", "document": {"id": "m2", "filename": "a.pdf"}}) == "a.pdf"
    assert message_text({"type": "audio", "audio": {"id": "m3"}}) == "[audio]"
    assert message_text(
        {"type": "interactive", "interactive": {"nfm_reply": {"response_json": {"body": "form"}}}}
    ) == "form"
    assert message_text({}) == "[message]"


def test_resolve_workspace_by_phone_number_id(test_db_session):
    _connection(test_db_session)

    assert resolve_workspace_id(test_db_session, _inbound_payload()) == "ws1"
    assert resolve_workspace_id(test_db_session, {"entry": []}) is None


def test_first_message_creates_thread(test_db_session):
    msg = _inbound_payload()["entry"][0]["changes"][0]["value"]["messages"][0]

    result = ingest_inbound_message(test_db_session, "ws1", msg, "1001", "628111", "Budi", now=NOW)
    test_db_session.commit()

    assert result.inserted is True
    assert result.new_thread is True
    thread = test_db_session.get(WaThread, result.thread_id)
    assert thread.contact_name == "Budi"
    assert thread.unread_count == 1
    assert thread.last_message_preview == "Halo"
    message = test_db_session.get(WaMessage, result.message_id)
    assert message.direction == "inbound"
    assert message.wa_timestamp == NOW


def test_same_message_twice_is_one_row(test_db_session):
    msg = _inbound_payload()["entry"][0]["changes"][0]["value"]["messages"][0]

    first = ingest_inbound_message(test_db_session, "ws1", msg, "1001", "628111", "Budi", now=NOW)
    second = ingest_inbound_message(
        test_db_session, "ws1", msg, "1001", "628111", "Budi", now=NOW + timedelta(seconds=5)
    )
    test_db_session.commit()

    assert first.inserted is True
    assert second.inserted is False
    assert second.new_thread is False
    assert second.message_id == first.message_id
    assert _count(test_db_session, WaMessage) == 1
    test_db_session.expire_all()
    assert test_db_session.get(WaThread, first.thread_id).unread_count == 1


def test_second_message_reuses_thread(test_db_session):
    payload = _inbound_payload()
    msg = payload["entry"][0]["changes"][0]["value"]["messages"][0]
    other = dict(msg, id="wamid.IN2", text={"body": "Masih ada?"})

    first = ingest_inbound_message(test_db_session, "ws1", msg, "1001", "628111", "Budi", now=NOW)
    second = ingest_inbound_message(
        test_db_session, "ws1", other, "1001", "628111", None, now=NOW + timedelta(seconds=5)
    )
    test_db_session.commit()

    assert second.inserted is True
    assert second.new_thread is False
    assert second.thread_id == first.thread_id
    test_db_session.expire_all()
    thread = test_db_session.get(WaThread, first.thread_id)
    assert thread.unread_count == 2
    assert thread.contact_name == "Budi"
    assert thread.last_message_preview == "Masih ada?"


def test_message_without_id_is_ignored(test_db_session):
    result = ingest_inbound_message(test_db_session, "ws1", {"from": "628111"}, "1001", None, None, now=NOW)

    assert result.inserted is False
    assert _count(test_db_session, WaThread) == 0


def test_handle_payload_counts_messages_and_statuses(test_db_session):
    test_db_session.add(
        WaMessage(
            workspace_id="ws1",
            phone_number_id="1001",
            wa_message_id="wamid.OUT1",
            direction="outbound",
            status="sent",
            status_updated_at=NOW,
        )
    )
    test_db_session.commit()

    inbound = handle_payload(test_db_session, "ws1", _inbound_payload())
    statuses = handle_payload(test_db_session, "ws1", _status_payload("wamid.OUT1", "delivered", 1772366460))
    test_db_session.commit()

    assert inbound == {"messages_created": 1, "threads_created": 1, "status_events": 0, "statuses_applied": 0, "errors": []}
    assert statuses == {"messages_created": 0, "threads_created": 0, "status_events": 1, "statuses_applied": 1, "errors": []}


def test_replaying_event_is_idempotent(test_db_session):
    _connection(test_db_session)
    event = persist_webhook_event(test_db_session, _inbound_payload(), workspace_id="ws1")

    first = process_webhook_event(test_db_session, event)
    second = process_webhook_event(test_db_session, event)

    assert first["messages_created"] == 1
    assert second["messages_created"] == 0
    assert second["threads_created"] == 0
    assert _count(test_db_session, WaMessage) == 1
    thread = test_db_session.execute(select(WaThread)).scalar_one()
    assert thread.unread_count == 1
    assert event.processed_at is not None
    assert event.error_text is None


def test_unresolved_workspace_is_recorded_then_swept(test_db_session):
    event = persist_webhook_event(test_db_session, _inbound_payload())
    start = datetime.utcnow()

    with pytest.raises(WebhookProcessingError):
        process_webhook_event(test_db_session, event, now=start)

    test_db_session.expire_all()
    stored = test_db_session.get(WaWebhookEvent, event.id)
    assert stored.processed_at is None
    assert stored.error_text == "workspace_not_found"
    assert stored.attempts == 1
    assert stored.next_attempt_at == start + timedelta(seconds=60)

    # Not due yet.
    assert process_pending_events(test_db_session, now=start + timedelta(seconds=30))["errors"] == 0

    first_sweep = process_pending_events(test_db_session, now=start + timedelta(minutes=5))
    assert first_sweep["errors"] == 1
    assert first_sweep["processed"] == 0

    _connection(test_db_session)
    second_sweep = process_pending_events(test_db_session, now=start + timedelta(minutes=10))

    assert second_sweep["processed"] == 1
    assert second_sweep["messages_created"] == 1
    test_db_session.expire_all()
    stored = test_db_session.get(WaWebhookEvent, event.id)
    assert stored.workspace_id == "ws1"
    assert stored.processed_at is not None
    assert stored.error_text is None
    assert stored.next_attempt_at is None

    assert process_pending_events(test_db_session, now=start + timedelta(minutes=20))["processed"] == 0


def test_failing_events_do_not_starve_the_sweep(test_db_session):
    _connection(test_db_session)
    stuck = [
        persist_webhook_event(test_db_session, _inbound_payload(wamid=f"wamid.S{i}")) for i in range(25)
    ]
    for event in stuck:
        # No connection owns this number, so these never resolve.
        event.payload_json = {"entry": [{"changes": [{"value": {"metadata": {"phone_number_id": "9999"}}}]}]}
    test_db_session.commit()
    good = persist_webhook_event(test_db_session, _inbound_payload(wamid="wamid.GOOD"))
    start = datetime.utcnow()

    first = process_pending_events(test_db_session, limit=25, now=start)
    assert first["errors"] == 25
    assert first["processed"] == 0

    second = process_pending_events(test_db_session, limit=25, now=start)
    assert second["processed"] == 1
    assert second["messages_created"] == 1
    test_db_session.expire_all()
    assert test_db_session.get(WaWebhookEvent, good.id).processed_at is not None


def test_event_is_parked_after_max_attempts(test_db_session):
    event = persist_webhook_event(test_db_session, _inbound_payload())
    policy = RetryPolicy(max_attempts=2, base_seconds=60, cap_seconds=60)
    start = datetime.utcnow()

    assert process_pending_events(test_db_session, now=start, policy=policy)["errors"] == 1
    assert process_pending_events(test_db_session, now=start + timedelta(minutes=2), policy=policy)["errors"] == 1

    test_db_session.expire_all()
    stored = test_db_session.get(WaWebhookEvent, event.id)
    assert stored.attempts == 2
    assert stored.next_attempt_at is None
    assert stored.error_text == "workspace_not_found"

    later = start + timedelta(days=1)
    assert process_pending_events(test_db_session, now=later, policy=policy)["errors"] == 0
    assert process_pending_events(test_db_session, now=later, policy=policy, ignore_schedule=True)["errors"] == 0


def test_bad_item_does_not_roll_back_the_rest(test_db_session, monkeypatch):
    from apps.backend.services import wa_webhook

    _connection(test_db_session)
    test_db_session.add(
        WaMessage(
            workspace_id="ws1",
            phone_number_id="1001",
            wa_message_id="wamid.OUT1",
            direction="outbound",
            status="sent",
            status_updated_at=NOW,
        )
    )
    test_db_session.commit()

    payload = _inbound_payload(wamid="wamid.OK")
    value = payload["entry"][0]["changes"][0]["value"]
    value["messages"].insert(0, dict(value["messages"][0], id="wamid.BAD"))
    value["messages"].append("garbage")
    value["statuses"] = [{"id": "wamid.OUT1", "status": "delivered", "timestamp": "1772366460"}]

    real_ingest = wa_webhook.ingest_inbound_message

    def flaky_ingest(db, workspace_id, msg, *args, **kwargs):
        result = real_ingest(db, workspace_id, msg, *args, **kwargs)
        if msg.get("id") == "wamid.BAD":
            raise ValueError("unsupported message shape")
        return result

    monkeypatch.setattr(wa_webhook, "ingest_inbound_message", flaky_ingest)
    event = persist_webhook_event(test_db_session, payload, workspace_id="ws1")
    start = datetime.utcnow()

    result = process_webhook_event(test_db_session, event, now=start)

    assert result["messages_created"] == 1
    assert result["statuses_applied"] == 1
    assert result["errors"] == [
        "message wamid.BAD: unsupported message shape",
        "message ?: not_an_object",
    ]
    ids = test_db_session.execute(select(WaMessage.wa_message_id).order_by(WaMessage.id)).scalars().all()
    assert ids == ["wamid.OUT1", "wamid.OK"]
    assert test_db_session.execute(
        select(WaMessage.status).where(WaMessage.wa_message_id == "wamid.OUT1")
    ).scalar_one() == "delivered"
    thread = test_db_session.execute(select(WaThread)).scalar_one()
    assert thread.unread_count == 1

    test_db_session.expire_all()
    stored = test_db_session.get(WaWebhookEvent, event.id)
    assert stored.processed_at == start
    assert stored.attempts == 1
    assert stored.error_text.startswith("message wamid.BAD: unsupported message shape")
    assert stored.next_attempt_at == start + timedelta(seconds=60)


def test_reconcile_replays_processed_events(test_db_session):
    _connection(test_db_session)
    event = persist_webhook_event(test_db_session, _inbound_payload(), workspace_id="ws1")
    process_webhook_event(test_db_session, event)

    totals = process_pending_events(test_db_session, workspace_id="ws1", reconcile=True)

    assert totals["processed"] == 0
    assert totals["reconciled_events"] == 1
    assert totals["messages_created"] == 0
    assert _count(test_db_session, WaMessage) == 1
