"""WhatsApp webhook HTTP endpoint tests."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from apps.backend.config import Settings
from apps.backend.database import Base, get_test_engine
from apps.backend.deps import get_db
from apps.backend.main import app
from apps.backend.models.wa_connection import WaConnection
from apps.backend.models.wa_inbox import WaMessage
from apps.backend.models.wa_webhook_event import WaWebhookEvent

client = TestClient(app)

SECRET = "hook-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


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


@pytest.fixture
def override_get_db(test_db_session):
    def _get_db():
        try:
            yield test_db_session
        finally:
            pass
    app.dependency_overrides[get_db] = _get_db
    try:
        yield _get_db
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def stub_settings(monkeypatch):
    s = Settings(webhook_secret=SECRET, wa_verify_token="verify-me", app_env="test")
    monkeypatch.setattr("apps.backend.auth.get_settings", lambda: s)
    monkeypatch.setattr("apps.backend.routers.wa_webhook.get_settings", lambda: s)
    return s


def _payload(wamid="wamid.IN1") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "metadata": {"phone_number_id": "1001"},
                            "contacts": [{"wa_id": "628111", "profile": {"name": "Budi"}}],
                            "messages": [
                                {
                                    "from": "628111",
                                    "id": wamid,
                                    "timestamp": "1772366400",
                                    "type": "text",
                                    "text": {"body": "Halo"},
                                }
                            ],
                        }
                    }
                ]
            }
        ],
    }


@pytest.mark.timeout(10)
def test_webhook_requires_secret(test_db_session, override_get_db, stub_settings):
    r = client.post("/v1/wa/webhook", json=_payload())
    assert r.status_code == 401

    r = client.post("/v1/wa/webhook", json=_payload(), headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401
    assert r.headers.get("X-Trace-Id")
    assert test_db_session.execute(select(WaWebhookEvent)).first() is None


@pytest.mark.timeout(10)
def test_webhook_persists_and_processes(test_db_session, override_get_db, stub_settings):
    test_db_session.add(WaConnection(workspace_id="ws1", phone_number_id="1001", status="active"))
    test_db_session.commit()

    r = client.post("/v1/wa/webhook", json=_payload(), headers=AUTH)

    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert data["processed"] is True
    assert data["messages_created"] == 1
    assert data["threads_created"] == 1
    event = test_db_session.get(WaWebhookEvent, data["event_id"])
    assert event.workspace_id == "ws1"
    assert event.processed_at is not None


@pytest.mark.timeout(10)
def test_redelivery_does_not_duplicate(test_db_session, override_get_db, stub_settings):
    test_db_session.add(WaConnection(workspace_id="ws1", phone_number_id="1001", status="active"))
    test_db_session.commit()

    first = client.post("/v1/wa/webhook", json=_payload(), headers=AUTH).json()
    second = client.post("/v1/wa/webhook", json=_payload(), headers=AUTH).json()

    assert first["messages_created"] == 1
    assert second["messages_created"] == 0
    assert second["event_id"] != first["event_id"]
    assert len(test_db_session.execute(select(WaMessage)).scalars().all()) == 1


@pytest.mark.timeout(10)
def test_processing_failure_still_acknowledged(test_db_session, override_get_db, stub_settings):
    r = client.post("/v1/wa/webhook", json=_payload(), headers=AUTH)

    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert data["processed"] is False
    assert data["error"] == "workspace_not_found"
    test_db_session.expire_all()
    event = test_db_session.get(WaWebhookEvent, data["event_id"])
    assert event.processed_at is None
    assert event.error_text == "workspace_not_found"
    assert event.attempts == 1
    assert event.next_attempt_at is not None


@pytest.mark.timeout(10)
def test_invalid_json_rejected(test_db_session, override_get_db, stub_settings):
    r = client.post(
        "/v1/wa/webhook",
        content=b"{not json",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_json"}


@pytest.mark.timeout(10)
def test_reconcile_endpoint_retries_pending(test_db_session, override_get_db, stub_settings):
    client.post("/v1/wa/webhook", json=_payload(), headers=AUTH)
    test_db_session.add(WaConnection(workspace_id="ws1", phone_number_id="1001", status="active"))
    test_db_session.commit()

    # The failed event backs off; a plain sweep leaves it for later.
    r = client.post("/v1/wa/webhook/reconcile", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["processed"] == 0

    r = client.post("/v1/wa/webhook/reconcile?force=true", headers=AUTH)

    assert r.status_code == 200
    data = r.json()
    assert data["ok"] is True
    assert data["processed"] == 1
    assert data["messages_created"] == 1


def test_verify_handshake(stub_settings):
    r = client.get(
        "/v1/wa/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
    )
    assert r.status_code == 200
    assert r.text == "12345"

    r = client.get(
        "/v1/wa/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
    )
    assert r.status_code == 403


def test_missing_secret_rejected_in_production(monkeypatch):
    s = Settings(webhook_secret="", app_env="production")
    monkeypatch.setattr("apps.backend.auth.get_settings", lambda: s)

    r = client.post("/v1/wa/webhook/reconcile")

    assert r.status_code == 500
