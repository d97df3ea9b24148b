"""WhatsApp Cloud API webhook endpoints."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from apps.backend.auth import require_webhook_secret
from apps.backend.config import get_settings
from apps.backend.deps import get_db
from apps.backend.services.wa_webhook import (
    persist_webhook_event,
    process_pending_events,
    process_webhook_event,
    resolve_workspace_id,
    RetryPolicy,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/webhook")
def verify_subscription(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
):
    expected = get_settings().wa_verify_token
    if hub_mode == "subscribe" and expected and hub_verify_token == expected:
        return PlainTextResponse(hub_challenge or "")
    return JSONResponse({"error": "forbidden"}, status_code=403)


@router.post("/webhook", dependencies=[Depends(require_webhook_secret)])
async def receive_webhook(request: Request, db: Session = Depends(get_db)):
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except ValueError:
        return JSONResponse({"error": "invalid_json"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "invalid_json"}, status_code=400)

    event = persist_webhook_event(db, payload, workspace_id=resolve_workspace_id(db, payload))
    try:
        result = process_webhook_event(db, event, policy=RetryPolicy.from_settings(get_settings()))
    except Exception as e:
        # Raw payload is stored; the reconciliation sweep will retry it.
        return JSONResponse({"ok": True, "event_id": event.id, "processed": False, "error": str(e)[:200]})
    return JSONResponse({"ok": True, "event_id": event.id, "processed": True, **result})


@router.post("/webhook/reconcile", dependencies=[Depends(require_webhook_secret)])
def reconcile_events(
    workspace_id: str | None = Query(None),
    limit: int = Query(25, ge=1, le=500),
    reconcile: bool = Query(False),
    force: bool = Query(False),
    db: Session = Depends(get_db),
):
    s = get_settings()
    result = process_pending_events(
        db,
        workspace_id=workspace_id,
        limit=limit,
        reconcile=reconcile,
        ignore_schedule=force,
        reconcile_limit=s.webhook_reconcile_limit,
        policy=RetryPolicy.from_settings(s),
    )
    return {"ok": True, **result}
