"""Sender strategies for the outbox dispatcher: real Graph API calls or a dry-run recorder."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from apps.backend.clients.wa_graph import send_whatsapp_message

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    ok: bool
    wa_message_id: str | None = None
    error: str | None = None


def build_graph_payload(message_type: str, to_phone: str, payload: dict) -> dict:
    """Request body for POST /messages: template sends carry name, language and body parameters."""
    if message_type == "template":
        parameters = payload.get("parameters")
        return {
            "messaging_product": "whatsapp",
            "to": to_phone,
            "type": "template",
            "template": {
                "name": payload.get("template_name"),
                "language": {"code": payload.get("language") or "en"},
                "components": [{"type": "body", "parameters": parameters}] if parameters else [],
            },
        }
    return {
        "messaging_product": "whatsapp",
        "to": to_phone,
        "type": "text",
        "text": {"body": payload.get("text") or ""},
    }


class WaSender:
    def send(self, phone_number_id: str, access_token: str, body: dict) -> SendResult:
        raise NotImplementedError


class GraphSender(WaSender):
    def __init__(self, timeout: float = 12):
        self.timeout = timeout

    def send(self, phone_number_id: str, access_token: str, body: dict) -> SendResult:
        wa_message_id, err = send_whatsapp_message(phone_number_id, access_token, body, timeout=self.timeout)
        if err:
            return SendResult(ok=False, error=err)
        return SendResult(ok=True, wa_message_id=wa_message_id)


@dataclass
class DryRunSender(WaSender):
    """Records what would have been sent. Optional scripted errors drive failure paths in tests."""

    sent: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def send(self, phone_number_id: str, access_token: str, body: dict) -> SendResult:
        self.sent.append({"phone_number_id": phone_number_id, "body": body})
        if self.errors:
            return SendResult(ok=False, error=self.errors.pop(0))
        wa_message_id = f"dry_run_{uuid.uuid4().hex[:16]}"
        logger.info("wa_send_dry_run phone_number_id=%s to=%s", phone_number_id, body.get("to"))
        return SendResult(ok=True, wa_message_id=wa_message_id)


def get_sender(settings) -> WaSender:
    if settings.enable_wa_send:
        return GraphSender(timeout=settings.wa_send_timeout_seconds)
    return DryRunSender()
