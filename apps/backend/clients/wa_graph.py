"""WhatsApp Cloud (Graph) API client."""
from __future__ import annotations

import httpx

from apps.backend.config import get_settings


def _messages_url(phone_number_id: str) -> str:
    s = get_settings()
    base = (s.wa_graph_base_url or "https://graph.facebook.com").rstrip("/")
    return f"{base}/{s.wa_graph_version}/{phone_number_id}/messages"


def _error_text(data: dict, status_code: int) -> str:
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        msg = err.get("message") or err.get("type") or "error"
        code = err.get("code")
        return f"{code}:{msg}" if code is not None else str(msg)
    return f"http_{status_code}"


def send_whatsapp_message(
    phone_number_id: str,
    access_token: str,
    payload: dict,
    timeout: float = 12,
) -> tuple[str | None, str | None]:
    """POST /{phone_number_id}/messages. Returns (wa_message_id, error)."""
    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        r = httpx.post(_messages_url(phone_number_id), json=payload, headers=headers, timeout=timeout)
    except httpx.HTTPError as e:
        return None, (str(e) or e.__class__.__name__)[:200]
    try:
        data = r.json()
    except ValueError:
        data = {}
    if r.status_code >= 400:
        return None, _error_text(data, r.status_code)[:200]
    messages = data.get("messages") if isinstance(data, dict) else None
    if not isinstance(messages, list) or not messages or not messages[0].get("id"):
        return None, "missing_message_id"
    return str(messages[0]["id"]), None
