"""Модели SQLAlchemy."""
from apps.backend.models.outbox import OutboxMessage
from apps.backend.models.wa_connection import WaConnection
from apps.backend.models.wa_inbox import WaThread, WaMessage, WaMessageStatusEvent
from apps.backend.models.wa_webhook_event import WaWebhookEvent
from apps.backend.models.rate_limit import RateLimitCounter

__all__ = [
    "OutboxMessage",
    "WaConnection",
    "WaThread",
    "WaMessage",
    "WaMessageStatusEvent",
    "WaWebhookEvent",
    "RateLimitCounter",
]
