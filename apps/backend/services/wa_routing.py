"""Routing context for an outbox job: connection, phone number id and access token."""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.models.outbox import OutboxMessage
from apps.backend.models.wa_connection import WaConnection
from apps.backend.services.token_crypto import decrypt_token


class RoutingError(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


@dataclass
class RoutingContext:
    connection_id: int
    phone_number_id: str
    access_token: str


def resolve_routing(
    db: Session,
    job: OutboxMessage,
    payload: dict,
    encryption_key: str | None = None,
) -> RoutingContext:
    connection_id = payload.get("connection_id") or job.connection_id
    if not connection_id:
        raise RoutingError("connection_missing")
    try:
        connection = db.get(WaConnection, int(connection_id))
    except (TypeError, ValueError):
        connection = None
    if not connection or connection.status != "active":
        raise RoutingError("connection_not_found")
    access_token = decrypt_token(
        connection.access_token_encrypted or "",
        encryption_key if encryption_key is not None else get_settings().token_encryption_key,
    )
    if not access_token:
        raise RoutingError("token_not_found")
    phone_number_id = payload.get("phone_number_id") or connection.phone_number_id
    if not phone_number_id:
        raise RoutingError("phone_number_id_missing")
    return RoutingContext(
        connection_id=connection.id,
        phone_number_id=str(phone_number_id),
        access_token=access_token,
    )
