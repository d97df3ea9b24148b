"""Raw webhook pushes from the WhatsApp Cloud API (append-only, replayable)."""
from datetime import datetime
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base


class WaWebhookEvent(Base):
    __tablename__ = "wa_webhook_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    workspace_id = Column(String(64), nullable=True, index=True)
    channel = Column(String(16), nullable=False, default="whatsapp")
    payload_json = Column(JSONB, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    error_text = Column(Text, nullable=True)
    # Failed processing runs; the sweep skips the event until next_attempt_at and parks it at the ceiling.
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_wa_webhook_events_received", "received_at"),
        Index("ix_wa_webhook_events_next_attempt", "next_attempt_at"),
    )
