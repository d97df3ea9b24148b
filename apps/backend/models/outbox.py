"""Модель очереди исходящих сообщений (outbox)."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import JSONB

from apps.backend.database import Base

OUTBOX_QUEUED = "queued"
OUTBOX_PROCESSING = "processing"
OUTBOX_SENT = "sent"
OUTBOX_FAILED = "failed"


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    thread_id = Column(Integer, nullable=True, index=True)
    connection_id = Column(Integer, nullable=True)
    to_phone = Column(String(32), nullable=False)
    message_type = Column(String(16), nullable=False, default="text")  # text|template
    payload_json = Column(JSONB, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default=OUTBOX_QUEUED)  # queued|processing|sent|failed
    attempts = Column(Integer, nullable=False, default=0)
    next_run_at = Column(DateTime, nullable=True, default=datetime.utcnow)
    locked_at = Column(DateTime, nullable=True)
    locked_by = Column(String(128), nullable=True)
    last_error = Column(Text, nullable=True)
    idempotency_key = Column(String(200), nullable=True, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_outbox_messages_status_next_run", "status", "next_run_at"),
    )
