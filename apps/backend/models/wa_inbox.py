"""Модели WhatsApp-инбокса: треды, сообщения, журнал статусов."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from apps.backend.database import Base


class WaThread(Base):
    __tablename__ = "wa_threads"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    phone_number_id = Column(String(64), nullable=False)
    contact_wa_id = Column(String(64), nullable=False)
    contact_name = Column(String(256), nullable=True)
    connection_id = Column(Integer, ForeignKey("wa_connections.id"), nullable=True)
    status = Column(String(16), nullable=False, default="open")
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    last_message_preview = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    messages = relationship("WaMessage", back_populates="thread")

    __table_args__ = (
        UniqueConstraint("workspace_id", "phone_number_id", "contact_wa_id", name="uq_wa_threads_key"),
    )


class WaMessage(Base):
    __tablename__ = "wa_messages"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    thread_id = Column(Integer, ForeignKey("wa_threads.id"), nullable=True, index=True)
    phone_number_id = Column(String(64), nullable=True)
    wa_message_id = Column(String(128), nullable=True, index=True)
    direction = Column(String(16), nullable=False)  # inbound|outbound
    msg_type = Column(String(32), nullable=True)
    text_body = Column(Text, nullable=True)
    media_id = Column(String(128), nullable=True)
    payload_json = Column(JSONB, nullable=True)
    status = Column(String(16), nullable=True)  # pending|sent|delivered|read|failed
    status_updated_at = Column(DateTime, nullable=True)
    wa_timestamp = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    thread = relationship("WaThread", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("workspace_id", "phone_number_id", "wa_message_id", name="uq_wa_messages_external"),
    )


class WaMessageStatusEvent(Base):
    __tablename__ = "wa_message_status_events"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False)
    external_message_id = Column(String(128), nullable=False, index=True)
    status = Column(String(16), nullable=True)
    event_at = Column(DateTime, nullable=True)  # provider timestamp of the push, whole seconds
    payload_json = Column(JSONB, nullable=True)
    applied = Column(Boolean, nullable=False, default=False)
    reason = Column(String(32), nullable=True)  # applied|stale|regression|unknown_message
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_wa_status_events_ws_created", "workspace_id", "created_at"),
        Index("ix_wa_status_events_push", "workspace_id", "external_message_id", "status", "event_at"),
    )
