"""WhatsApp Cloud API connections (phone number + encrypted access token)."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text

from apps.backend.database import Base


class WaConnection(Base):
    __tablename__ = "wa_connections"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    phone_number_id = Column(String(64), nullable=False, unique=True)
    waba_id = Column(String(64), nullable=True, index=True)
    display_phone_number = Column(String(32), nullable=True)
    access_token_encrypted = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="active")  # active|disabled
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
