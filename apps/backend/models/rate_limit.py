"""Счётчики rate limit по воркспейсу (окно 60 секунд)."""
from sqlalchemy import Column, Integer, String, DateTime

from apps.backend.database import Base


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    workspace_id = Column(String(64), primary_key=True)
    window_start = Column(DateTime, primary_key=True)
    count = Column(Integer, nullable=False, default=0)
