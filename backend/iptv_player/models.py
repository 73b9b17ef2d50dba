"""SQLAlchemy models for daily visit statistics."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Statistic(Base):
    __tablename__ = "statistics"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(String(10), unique=True, index=True, nullable=False)
    visits = Column(Integer, default=0, nullable=False)
    unique_visitors = Column(JSON, default=list, nullable=False)
    channels_played = Column(Integer, default=0, nullable=False)
    popular_channels = Column(JSON, default=list, nullable=False)
    user_agents = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
