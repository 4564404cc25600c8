"""Database models."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Call(Base):
    """Call log model."""

    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, index=True)
    call_sid = Column(String, unique=True, index=True, nullable=False)
    caller_id = Column(String, nullable=True)
    transport = Column(String, default="turns", nullable=False)  # turns, stream
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    status = Column(String, default="in_progress", nullable=False)  # in_progress, completed, failed, ...
    turn_count = Column(Integer, default=0, nullable=False)
    transcript = Column(Text, nullable=True)
