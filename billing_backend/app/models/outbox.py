"""
Outbox Event database model.

Outbound notifications written in the same transaction as the ledger
change that caused them, delivered later by the dispatcher.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum
from billing_backend.app.db.session import Base
import enum


class OutboxStatus(str, enum.Enum):
    NEW = "NEW"
    SENT = "SENT"
    FAILED = "FAILED"  # Will be retried until attempts run out
    DEAD_LETTERED = "DEAD_LETTERED"


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    user_id = Column(Integer, index=True, nullable=False)
    event_type = Column(String(50), nullable=False, index=True)
    payload = Column(JSON, nullable=False)

    status = Column(Enum(OutboxStatus), default=OutboxStatus.NEW, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<OutboxEvent(id={self.id}, type='{self.event_type}', status='{self.status.value}')>"
