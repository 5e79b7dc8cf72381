"""
Dead Letter Queue (DLQ) Model.

Outbox events that exhausted `outbox_max_attempts` land here, with the
last delivery error, until an operator archives them.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum, ForeignKey
from sqlalchemy.sql import func
from billing_backend.app.db.session import Base
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"
    ARCHIVED = "ARCHIVED"  # Handled by an operator


class DeadLetterQueue(Base):
    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # outbox:<event_type>
    task_name = Column(String(100), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("outbox_events.id"), nullable=True, index=True)
    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False, index=True)
    retry_count = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    archived_at = Column(DateTime, nullable=True)
    archived_by = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<DLQ(id={self.id}, task='{self.task_name}', status='{self.status}')>"
