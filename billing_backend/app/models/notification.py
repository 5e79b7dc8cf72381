"""
Notification Database Model.

In-app inbox entries written by the outbox dispatcher, one per delivered
event.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, Enum
from sqlalchemy.sql import func
from billing_backend.app.db.session import Base
import enum


class NotificationType(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CALL_UPDATE = "CALL_UPDATE"
    GIFT_RECEIVED = "GIFT_RECEIVED"
    BILLING_UPDATE = "BILLING_UPDATE"


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    type = Column(Enum(NotificationType), default=NotificationType.INFO, nullable=False)
    # Outbox event type that produced it (call_settled, gift_received, ...)
    event_type = Column(String(50), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    metadata_payload = Column(JSON, nullable=True)

    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user={self.user_id}, event='{self.event_type}')>"
