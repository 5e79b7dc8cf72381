"""
Call database model.

A metered video call between a viewer (payer) and a streamer (payee).
"""

from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, Boolean, ForeignKey, DateTime, Enum
from billing_backend.app.db.session import Base
from billing_backend.app.models.call_enums import CallStatus


class Call(Base):
    """
    Call model.

    Status flow: PENDING -> ACTIVE -> ENDED, or PENDING -> CANCELLED.
    Once ENDED the row is frozen; chargebacks add ledger entries instead.
    """
    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    streamer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    viewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    rate_per_minute = Column(BigInteger, nullable=False)
    status = Column(Enum(CallStatus), default=CallStatus.PENDING, nullable=False, index=True)

    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    # Metered cost vs. what the viewer could actually pay
    total_cost = Column(BigInteger, nullable=True)
    settled_amount = Column(BigInteger, nullable=True)
    # Ended while a party was blocked; posted once the block is lifted
    settlement_parked = Column(Boolean, default=False, nullable=False, index=True)

    payment_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True)
    earning_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Call(id={self.id}, status='{self.status.value}', cost={self.total_cost})>"
