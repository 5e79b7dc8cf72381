"""
Scheduled Payment database model.

One D+30 payout to a streamer, covering every call earning it claims.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, Text, ForeignKey, DateTime, Enum
from billing_backend.app.db.session import Base
from billing_backend.app.models.billing_enums import ScheduledPaymentStatus


class ScheduledPayment(Base):
    """
    Scheduled Payment model.

    Status flow: PENDING -> PAID | FAILED.
    Claimed earnings reference this row through
    LedgerEntry.scheduled_payment_id until the payment settles or fails.
    """
    __tablename__ = "scheduled_payments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    streamer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=False)

    status = Column(Enum(ScheduledPaymentStatus), default=ScheduledPaymentStatus.PENDING, nullable=False, index=True)
    payment_reference = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    # Pending payout debit holding the amount on the streamer balance.
    # Plain integer: ledger_entries already references this table.
    hold_entry_id = Column(Integer, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ScheduledPayment(id={self.id}, streamer={self.streamer_id}, status='{self.status.value}', amount={self.amount})>"
