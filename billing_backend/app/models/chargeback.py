"""
Chargeback database model.

A dispute raised against one historical ledger entry.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, Text, ForeignKey, DateTime, Enum
from billing_backend.app.db.session import Base
from billing_backend.app.models.billing_enums import ChargebackStatus, ChargebackDecision


class Chargeback(Base):
    """
    Chargeback model.

    Status flow: PENDING -> INVESTIGATING -> ACCEPTED | REJECTED.
    A decision may also be taken straight from PENDING.
    """
    __tablename__ = "chargebacks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    transaction_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Absolute value of the disputed entry
    amount = Column(BigInteger, nullable=False)
    reason = Column(Text, nullable=False)

    status = Column(Enum(ChargebackStatus), default=ChargebackStatus.PENDING, nullable=False, index=True)

    # Resolution
    admin_decision = Column(Enum(ChargebackDecision), nullable=True)
    admin_notes = Column(Text, nullable=True)
    refunded_amount = Column(BigInteger, default=0, nullable=False)
    reversal_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True)
    # Clawed back from the credit legs of the disputed transfer, and the shortfall the platform absorbs
    recovered_amount = Column(BigInteger, default=0, nullable=False)
    unrecovered_amount = Column(BigInteger, default=0, nullable=False)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    external_reference = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Chargeback(id={self.id}, entry={self.transaction_id}, status='{self.status.value}')>"
