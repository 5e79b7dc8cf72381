"""
Ledger Entry database model.

Append-only record of balance movements.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, Boolean, ForeignKey, DateTime, Enum, String, UniqueConstraint
from billing_backend.app.db.session import Base
from billing_backend.app.models.ledger_enums import EntryKind, EntryStatus


class LedgerEntry(Base):
    """
    Ledger Entry model.

    Immutable record of one balance movement against one account.
    Paired postings share a transfer_id; credits point at their debit
    through related_entry_id and the debit points at its primary credit.
    Amount, kind and account are never updated. Only status and the payout
    bookkeeping columns move forward.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_ledger_entries_idempotency"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    # Signed, minor currency units
    amount = Column(BigInteger, nullable=False)
    kind = Column(Enum(EntryKind), nullable=False, index=True)
    status = Column(Enum(EntryStatus), default=EntryStatus.COMPLETED, nullable=False, index=True)

    related_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True, index=True)
    transfer_id = Column(String(64), nullable=True, index=True)
    description = Column(String(255), nullable=True)

    # Client-supplied key; replays of a keyed request return this entry
    idempotency_key = Column(String(100), nullable=True)

    # Payout bookkeeping (call earnings only)
    paid = Column(Boolean, default=False, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)
    scheduled_payment_id = Column(Integer, ForeignKey("scheduled_payments.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<LedgerEntry(id={self.id}, account={self.account_id}, kind='{self.kind.value}', amount={self.amount})>"
