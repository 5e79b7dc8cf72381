"""
Account database model.

Holds the spendable balance of one user. Only the Ledger Store writes
`balance`; every change is mirrored by a LedgerEntry.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, Boolean, DateTime, ForeignKey, CheckConstraint
from billing_backend.app.db.session import Base


class Account(Base):
    """
    Account model.

    One per user (1:1). The single platform account has no user and
    collects explicit platform fees.
    Never deleted; deactivation happens on the owning user.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=True, index=True)

    # Minor currency units (centavos)
    balance = Column(BigInteger, default=0, nullable=False)

    is_blocked = Column(Boolean, default=False, nullable=False)
    is_platform = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Account(id={self.id}, user_id={self.user_id}, balance={self.balance}, blocked={self.is_blocked})>"
