"""
Audit Log Database Model.

Tracks money-moving operator decisions and automatic account actions for
compliance review.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from billing_backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - ACCOUNT_BLOCKED / ACCOUNT_UNBLOCKED (manual or automatic)
    - FRAUD_FLAG_REVIEWED
    - CHARGEBACK_FILED / CHARGEBACK_DECIDED
    - PAYOUT_PAID / PAYOUT_FAILED
    - RECONCILIATION_RUN
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)

    action = Column(String(100), nullable=False, index=True)

    # Affected user and, where relevant, the record acted upon
    target_user_id = Column(Integer, index=True, nullable=True)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)

    meta_data = Column(JSON, nullable=True)

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_id}, target={self.target_user_id})>"
