"""
Fraud Flag database model.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, DateTime, Enum, JSON
from billing_backend.app.db.session import Base
from billing_backend.app.models.fraud_enums import Severity, FlagType, ReviewAction


class FraudFlag(Base):
    """
    Fraud Flag model.

    Raised automatically by heuristics or manually by an operator.
    Open until reviewed; an escalated flag stays open with a higher severity.
    """
    __tablename__ = "fraud_flags"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    flag_type = Column(Enum(FlagType), nullable=False, index=True)
    severity = Column(Enum(Severity), nullable=False, index=True)
    description = Column(String(255), nullable=False)
    details = Column(JSON, nullable=True)

    # Review
    reviewed = Column(Boolean, default=False, nullable=False, index=True)
    review_action = Column(Enum(ReviewAction), nullable=True)
    review_notes = Column(Text, nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    auto_generated = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<FraudFlag(id={self.id}, user={self.user_id}, type='{self.flag_type.value}', severity='{self.severity.value}')>"
