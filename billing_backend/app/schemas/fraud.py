"""
Fraud Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict, Any
from billing_backend.app.models.fraud_enums import FlagType, ReviewAction, Severity


class FraudFlagCreate(BaseModel):
    """Manual flag raised by an operator."""
    user_id: int
    severity: Severity
    description: str = Field(..., min_length=1, max_length=255)
    details: Optional[Dict[str, Any]] = None


class FraudFlagResponse(BaseModel):
    id: int
    user_id: int
    flag_type: FlagType
    severity: Severity
    description: str
    details: Optional[Dict[str, Any]]
    reviewed: bool
    review_action: Optional[ReviewAction]
    reviewed_by: Optional[int]
    reviewed_at: Optional[datetime]
    auto_generated: bool
    created_at: datetime

    class Config:
        from_attributes = True


class FlagReviewRequest(BaseModel):
    action: ReviewAction
    notes: Optional[str] = None


class UnblockRequest(BaseModel):
    reason: Optional[str] = None
