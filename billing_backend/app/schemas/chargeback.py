"""
Chargeback Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict
from billing_backend.app.models.billing_enums import ChargebackDecision, ChargebackStatus


class ChargebackCreate(BaseModel):
    entry_id: int
    reason: str = Field(..., min_length=1)
    external_reference: Optional[str] = Field(None, max_length=100)


class ChargebackDecisionRequest(BaseModel):
    decision: ChargebackDecision
    notes: Optional[str] = None
    partial_amount: Optional[int] = Field(None, gt=0)


class ChargebackResponse(BaseModel):
    id: int
    transaction_id: int
    user_id: int
    amount: int
    reason: str
    status: ChargebackStatus
    admin_decision: Optional[ChargebackDecision]
    admin_notes: Optional[str]
    refunded_amount: int
    reversal_entry_id: Optional[int]
    recovered_amount: int
    unrecovered_amount: int
    resolved_by: Optional[int]
    resolved_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class StatusTotals(BaseModel):
    count: int
    total_amount: int


class ChargebackStatsResponse(BaseModel):
    by_status: Dict[str, StatusTotals]
    total_refunded: int
    total_unrecovered: int
