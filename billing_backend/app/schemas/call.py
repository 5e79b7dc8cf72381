"""
Call Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
from billing_backend.app.models.call_enums import CallStatus


class CallCreate(BaseModel):
    """Schema for requesting a call."""
    streamer_id: int
    rate_per_minute: int = Field(..., gt=0, description="Price per started minute, in centavos")


class CallResponse(BaseModel):
    """Schema for displaying a call."""
    id: int
    streamer_id: int
    viewer_id: int
    rate_per_minute: int
    status: CallStatus
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    duration_seconds: Optional[int]
    total_cost: Optional[int]
    settled_amount: Optional[int]
    settlement_parked: bool
    created_at: datetime

    class Config:
        from_attributes = True


class CallSettlementResponse(BaseModel):
    call_id: int
    duration_seconds: int
    total_cost: int
    settled_amount: int
    insufficient_settlement: bool
    payment_entry_id: Optional[int]
    earning_entry_id: Optional[int]
    already_settled: bool
    settlement_parked: bool

    class Config:
        from_attributes = True


class LiveMeterResponse(BaseModel):
    call_id: int
    status: CallStatus
    duration_seconds: int
    billed_minutes: int
    current_cost: int
    viewer_balance: int
    affordable_seconds: int
    remaining_seconds: int

    class Config:
        from_attributes = True
