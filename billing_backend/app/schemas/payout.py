"""
Payout Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List
from billing_backend.app.models.billing_enums import ScheduledPaymentStatus


class ScheduledPaymentResponse(BaseModel):
    id: int
    streamer_id: int
    amount: int
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    due_date: datetime
    status: ScheduledPaymentStatus
    payment_reference: Optional[str]
    error_message: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class PayoutOutcomeResponse(BaseModel):
    streamer_id: int
    amount: int
    status: ScheduledPaymentStatus
    payment_id: Optional[int]
    reference: Optional[str]
    error: Optional[str]

    class Config:
        from_attributes = True


class PayoutSweepResponse(BaseModel):
    processed: int
    paid: int
    failed: int
    skipped: int
    total_paid_amount: int
    payouts: List[PayoutOutcomeResponse]

    class Config:
        from_attributes = True
