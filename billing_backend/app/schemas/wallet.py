"""
Wallet Schemas.

All amounts are integers in minor currency units (centavos).
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
from billing_backend.app.models.ledger_enums import EntryKind, EntryStatus


class BalanceResponse(BaseModel):
    account_id: int
    balance: int
    is_blocked: bool


class LedgerEntryResponse(BaseModel):
    """Schema for displaying a ledger entry."""
    id: int
    amount: int
    kind: EntryKind
    status: EntryStatus
    related_entry_id: Optional[int]
    transfer_id: Optional[str]
    description: Optional[str]
    paid: bool
    created_at: datetime

    class Config:
        from_attributes = True


class DepositRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reference: Optional[str] = Field(None, max_length=100)


class WithdrawalRequest(BaseModel):
    amount: int = Field(..., gt=0)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=100)
