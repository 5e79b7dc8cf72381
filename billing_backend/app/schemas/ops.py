"""
Ops Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Any, Dict, List, Optional


class DispatchResponse(BaseModel):
    sent: int
    failed: int
    dead_lettered: int


class ReconciliationResponse(BaseModel):
    status: str
    generated_at: datetime
    checked_accounts: int
    total_balance: int
    total_entries: int
    drifted_accounts: List[Dict[str, int]]
    negative_balances: List[Dict[str, int]]
    unbalanced_transfers: List[Dict[str, Any]]
    stale_pending_payouts: List[int]
    retained_by_platform: int

    class Config:
        from_attributes = True


class AuditLogResponse(BaseModel):
    id: int
    actor_id: Optional[int]
    action: str
    target_user_id: Optional[int]
    resource_type: Optional[str]
    resource_id: Optional[int]
    meta_data: Optional[Dict[str, Any]]
    timestamp: datetime

    class Config:
        from_attributes = True
