"""
Admin Payout API Endpoints.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.db.session import get_db
from billing_backend.app.models.billing_enums import ScheduledPaymentStatus
from billing_backend.app.models.enums import UserRole
from billing_backend.app.schemas.payout import PayoutSweepResponse, ScheduledPaymentResponse
from billing_backend.app.core.dependencies import Identity
from billing_backend.app.core.guards import require_role
from billing_backend.app.domain.payouts.payout_scheduler import PayoutScheduler

router = APIRouter(prefix="/admin/payouts", tags=["Admin - Payouts"])


@router.post("/sweep", response_model=PayoutSweepResponse)
async def run_sweep(
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Run the D+30 payout sweep now instead of waiting for the daily job."""
    result = await PayoutScheduler.run_payout_sweep(db)
    return PayoutSweepResponse.model_validate(result)


@router.get("", response_model=List[ScheduledPaymentResponse])
async def list_payouts(
    status: Optional[ScheduledPaymentStatus] = None,
    streamer_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await PayoutScheduler.list_payments(db, status=status, streamer_id=streamer_id, limit=limit, offset=offset)
