"""
Admin Chargeback API Endpoints.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.db.session import get_db
from billing_backend.app.models.billing_enums import ChargebackStatus
from billing_backend.app.models.enums import UserRole
from billing_backend.app.schemas.chargeback import (
    ChargebackCreate, ChargebackDecisionRequest, ChargebackResponse, ChargebackStatsResponse
)
from billing_backend.app.core.dependencies import Identity
from billing_backend.app.core.guards import require_role
from billing_backend.app.domain.chargebacks.chargeback_resolver import ChargebackResolver

router = APIRouter(prefix="/admin/chargebacks", tags=["Admin - Chargebacks"])


@router.post("", response_model=ChargebackResponse, status_code=201)
async def file_chargeback(
    request: ChargebackCreate,
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Register a dispute received from the payment processor."""
    return await ChargebackResolver.file_chargeback(
        db,
        entry_id=request.entry_id,
        reason=request.reason,
        actor_id=identity.user_id,
        external_reference=request.external_reference,
    )


@router.get("", response_model=List[ChargebackResponse])
async def list_chargebacks(
    status: Optional[ChargebackStatus] = None,
    user_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await ChargebackResolver.list_chargebacks(db, status=status, user_id=user_id, limit=limit, offset=offset)


@router.get("/stats", response_model=ChargebackStatsResponse)
async def chargeback_stats(
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await ChargebackResolver.get_stats(db)


@router.post("/{chargeback_id}/investigate", response_model=ChargebackResponse)
async def start_investigation(
    chargeback_id: int = Path(..., description="Chargeback ID"),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await ChargebackResolver.start_investigation(db, chargeback_id, reviewer_id=identity.user_id)


@router.post("/{chargeback_id}/decision", response_model=ChargebackResponse)
async def decide_chargeback(
    request: ChargebackDecisionRequest,
    chargeback_id: int = Path(..., description="Chargeback ID"),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Resolve a dispute.

    refund reverses the disputed entry, partial refunds `partial_amount`,
    keep rejects the dispute.
    """
    return await ChargebackResolver.decide_chargeback(
        db,
        chargeback_id,
        decision=request.decision,
        notes=request.notes,
        reviewer_id=identity.user_id,
        partial_amount=request.partial_amount,
    )
