"""
Admin Fraud API Endpoints.

Flag queue, manual flags, reviews and unblocking. Unblocking also settles
calls parked while the account was blocked.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.db.session import get_db
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.fraud_enums import Severity
from billing_backend.app.schemas.fraud import (
    FraudFlagCreate, FraudFlagResponse, FlagReviewRequest, UnblockRequest
)
from billing_backend.app.core.dependencies import Identity
from billing_backend.app.core.guards import require_role
from billing_backend.app.domain.calls.call_session_manager import CallSessionManager
from billing_backend.app.domain.fraud.fraud_engine import FraudEngine

router = APIRouter(prefix="/admin/fraud", tags=["Admin - Fraud"])


@router.post("/flags", response_model=FraudFlagResponse, status_code=201)
async def create_flag(
    request: FraudFlagCreate,
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Raise a manual flag against a user."""
    return await FraudEngine.create_flag(
        db,
        user_id=request.user_id,
        severity=request.severity,
        description=request.description,
        actor_id=identity.user_id,
        details=request.details,
    )


@router.get("/flags", response_model=List[FraudFlagResponse])
async def list_flags(
    reviewed: Optional[bool] = None,
    user_id: Optional[int] = None,
    severity: Optional[Severity] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await FraudEngine.list_flags(
        db, reviewed=reviewed, user_id=user_id, severity=severity, limit=limit, offset=offset
    )


@router.post("/flags/{flag_id}/review", response_model=FraudFlagResponse)
async def review_flag(
    request: FlagReviewRequest,
    flag_id: int = Path(..., description="Fraud flag ID"),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Dismiss, block or escalate an open flag."""
    return await FraudEngine.review_flag(
        db, flag_id, reviewer_id=identity.user_id, action=request.action, notes=request.notes
    )


@router.post("/accounts/{user_id}/unblock")
async def unblock_account(
    request: UnblockRequest,
    user_id: int = Path(..., description="User ID"),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Lift the block and settle the calls that ended while it was in place."""
    await FraudEngine.unblock_account(db, user_id, actor_id=identity.user_id, reason=request.reason)
    settled = await CallSessionManager.settle_parked_calls(db, user_id)
    return {
        "message": f"Account of user {user_id} unblocked",
        "settled_call_ids": [s.call_id for s in settled],
    }
