"""
Call API Endpoints.

Viewers request calls, streamers accept them, either side hangs up.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.db.session import get_db
from billing_backend.app.models.call import Call
from billing_backend.app.models.enums import UserRole
from billing_backend.app.schemas.call import CallCreate, CallResponse, CallSettlementResponse, LiveMeterResponse
from billing_backend.app.core.dependencies import Identity, get_current_user
from billing_backend.app.core.exceptions import InsufficientPermissionsError
from billing_backend.app.core.guards import require_role
from billing_backend.app.domain.calls.call_session_manager import CallSessionManager

router = APIRouter(prefix="/calls", tags=["Calls"])


async def _participant_call(db: AsyncSession, call_id: int, identity: Identity) -> Call:
    call = await CallSessionManager.get_call(db, call_id)
    if identity.role != UserRole.ADMIN and identity.user_id not in (call.viewer_id, call.streamer_id):
        raise InsufficientPermissionsError("Not a participant of this call")
    return call


@router.post("", response_model=CallResponse, status_code=201)
async def create_call(
    request: CallCreate,
    identity: Identity = Depends(require_role([UserRole.VIEWER])),
    db: AsyncSession = Depends(get_db)
):
    """Request a call with a streamer at the given per-minute rate."""
    return await CallSessionManager.create_call(
        db,
        viewer_id=identity.user_id,
        streamer_id=request.streamer_id,
        rate_per_minute=request.rate_per_minute,
    )


@router.post("/{call_id}/start", response_model=CallResponse)
async def start_call(
    call_id: int = Path(..., description="Call ID"),
    identity: Identity = Depends(require_role([UserRole.STREAMER])),
    db: AsyncSession = Depends(get_db)
):
    """Streamer accepts the call; the meter starts now."""
    call = await _participant_call(db, call_id, identity)
    if call.streamer_id != identity.user_id:
        raise InsufficientPermissionsError("Only the called streamer can start this call")
    return await CallSessionManager.start_call(db, call_id)


@router.post("/{call_id}/end", response_model=CallSettlementResponse)
async def end_call(
    call_id: int = Path(..., description="Call ID"),
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Hang up and settle.

    Safe to retry: a second request returns the original settlement.
    """
    await _participant_call(db, call_id, identity)
    settlement = await CallSessionManager.end_call(db, call_id)
    return CallSettlementResponse.model_validate(settlement)


@router.post("/{call_id}/cancel", response_model=CallResponse)
async def cancel_call(
    call_id: int = Path(..., description="Call ID"),
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await _participant_call(db, call_id, identity)
    return await CallSessionManager.cancel_call(db, call_id)


@router.get("/{call_id}", response_model=CallResponse)
async def get_call(
    call_id: int = Path(..., description="Call ID"),
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await _participant_call(db, call_id, identity)


@router.get("/{call_id}/meter", response_model=LiveMeterResponse)
async def get_live_meter(
    call_id: int = Path(..., description="Call ID"),
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Running cost and remaining affordable talk time."""
    await _participant_call(db, call_id, identity)
    meter = await CallSessionManager.get_live_meter(db, call_id, now=datetime.utcnow())
    return LiveMeterResponse.model_validate(meter)
