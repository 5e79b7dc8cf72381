"""
Admin Operations API Endpoints.

Outbound event delivery, dead letters and ledger reconciliation.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from datetime import datetime
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from billing_backend.app.db.session import get_db
from billing_backend.app.models.dlq import DeadLetterQueue, DLQStatus
from billing_backend.app.models.enums import UserRole
from billing_backend.app.schemas.ops import AuditLogResponse, DispatchResponse, ReconciliationResponse
from billing_backend.app.core.dependencies import Identity
from billing_backend.app.core.guards import require_role
from billing_backend.app.core.exceptions import InvalidStateError
from billing_backend.app.domain.reconciliation.reconciliation_service import ReconciliationService
from billing_backend.app.services.event_outbox import dispatch_pending_events
from billing_backend.app.services.audit import get_audit_trail

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.post("/events/dispatch", response_model=DispatchResponse)
async def dispatch_events(
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Deliver pending outbound events as in-app notifications."""
    return await dispatch_pending_events(db)


@router.post("/dlq/{dlq_id}/archive")
async def archive_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Mark a dead-lettered event as handled by hand."""
    result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
    item = result.scalar_one_or_none()

    if not item:
        raise HTTPException(status_code=404, detail="DLQ item not found")

    if item.status == DLQStatus.ARCHIVED:
        raise InvalidStateError("DeadLetterQueue", item.status.value, DLQStatus.FAILED.value)

    item.status = DLQStatus.ARCHIVED
    item.archived_at = datetime.utcnow()
    item.archived_by = identity.user_id
    await db.commit()
    return {"message": f"Task {item.task_name} archived"}


@router.post("/reconciliation", response_model=ReconciliationResponse)
async def run_reconciliation(
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    report = await ReconciliationService.run_reconciliation(db, actor_id=identity.user_id)
    return ReconciliationResponse.model_validate(report)


@router.get("/audit", response_model=List[AuditLogResponse])
async def list_audit_trail(
    target_user_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    identity: Identity = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Operator decisions and automatic account actions, most recent first."""
    return await get_audit_trail(db, target_user_id=target_user_id, action=action, limit=limit)
