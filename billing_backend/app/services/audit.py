"""
Audit logging service for operator decisions and automatic account actions.

Audit records are added to the caller's unit of work, so a decision and its
audit trail commit (or roll back) together.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from billing_backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"
    ACCOUNT_AUTO_BLOCKED = "ACCOUNT_AUTO_BLOCKED"
    ACCOUNT_UNBLOCKED = "ACCOUNT_UNBLOCKED"

    # Fraud
    FRAUD_FLAG_CREATED = "FRAUD_FLAG_CREATED"
    FRAUD_FLAG_REVIEWED = "FRAUD_FLAG_REVIEWED"

    # Chargebacks
    CHARGEBACK_FILED = "CHARGEBACK_FILED"
    CHARGEBACK_INVESTIGATING = "CHARGEBACK_INVESTIGATING"
    CHARGEBACK_DECIDED = "CHARGEBACK_DECIDED"

    # Payouts
    PAYOUT_PAID = "PAYOUT_PAID"
    PAYOUT_FAILED = "PAYOUT_FAILED"

    # Ops
    RECONCILIATION_RUN = "RECONCILIATION_RUN"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    target_user_id: Optional[int] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Record an audit event in the current transaction.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of the operator, None for system actions
        target_user_id: ID of the affected user
        resource_type: Kind of record acted upon (e.g. "chargeback")
        resource_id: ID of that record
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance (flushed, not committed)
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        target_user_id=target_user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    target_user_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering.

    Returns:
        List of AuditLog instances, most recent first
    """
    query = select(AuditLog).order_by(desc(AuditLog.id))

    if target_user_id:
        query = query.where(AuditLog.target_user_id == target_user_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
