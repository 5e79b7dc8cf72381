"""
Notification API Endpoints.

Inbox of the in-app notifications delivered by the event outbox.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from billing_backend.app.db.session import get_db
from billing_backend.app.core.dependencies import Identity, get_current_user
from billing_backend.app.core.exceptions import ResourceNotFoundError
from billing_backend.app.services.notification_service import NotificationService
from billing_backend.app.schemas.notification import NotificationResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the caller's notifications, newest first."""
    return await NotificationService.list_for_user(db, identity.user_id, unread_only=unread_only, limit=limit)


@router.patch("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int = Path(...),
    identity: Identity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    if not await NotificationService.mark_read(db, notification_id, identity.user_id):
        raise ResourceNotFoundError("Notification", notification_id)
    await db.commit()
    return {"status": "success"}
