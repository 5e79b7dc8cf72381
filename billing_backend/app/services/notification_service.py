"""
Notification Service.

Default in-app sink for outbound events.
"""

from datetime import datetime
from sqlalchemy import select, update, desc
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Dict, Any, List

from billing_backend.app.models.notification import Notification, NotificationType


# Event type -> (notification type, title)
EVENT_TEMPLATES = {
    "call_settled": (NotificationType.CALL_UPDATE, "Call settled"),
    "gift_received": (NotificationType.GIFT_RECEIVED, "You received a gift"),
    "chargeback_resolved": (NotificationType.BILLING_UPDATE, "Chargeback resolved"),
    "payout_processed": (NotificationType.BILLING_UPDATE, "Payout processed"),
    "payout_failed": (NotificationType.WARNING, "Payout failed"),
}


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        metadata: Optional[Dict[str, Any]] = None,
        event_type: Optional[str] = None,
    ) -> Notification:
        """Create a single notification."""
        notif = Notification(
            user_id=user_id,
            type=type,
            event_type=event_type,
            title=title,
            message=message,
            metadata_payload=metadata
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read == False)
        result = await db.execute(query.order_by(desc(Notification.created_at), desc(Notification.id)).limit(limit))
        return list(result.scalars().all())

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> bool:
        """Mark one of the user's notifications as read. False if it is not theirs."""
        result = await db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True, read_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


class InAppNotificationEmitter:
    """
    Delivers outbox events as in-app notifications.

    Writes into the dispatcher's session; the dispatcher commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def emit(self, user_id: int, event_type: str, payload: Dict[str, Any]) -> None:
        notif_type, title = EVENT_TEMPLATES.get(event_type, (NotificationType.INFO, event_type))
        await NotificationService.create_notification(
            self.db,
            user_id=user_id,
            title=title,
            message=payload.get("message", title),
            type=notif_type,
            metadata=payload,
            event_type=event_type,
        )
