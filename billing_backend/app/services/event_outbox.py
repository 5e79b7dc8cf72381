"""
Transactional outbox for outbound events.

Domain services call `enqueue_event` inside their unit of work, so an event
exists if and only if the ledger change that caused it committed.
`dispatch_pending_events` delivers them later; delivery failures are
logged and retried, never surfaced to the operation that produced them.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.config import settings
from billing_backend.app.models.dlq import DeadLetterQueue
from billing_backend.app.models.outbox import OutboxEvent, OutboxStatus
from billing_backend.app.services.notification_service import InAppNotificationEmitter

logger = logging.getLogger(__name__)


class NotificationEmitter(Protocol):
    async def emit(self, user_id: int, event_type: str, payload: Dict[str, Any]) -> None:
        ...


async def enqueue_event(
    db: AsyncSession,
    user_id: int,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """Add an outbound event to the caller's transaction."""
    event = OutboxEvent(user_id=user_id, event_type=event_type, payload=payload)
    db.add(event)
    await db.flush()
    return event


async def dispatch_pending_events(
    db: AsyncSession,
    emitter: Optional[NotificationEmitter] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, int]:
    """
    Deliver NEW and FAILED events, oldest first.

    Each event is committed on its own. An event that keeps failing is
    moved to the dead letter queue after `outbox_max_attempts`.

    Returns:
        Counters: sent, failed, dead_lettered
    """
    emitter = emitter or InAppNotificationEmitter(db)
    limit = batch_size or settings.outbox_batch_size

    result = await db.execute(
        select(OutboxEvent.id)
        .where(OutboxEvent.status.in_([OutboxStatus.NEW, OutboxStatus.FAILED]))
        .order_by(OutboxEvent.id)
        .limit(limit)
    )
    event_ids = result.scalars().all()

    counters = {"sent": 0, "failed": 0, "dead_lettered": 0}

    for event_id in event_ids:
        event = await db.get(OutboxEvent, event_id)
        try:
            await emitter.emit(event.user_id, event.event_type, event.payload)
            event.status = OutboxStatus.SENT
            event.attempts += 1
            event.sent_at = datetime.utcnow()
            await db.commit()
            counters["sent"] += 1
        except Exception as e:
            await db.rollback()
            logger.warning("Delivery of outbox event %s failed: %s", event_id, e)

            event = await db.get(OutboxEvent, event_id)
            event.attempts += 1
            event.last_error = str(e)[:1000]

            if event.attempts >= settings.outbox_max_attempts:
                event.status = OutboxStatus.DEAD_LETTERED
                db.add(DeadLetterQueue(
                    task_name=f"outbox:{event.event_type}",
                    event_id=event.id,
                    error_message=event.last_error,
                    payload={"event_id": event.id, "user_id": event.user_id, "payload": event.payload},
                    retry_count=event.attempts,
                ))
                counters["dead_lettered"] += 1
                logger.error("Outbox event %s moved to dead letter queue after %s attempts", event_id, event.attempts)
            else:
                event.status = OutboxStatus.FAILED
                counters["failed"] += 1

            await db.commit()

    if event_ids:
        logger.info("Outbox dispatch finished: %s", counters)
    return counters
