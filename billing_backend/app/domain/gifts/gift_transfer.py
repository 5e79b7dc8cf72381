"""
Gift Transfer Processor (Domain Logic).

A gift is one paired posting: the sender is debited the full catalog price,
the receiving streamer is credited their share (rounded down) and, when
platform fee posting is enabled, the remainder is credited to the platform
account as a `platform_fee` leg of the same pair.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import GiftNotFoundError, ResourceNotFoundError, ValidationError
from billing_backend.app.domain.fraud.fraud_engine import FraudEngine
from billing_backend.app.domain.ledger.ledger_store import LedgerStore, Posting
from billing_backend.app.models.call import Call
from billing_backend.app.models.call_enums import CallStatus
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.gift import GiftCatalogItem, GiftTransaction
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.models.user import User
from billing_backend.app.services.event_outbox import enqueue_event

logger = logging.getLogger(__name__)


@dataclass
class GiftReceipt:
    gift_transaction_id: int
    transfer_id: str
    amount_paid: int
    amount_received: int
    platform_fee: int
    sender_entry_id: int
    receiver_entry_id: int


def receiver_share(price: int, share: Optional[float] = None) -> int:
    """Receiver's cut of a gift price, rounded down to a whole minor unit."""
    share = settings.gift_receiver_share if share is None else share
    return int((Decimal(price) * Decimal(str(share))).to_integral_value(rounding=ROUND_FLOOR))


class GiftTransferProcessor:

    @staticmethod
    async def list_catalog(db: AsyncSession) -> List[GiftCatalogItem]:
        result = await db.execute(
            select(GiftCatalogItem)
            .where(GiftCatalogItem.is_active.is_(True))
            .order_by(GiftCatalogItem.price.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def send_gift(
        db: AsyncSession,
        sender_id: int,
        receiver_id: int,
        gift_id: int,
        message: Optional[str] = None,
        call_id: Optional[int] = None,
    ) -> GiftReceipt:
        """
        Send a catalog gift to a streamer.

        Raises:
            GiftNotFoundError: gift missing or inactive
            ValidationError: receiver is not a streamer, is the sender,
                or the given call is not an active call between the two
            InsufficientFundsError / AccountBlockedError: from the ledger
        """
        gift = await db.get(GiftCatalogItem, gift_id)
        if not gift or not gift.is_active:
            raise GiftNotFoundError(gift_id)

        if sender_id == receiver_id:
            raise ValidationError("Cannot send a gift to yourself")

        receiver = await db.get(User, receiver_id)
        if not receiver:
            raise ResourceNotFoundError("Receiver", receiver_id)
        if receiver.role != UserRole.STREAMER:
            raise ValidationError("Gifts can only be sent to streamers", details={"receiver_id": receiver_id})

        if call_id is not None:
            call = await db.get(Call, call_id, populate_existing=True)
            if not call:
                raise ResourceNotFoundError("Call", call_id)
            if call.viewer_id != sender_id or call.streamer_id != receiver_id:
                raise ValidationError("Call does not belong to this sender and receiver", details={"call_id": call_id})
            if call.status != CallStatus.ACTIVE:
                raise ValidationError("Call is not active", details={"call_id": call_id, "status": call.status.value})

        sender_account = await LedgerStore.get_account_for_user(db, sender_id)

        # Commits its own flags; a block recommendation blocks the sender
        # and the debit below then fails with AccountBlockedError.
        await FraudEngine.assess_gift(db, sender_id, gift.price)

        received = receiver_share(gift.price)
        fee = gift.price - received

        try:
            receiver_account = await LedgerStore.open_account(db, receiver_id)
            credits = [Posting(receiver_account.id, received, EntryKind.GIFT_RECEIVED, f"Gift received: {gift.name}")]
            if fee > 0 and settings.post_platform_fee_entries:
                platform = await LedgerStore.get_platform_account(db)
                credits.append(Posting(platform.id, fee, EntryKind.PLATFORM_FEE, f"Gift fee: {gift.name}"))

            paired = await LedgerStore.post_paired(
                db,
                Posting(sender_account.id, -gift.price, EntryKind.GIFT_SENT, f"Gift: {gift.name}"),
                credits,
            )

            record = GiftTransaction(
                sender_id=sender_id,
                receiver_id=receiver_id,
                gift_id=gift.id,
                call_id=call_id,
                amount=gift.price,
                receiver_amount=received,
                platform_fee=fee,
                message=message,
                transfer_id=paired.transfer_id,
            )
            db.add(record)
            await db.flush()

            text = f"{gift.name} from an admirer"
            if message:
                text = f'{text}: "{message}"'
            await enqueue_event(db, receiver_id, "gift_received", {
                "gift_id": gift.id,
                "gift_transaction_id": record.id,
                "amount": received,
                "message": text,
            })

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Gift %s sent: sender=%s receiver=%s price=%s received=%s fee=%s",
            gift.id, sender_id, receiver_id, gift.price, received, fee
        )
        return GiftReceipt(
            gift_transaction_id=record.id,
            transfer_id=paired.transfer_id,
            amount_paid=gift.price,
            amount_received=received,
            platform_fee=fee,
            sender_entry_id=paired.debit.id,
            receiver_entry_id=paired.credits[0].id,
        )

    @staticmethod
    async def list_sent(db: AsyncSession, user_id: int, limit: int = 50) -> List[GiftTransaction]:
        result = await db.execute(
            select(GiftTransaction)
            .where(GiftTransaction.sender_id == user_id)
            .order_by(GiftTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_received(db: AsyncSession, user_id: int, limit: int = 50) -> List[GiftTransaction]:
        result = await db.execute(
            select(GiftTransaction)
            .where(GiftTransaction.receiver_id == user_id)
            .order_by(GiftTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
