"""
Gift Transfer Tests.

Receiver share, platform fee leg, validation and fraud pre-check.
"""

from datetime import datetime

import pytest
from sqlalchemy import select

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import (
    AccountBlockedError,
    GiftNotFoundError,
    InsufficientFundsError,
    ValidationError,
)
from billing_backend.app.domain.calls.call_session_manager import CallSessionManager
from billing_backend.app.domain.gifts.gift_transfer import GiftTransferProcessor, receiver_share
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.fraud_enums import FlagType
from billing_backend.app.models.fraud_flag import FraudFlag
from billing_backend.app.models.gift import GiftTransaction
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.models.outbox import OutboxEvent


def test_receiver_share_rounds_down():
    assert receiver_share(1000) == 800
    assert receiver_share(999) == 799
    assert receiver_share(1) == 0
    assert receiver_share(1000, share=0.7) == 700


@pytest.mark.asyncio
async def test_gift_splits_between_streamer_and_platform(db_session, create_user, create_gift):
    sender, sender_account = await create_user(db_session, UserRole.VIEWER, balance=5000)
    streamer, streamer_account = await create_user(db_session, UserRole.STREAMER)
    gift = await create_gift(db_session, price=1000, name="Heart")

    receipt = await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, gift.id, message="gg")

    assert receipt.amount_paid == 1000
    assert receipt.amount_received == 800
    assert receipt.platform_fee == 200

    platform = await LedgerStore.get_platform_account(db_session)
    assert await LedgerStore.get_balance(db_session, sender_account.id) == 4000
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 800
    assert await LedgerStore.get_balance(db_session, platform.id) == 200

    legs = await LedgerStore.list_entries(db_session, platform.id, kind=EntryKind.PLATFORM_FEE)
    assert len(legs) == 1
    assert legs[0].transfer_id == receipt.transfer_id

    record = await db_session.get(GiftTransaction, receipt.gift_transaction_id)
    assert record.receiver_amount == 800
    assert record.platform_fee == 200
    assert record.message == "gg"

    event = (await db_session.execute(select(OutboxEvent))).scalar_one()
    assert event.user_id == streamer.id
    assert event.event_type == "gift_received"
    assert event.payload["amount"] == 800
    assert '"gg"' in event.payload["message"]


@pytest.mark.asyncio
async def test_gift_without_fee_leg_leaves_difference_unposted(db_session, create_user, create_gift, monkeypatch):
    monkeypatch.setattr(settings, "post_platform_fee_entries", False)
    sender, sender_account = await create_user(db_session, UserRole.VIEWER, balance=5000)
    streamer, streamer_account = await create_user(db_session, UserRole.STREAMER)
    gift = await create_gift(db_session, price=1000)

    receipt = await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, gift.id)

    assert receipt.platform_fee == 200
    assert await LedgerStore.get_balance(db_session, sender_account.id) == 4000
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 800
    fees = await db_session.execute(select(GiftTransaction.platform_fee))
    assert fees.scalars().all() == [200]


@pytest.mark.asyncio
async def test_unknown_or_inactive_gift(db_session, create_user, create_gift):
    sender, _ = await create_user(db_session, UserRole.VIEWER, balance=5000)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    retired = await create_gift(db_session, price=1000, is_active=False)

    with pytest.raises(GiftNotFoundError) as exc:
        await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, 9999)
    assert exc.value.error_code == "ERR_GIFT_NOT_FOUND"

    with pytest.raises(GiftNotFoundError):
        await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, retired.id)


@pytest.mark.asyncio
async def test_receiver_must_be_another_streamer(db_session, create_user, create_gift):
    sender, _ = await create_user(db_session, UserRole.STREAMER, balance=5000)
    viewer, _ = await create_user(db_session, UserRole.VIEWER)
    gift = await create_gift(db_session, price=1000)

    with pytest.raises(ValidationError):
        await GiftTransferProcessor.send_gift(db_session, sender.id, viewer.id, gift.id)
    with pytest.raises(ValidationError):
        await GiftTransferProcessor.send_gift(db_session, sender.id, sender.id, gift.id)


@pytest.mark.asyncio
async def test_insufficient_funds_writes_nothing(db_session, create_user, create_gift):
    sender, sender_account = await create_user(db_session, UserRole.VIEWER, balance=500)
    streamer, streamer_account = await create_user(db_session, UserRole.STREAMER)
    gift = await create_gift(db_session, price=1000)

    with pytest.raises(InsufficientFundsError):
        await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, gift.id)

    assert await LedgerStore.get_balance(db_session, sender_account.id) == 500
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 0
    assert (await db_session.execute(select(GiftTransaction))).first() is None
    assert (await db_session.execute(select(OutboxEvent))).first() is None


@pytest.mark.asyncio
async def test_gift_during_call_must_match_active_call(db_session, create_user, create_gift):
    viewer, _ = await create_user(db_session, UserRole.VIEWER, balance=10000)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    other_streamer, _ = await create_user(db_session, UserRole.STREAMER)
    gift = await create_gift(db_session, price=1000)

    call = await CallSessionManager.create_call(db_session, viewer.id, streamer.id, 500)
    with pytest.raises(ValidationError):
        await GiftTransferProcessor.send_gift(db_session, viewer.id, streamer.id, gift.id, call_id=call.id)

    await CallSessionManager.start_call(db_session, call.id, now=datetime(2024, 5, 1, 20, 0))
    with pytest.raises(ValidationError):
        await GiftTransferProcessor.send_gift(db_session, viewer.id, other_streamer.id, gift.id, call_id=call.id)

    receipt = await GiftTransferProcessor.send_gift(db_session, viewer.id, streamer.id, gift.id, call_id=call.id)
    record = await db_session.get(GiftTransaction, receipt.gift_transaction_id)
    assert record.call_id == call.id


@pytest.mark.asyncio
async def test_large_gift_is_flagged_but_allowed(db_session, create_user, create_gift):
    sender, _ = await create_user(db_session, UserRole.VIEWER, balance=100_000)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    gift = await create_gift(db_session, price=settings.fraud_large_gift_threshold)

    receipt = await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, gift.id)

    assert receipt.amount_paid == settings.fraud_large_gift_threshold
    flag = (await db_session.execute(select(FraudFlag))).scalar_one()
    assert flag.flag_type == FlagType.LARGE_GIFT
    assert flag.user_id == sender.id


@pytest.mark.asyncio
async def test_huge_gift_blocks_sender_and_keeps_flag(db_session, create_user, create_gift):
    price = settings.fraud_large_gift_threshold * 4
    sender, sender_account = await create_user(db_session, UserRole.VIEWER, balance=price)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    gift = await create_gift(db_session, price=price)

    with pytest.raises(AccountBlockedError):
        await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, gift.id)

    assert await LedgerStore.is_blocked(db_session, sender_account.id) is True
    assert await LedgerStore.get_balance(db_session, sender_account.id) == price
    flags = (await db_session.execute(select(FraudFlag))).scalars().all()
    assert len(flags) == 1


@pytest.mark.asyncio
async def test_sent_and_received_history(db_session, create_user, create_gift):
    sender, _ = await create_user(db_session, UserRole.VIEWER, balance=10000)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    rose = await create_gift(db_session, price=500, name="Rose")
    heart = await create_gift(db_session, price=1000, name="Heart")
    await create_gift(db_session, price=5000, name="Retired", is_active=False)

    await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, rose.id)
    await GiftTransferProcessor.send_gift(db_session, sender.id, streamer.id, heart.id)

    sent = await GiftTransferProcessor.list_sent(db_session, sender.id)
    received = await GiftTransferProcessor.list_received(db_session, streamer.id)
    catalog = await GiftTransferProcessor.list_catalog(db_session)

    assert [t.gift_id for t in sent] == [heart.id, rose.id]
    assert len(received) == 2
    assert await GiftTransferProcessor.list_sent(db_session, streamer.id) == []
    assert [g.name for g in catalog] == ["Rose", "Heart"]
