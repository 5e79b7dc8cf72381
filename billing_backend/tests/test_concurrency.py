"""
Concurrency Tests.

Validates that races on one balance, one call or one set of earnings
resolve to a single posting. Each task runs in its own session against a
file-backed database.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, func, update

from billing_backend.app.core.exceptions import InsufficientFundsError
from billing_backend.app.domain.calls.call_session_manager import CallSessionManager
from billing_backend.app.domain.gifts.gift_transfer import GiftTransferProcessor
from billing_backend.app.domain.ledger.ledger_store import LedgerStore, Posting
from billing_backend.app.domain.payouts.payout_scheduler import PayoutScheduler
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.gift import GiftCatalogItem
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.ledger_enums import EntryKind

NOW = datetime(2024, 7, 1, 3, 0, 0)


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(file_session_factory, create_user):
    async with file_session_factory() as db:
        _, account = await create_user(db, UserRole.VIEWER, balance=5000)

    async def withdraw():
        async with file_session_factory() as db:
            try:
                await LedgerStore.post_entry(db, account.id, -2000, EntryKind.WITHDRAWAL)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    results = await asyncio.gather(*(withdraw() for _ in range(5)), return_exceptions=True)

    assert sum(1 for r in results if r is None) == 2
    assert all(isinstance(r, InsufficientFundsError) for r in results if r is not None)
    async with file_session_factory() as db:
        assert await LedgerStore.get_balance(db, account.id) == 1000


@pytest.mark.asyncio
async def test_concurrent_gifts_spend_balance_once(file_session_factory, create_user):
    async with file_session_factory() as db:
        sender, sender_account = await create_user(db, UserRole.VIEWER, balance=1000)
        streamer, streamer_account = await create_user(db, UserRole.STREAMER)
        gift = GiftCatalogItem(name="Heart", price=1000)
        db.add(gift)
        await db.commit()

    async def send():
        async with file_session_factory() as db:
            return await GiftTransferProcessor.send_gift(db, sender.id, streamer.id, gift.id)

    results = await asyncio.gather(send(), send(), return_exceptions=True)

    assert sum(1 for r in results if isinstance(r, InsufficientFundsError)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    async with file_session_factory() as db:
        assert await LedgerStore.get_balance(db, sender_account.id) == 0
        assert await LedgerStore.get_balance(db, streamer_account.id) == 800


@pytest.mark.asyncio
async def test_concurrent_end_call_settles_once(file_session_factory, create_user):
    start = datetime(2024, 5, 1, 20, 0, 0)
    async with file_session_factory() as db:
        viewer, viewer_account = await create_user(db, UserRole.VIEWER, balance=10000)
        streamer, _ = await create_user(db, UserRole.STREAMER)
        call = await CallSessionManager.create_call(db, viewer.id, streamer.id, 1000)
        await CallSessionManager.start_call(db, call.id, now=start)

    async def end():
        async with file_session_factory() as db:
            return await CallSessionManager.end_call(db, call.id, now=start + timedelta(seconds=150))

    first, second = await asyncio.gather(end(), end())

    assert sorted([first.already_settled, second.already_settled]) == [False, True]
    assert first.total_cost == second.total_cost == 3000
    async with file_session_factory() as db:
        payments = await db.scalar(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.kind == EntryKind.CALL_PAYMENT)
        )
        assert payments == 1
        assert await LedgerStore.get_balance(db, viewer_account.id) == 7000


class SlowGateway:
    def __init__(self):
        self.transfers = []

    async def initiate_transfer(self, destination_key, amount, memo):
        self.transfers.append(amount)
        await asyncio.sleep(0.05)
        return f"TRF_{len(self.transfers)}"


@pytest.mark.asyncio
async def test_overlapping_sweeps_pay_once(file_session_factory, create_user):
    async with file_session_factory() as db:
        _, viewer_account = await create_user(db, UserRole.VIEWER, balance=10000)
        _, streamer_account = await create_user(db, UserRole.STREAMER, payout_key="streamer@pix.example")
        paired = await LedgerStore.post_paired(
            db,
            Posting(viewer_account.id, -2500, EntryKind.CALL_PAYMENT),
            [Posting(streamer_account.id, 2500, EntryKind.CALL_EARNING)],
        )
        await db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.transfer_id == paired.transfer_id)
            .values(created_at=NOW - timedelta(days=31))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    gateway = SlowGateway()

    async def sweep():
        async with file_session_factory() as db:
            return await PayoutScheduler.run_payout_sweep(db, gateway, now=NOW)

    results = await asyncio.gather(sweep(), sweep())

    assert sum(r.paid for r in results) == 1
    assert gateway.transfers == [2500]
    async with file_session_factory() as db:
        assert await LedgerStore.get_balance(db, streamer_account.id) == 0
