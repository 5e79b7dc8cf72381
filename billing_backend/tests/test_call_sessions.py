"""
Call Session Tests.

State machine, settlement on end, idempotent end and partial settlement.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, func

from billing_backend.app.core.exceptions import (
    AccountBlockedError,
    InsufficientFundsError,
    InvalidStateError,
    ValidationError,
)
from billing_backend.app.domain.calls.call_session_manager import CallSessionManager
from billing_backend.app.domain.fraud.fraud_engine import FraudEngine
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.models.call_enums import CallStatus
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.fraud_enums import FlagType, Severity
from billing_backend.app.models.fraud_flag import FraudFlag
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.models.outbox import OutboxEvent

START = datetime(2024, 5, 1, 20, 0, 0)


async def _active_call(db, create_user, viewer_balance=10000, rate=1000):
    viewer, viewer_account = await create_user(db, UserRole.VIEWER, balance=viewer_balance)
    streamer, streamer_account = await create_user(db, UserRole.STREAMER)
    call = await CallSessionManager.create_call(db, viewer.id, streamer.id, rate)
    await CallSessionManager.start_call(db, call.id, now=START)
    return call, viewer_account, streamer_account


@pytest.mark.asyncio
async def test_call_lifecycle_settles_metered_cost(db_session, create_user):
    call, viewer_account, streamer_account = await _active_call(db_session, create_user)

    settlement = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(seconds=61))

    assert settlement.duration_seconds == 61
    assert settlement.total_cost == 2000
    assert settlement.settled_amount == 2000
    assert settlement.insufficient_settlement is False
    assert settlement.already_settled is False
    assert await LedgerStore.get_balance(db_session, viewer_account.id) == 8000
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 2000

    payment = await LedgerStore.get_entry(db_session, settlement.payment_entry_id)
    earning = await LedgerStore.get_entry(db_session, settlement.earning_entry_id)
    assert payment.kind == EntryKind.CALL_PAYMENT
    assert earning.kind == EntryKind.CALL_EARNING
    assert payment.amount + earning.amount == 0
    assert payment.transfer_id == earning.transfer_id

    stored = await CallSessionManager.get_call(db_session, call.id)
    assert stored.status == CallStatus.ENDED
    assert stored.ended_at == START + timedelta(seconds=61)

    events = (await db_session.execute(select(OutboxEvent).where(OutboxEvent.event_type == "call_settled"))).scalars().all()
    assert {e.user_id for e in events} == {stored.viewer_id, stored.streamer_id}


@pytest.mark.asyncio
async def test_ending_twice_posts_once(db_session, create_user):
    call, viewer_account, _ = await _active_call(db_session, create_user)

    first = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(seconds=90))
    second = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(seconds=600))

    assert second.already_settled is True
    assert second.total_cost == first.total_cost == 2000
    assert second.payment_entry_id == first.payment_entry_id
    assert await LedgerStore.get_balance(db_session, viewer_account.id) == 8000

    payments = await db_session.scalar(
        select(func.count(LedgerEntry.id)).where(LedgerEntry.kind == EntryKind.CALL_PAYMENT)
    )
    assert payments == 1


@pytest.mark.asyncio
async def test_zero_length_call_posts_nothing(db_session, create_user):
    call, viewer_account, _ = await _active_call(db_session, create_user)

    settlement = await CallSessionManager.end_call(db_session, call.id, now=START)

    assert settlement.total_cost == 0
    assert settlement.payment_entry_id is None
    assert await LedgerStore.get_balance(db_session, viewer_account.id) == 10000


@pytest.mark.asyncio
async def test_partial_settlement_charges_available_balance_and_flags(db_session, create_user):
    call, viewer_account, streamer_account = await _active_call(db_session, create_user, viewer_balance=1500)

    settlement = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(minutes=5))

    assert settlement.total_cost == 5000
    assert settlement.settled_amount == 1500
    assert settlement.insufficient_settlement is True
    assert await LedgerStore.get_balance(db_session, viewer_account.id) == 0
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 1500

    flag = (await db_session.execute(select(FraudFlag))).scalar_one()
    assert flag.flag_type == FlagType.INSUFFICIENT_SETTLEMENT
    assert flag.severity == Severity.MEDIUM
    assert flag.details["settled"] == 1500


@pytest.mark.asyncio
async def test_empty_wallet_settles_nothing_with_high_flag(db_session, create_user):
    call, viewer_account, _ = await _active_call(db_session, create_user, viewer_balance=1000)
    await LedgerStore.post_entry(db_session, viewer_account.id, -1000, EntryKind.WITHDRAWAL)
    await db_session.commit()

    settlement = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(minutes=2))

    assert settlement.settled_amount == 0
    assert settlement.payment_entry_id is None
    flag = (await db_session.execute(select(FraudFlag))).scalar_one()
    assert flag.severity == Severity.HIGH


@pytest.mark.asyncio
async def test_start_requires_first_minute_funds(db_session, create_user):
    viewer, _ = await create_user(db_session, UserRole.VIEWER, balance=999)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    call = await CallSessionManager.create_call(db_session, viewer.id, streamer.id, 1000)

    with pytest.raises(InsufficientFundsError):
        await CallSessionManager.start_call(db_session, call.id, now=START)

    assert (await CallSessionManager.get_call(db_session, call.id)).status == CallStatus.PENDING


@pytest.mark.asyncio
async def test_blocked_viewer_cannot_start(db_session, create_user):
    viewer, account = await create_user(db_session, UserRole.VIEWER, balance=5000)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    call = await CallSessionManager.create_call(db_session, viewer.id, streamer.id, 1000)
    await LedgerStore.set_blocked(db_session, account.id, True)
    await db_session.commit()

    with pytest.raises(AccountBlockedError):
        await CallSessionManager.start_call(db_session, call.id, now=START)


@pytest.mark.asyncio
async def test_blocked_viewer_end_parks_settlement(db_session, create_user):
    call, viewer_account, streamer_account = await _active_call(db_session, create_user)
    await LedgerStore.set_blocked(db_session, viewer_account.id, True)
    await db_session.commit()

    settlement = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(seconds=61))

    assert settlement.settlement_parked is True
    assert settlement.total_cost == 2000
    assert settlement.settled_amount == 0
    assert settlement.insufficient_settlement is False
    stored = await CallSessionManager.get_call(db_session, call.id)
    assert stored.status == CallStatus.ENDED
    assert await LedgerStore.get_balance(db_session, viewer_account.id) == 10000
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 0

    # The meter stopped: ending again later changes nothing
    again = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(hours=2))
    assert again.already_settled is True
    assert again.total_cost == 2000

    with pytest.raises(AccountBlockedError):
        await CallSessionManager.settle_parked_call(db_session, call.id)
    assert (await CallSessionManager.get_call(db_session, call.id)).settlement_parked is True


@pytest.mark.asyncio
async def test_unblocking_streamer_settles_parked_call(db_session, create_user):
    admin, _ = await create_user(db_session, UserRole.ADMIN)
    call, viewer_account, streamer_account = await _active_call(db_session, create_user)
    await LedgerStore.set_blocked(db_session, streamer_account.id, True)
    await db_session.commit()

    parked = await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(seconds=90))
    assert parked.settlement_parked is True
    assert await CallSessionManager.settle_parked_calls(db_session, call.streamer_id) == []

    await FraudEngine.unblock_account(db_session, call.streamer_id, actor_id=admin.id)
    settled = await CallSessionManager.settle_parked_calls(db_session, call.streamer_id)

    assert [s.call_id for s in settled] == [call.id]
    assert settled[0].settled_amount == 2000
    assert settled[0].settlement_parked is False
    assert await LedgerStore.get_balance(db_session, viewer_account.id) == 8000
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 2000

    events = (await db_session.execute(
        select(func.count(OutboxEvent.id)).where(OutboxEvent.event_type == "call_settled")
    )).scalar_one()
    assert events == 2

    with pytest.raises(InvalidStateError):
        await CallSessionManager.settle_parked_call(db_session, call.id)


@pytest.mark.asyncio
async def test_create_call_validation(db_session, create_user):
    viewer, _ = await create_user(db_session, UserRole.VIEWER)
    other_viewer, _ = await create_user(db_session, UserRole.VIEWER)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)

    with pytest.raises(ValidationError):
        await CallSessionManager.create_call(db_session, viewer.id, streamer.id, 0)
    with pytest.raises(ValidationError):
        await CallSessionManager.create_call(db_session, viewer.id, other_viewer.id, 1000)
    with pytest.raises(ValidationError):
        await CallSessionManager.create_call(db_session, streamer.id, streamer.id, 1000)


@pytest.mark.asyncio
async def test_cancel_only_from_pending(db_session, create_user):
    viewer, _ = await create_user(db_session, UserRole.VIEWER, balance=5000)
    streamer, _ = await create_user(db_session, UserRole.STREAMER)
    pending = await CallSessionManager.create_call(db_session, viewer.id, streamer.id, 1000)

    cancelled = await CallSessionManager.cancel_call(db_session, pending.id)
    assert cancelled.status == CallStatus.CANCELLED

    with pytest.raises(InvalidStateError):
        await CallSessionManager.start_call(db_session, pending.id, now=START)
    with pytest.raises(InvalidStateError):
        await CallSessionManager.end_call(db_session, pending.id, now=START)

    active = await CallSessionManager.create_call(db_session, viewer.id, streamer.id, 1000)
    await CallSessionManager.start_call(db_session, active.id, now=START)
    with pytest.raises(InvalidStateError):
        await CallSessionManager.cancel_call(db_session, active.id)


@pytest.mark.asyncio
async def test_live_meter_reports_running_cost(db_session, create_user):
    call, _, _ = await _active_call(db_session, create_user, viewer_balance=5500)

    meter = await CallSessionManager.get_live_meter(db_session, call.id, now=START + timedelta(seconds=125))

    assert meter.status == CallStatus.ACTIVE
    assert meter.duration_seconds == 125
    assert meter.billed_minutes == 3
    assert meter.current_cost == 3000
    assert meter.viewer_balance == 5500
    assert meter.affordable_seconds == 300
    assert meter.remaining_seconds == 175

    await CallSessionManager.end_call(db_session, call.id, now=START + timedelta(seconds=125))
    ended = await CallSessionManager.get_live_meter(db_session, call.id)

    assert ended.status == CallStatus.ENDED
    assert ended.current_cost == 3000
    assert ended.remaining_seconds == 0
