"""
Wallet Tests.

Deposits, withdrawals and the fraud counters they feed.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import (
    AccountBlockedError,
    InsufficientFundsError,
    InvalidAmountError,
    ResourceNotFoundError,
    ValidationError,
)
from billing_backend.app.domain.ledger.ledger_store import LedgerStore, Posting
from billing_backend.app.domain.wallet.wallet_service import WalletService
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.fraud_flag import FraudFlag
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.services.rolling_counter import CounterMetric, RollingWindowCounter

NOW = datetime(2024, 6, 1, 12, 0, 0)


class BrokenCounter(RollingWindowCounter):
    """Counter whose writes fail."""

    async def record(self, *args, **kwargs):
        raise ConnectionError("redis down")


class UnreachableCounter(BrokenCounter):
    """Counter whose reads fail as well."""

    async def window(self, *args, **kwargs):
        raise ConnectionError("redis down")


@pytest.mark.asyncio
async def test_deposit_credits_and_records_counter(db_session, create_user, mock_redis):
    user, account = await create_user(db_session, UserRole.VIEWER)

    entry = await WalletService.deposit(db_session, user.id, 2500, reference="PIX-123", now=NOW)

    assert entry.kind == EntryKind.DEPOSIT
    assert entry.amount == 2500
    assert entry.description == "Deposit PIX-123"
    assert await LedgerStore.get_balance(db_session, account.id) == 2500

    stats = await RollingWindowCounter(mock_redis).window(account.id, CounterMetric.DEPOSIT, 60, NOW)
    assert (stats.count, stats.total) == (1, 2500)


@pytest.mark.asyncio
async def test_deposit_opens_missing_account(db_session, create_user):
    user, _ = await create_user(db_session, UserRole.STREAMER)

    await WalletService.deposit(db_session, user.id, 1000, now=NOW)

    account = await LedgerStore.get_account_for_user(db_session, user.id)
    assert await LedgerStore.get_balance(db_session, account.id) == 1000


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -100, 10.5, True])
async def test_deposit_rejects_bad_amounts(db_session, create_user, amount):
    user, _ = await create_user(db_session, UserRole.VIEWER)

    with pytest.raises(InvalidAmountError):
        await WalletService.deposit(db_session, user.id, amount, now=NOW)


@pytest.mark.asyncio
async def test_withdrawal_debits_balance(db_session, create_user, mock_redis):
    user, account = await create_user(db_session, UserRole.VIEWER, balance=5000)

    entry = await WalletService.request_withdrawal(db_session, user.id, 2000, now=NOW)

    assert entry.amount == -2000
    assert entry.kind == EntryKind.WITHDRAWAL
    assert await LedgerStore.get_balance(db_session, account.id) == 3000
    stats = await RollingWindowCounter(mock_redis).window(account.id, CounterMetric.WITHDRAWAL, 60, NOW)
    assert stats.total == 2000


@pytest.mark.asyncio
async def test_withdrawal_below_minimum(db_session, create_user):
    user, account = await create_user(db_session, UserRole.VIEWER, balance=5000)

    with pytest.raises(ValidationError) as exc:
        await WalletService.request_withdrawal(db_session, user.id, 999, now=NOW)

    assert exc.value.details["minimum"] == 1000
    assert await LedgerStore.get_balance(db_session, account.id) == 5000


@pytest.mark.asyncio
async def test_withdrawal_above_balance(db_session, create_user):
    user, account = await create_user(db_session, UserRole.VIEWER, balance=1500)

    with pytest.raises(InsufficientFundsError):
        await WalletService.request_withdrawal(db_session, user.id, 2000, now=NOW)

    assert await LedgerStore.get_balance(db_session, account.id) == 1500


@pytest.mark.asyncio
async def test_withdrawal_without_account(db_session):
    with pytest.raises(ResourceNotFoundError):
        await WalletService.request_withdrawal(db_session, 424242, 2000, now=NOW)


@pytest.mark.asyncio
async def test_counter_outage_does_not_undo_deposit(db_session, create_user, mock_redis):
    user, account = await create_user(db_session, UserRole.VIEWER)

    entry = await WalletService.deposit(db_session, user.id, 1000, now=NOW, counter=BrokenCounter(mock_redis))

    assert entry.id is not None
    assert await LedgerStore.get_balance(db_session, account.id) == 1000


@pytest.mark.asyncio
async def test_counter_outage_does_not_block_money_movement(db_session, create_user, mock_redis):
    user, account = await create_user(db_session, UserRole.VIEWER)
    counter = UnreachableCounter(mock_redis)

    await WalletService.deposit(db_session, user.id, 5000, now=NOW - timedelta(hours=2), counter=counter)
    entry = await WalletService.request_withdrawal(db_session, user.id, 2000, now=NOW, counter=counter)

    assert entry.amount == -2000
    assert await LedgerStore.get_balance(db_session, account.id) == 3000
    assert (await db_session.execute(select(FraudFlag))).first() is None


@pytest.mark.asyncio
async def test_withdrawal_leaves_unpaid_call_earnings(db_session, create_user):
    _, viewer_account = await create_user(db_session, UserRole.VIEWER, balance=100_000)
    streamer, streamer_account = await create_user(db_session, UserRole.STREAMER, balance=3000)
    await LedgerStore.post_paired(
        db_session,
        Posting(viewer_account.id, -50_000, EntryKind.CALL_PAYMENT),
        [Posting(streamer_account.id, 50_000, EntryKind.CALL_EARNING)],
    )
    await db_session.commit()

    with pytest.raises(InsufficientFundsError) as exc:
        await WalletService.request_withdrawal(db_session, streamer.id, 50_000, now=NOW)
    assert exc.value.details["balance"] == 3000

    await WalletService.request_withdrawal(db_session, streamer.id, 3000, now=NOW)
    assert await LedgerStore.get_balance(db_session, streamer_account.id) == 50_000


@pytest.mark.asyncio
async def test_withdrawal_above_per_transaction_limit(db_session, create_user):
    user, account = await create_user(db_session, UserRole.VIEWER, balance=2_000_000)

    with pytest.raises(ValidationError) as exc:
        await WalletService.request_withdrawal(db_session, user.id, settings.withdrawal_max_per_transaction + 1)

    assert exc.value.details["limit"] == settings.withdrawal_max_per_transaction
    assert await LedgerStore.get_balance(db_session, account.id) == 2_000_000


@pytest.mark.asyncio
async def test_daily_withdrawal_limit(db_session, create_user):
    user, account = await create_user(db_session, UserRole.VIEWER, balance=1_000_000)
    await WalletService.request_withdrawal(db_session, user.id, 300_000)

    with pytest.raises(ValidationError) as exc:
        await WalletService.request_withdrawal(db_session, user.id, 250_000)

    assert exc.value.message == "Daily withdrawal limit exceeded"
    assert exc.value.details["used"] == 300_000
    assert exc.value.details["remaining"] == 200_000
    assert await LedgerStore.get_balance(db_session, account.id) == 700_000


@pytest.mark.asyncio
async def test_monthly_withdrawal_limit(db_session, create_user, monkeypatch):
    monkeypatch.setattr(settings, "withdrawal_monthly_limit", 600_000)
    user, account = await create_user(db_session, UserRole.VIEWER, balance=1_000_000)
    first = await WalletService.request_withdrawal(db_session, user.id, 400_000)
    await db_session.execute(
        update(LedgerEntry)
        .where(LedgerEntry.id == first.id)
        .values(created_at=datetime.utcnow() - timedelta(days=10))
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    with pytest.raises(ValidationError) as exc:
        await WalletService.request_withdrawal(db_session, user.id, 300_000)

    assert exc.value.message == "Monthly withdrawal limit exceeded"
    assert exc.value.details["used"] == 400_000
    assert await LedgerStore.get_balance(db_session, account.id) == 600_000


@pytest.mark.asyncio
async def test_block_recommendation_refuses_withdrawal_without_auto_block(db_session, create_user, monkeypatch):
    monkeypatch.setattr(settings, "fraud_auto_block_enabled", False)
    user, account = await create_user(db_session, UserRole.VIEWER, balance=20000)
    await WalletService.deposit(db_session, user.id, 5000, now=NOW - timedelta(minutes=10))

    with pytest.raises(AccountBlockedError) as exc:
        await WalletService.request_withdrawal(db_session, user.id, 5000, now=NOW)

    assert exc.value.message == "Withdrawal blocked for security review"
    assert await LedgerStore.is_blocked(db_session, account.id) is False
    assert await LedgerStore.get_balance(db_session, account.id) == 25000


@pytest.mark.asyncio
async def test_withdrawal_replay_with_same_key(db_session, create_user):
    user, account = await create_user(db_session, UserRole.VIEWER, balance=10000)

    first = await WalletService.request_withdrawal(db_session, user.id, 2000, now=NOW, idempotency_key="wd-1")
    again = await WalletService.request_withdrawal(db_session, user.id, 2000, now=NOW, idempotency_key="wd-1")

    assert again.id == first.id
    assert await LedgerStore.get_balance(db_session, account.id) == 8000

    with pytest.raises(ValidationError):
        await WalletService.request_withdrawal(db_session, user.id, 3000, now=NOW, idempotency_key="wd-1")

    other = await WalletService.request_withdrawal(db_session, user.id, 2000, now=NOW, idempotency_key="wd-2")
    assert other.id != first.id
    assert await LedgerStore.get_balance(db_session, account.id) == 6000
