"""
Wallet Service (Domain Logic).

User-initiated deposits and withdrawals. Both run the fraud pre-check,
post a single ledger entry and, once committed, feed the rolling fraud
counters. Withdrawals are also capped per transaction, per rolling day
and per rolling 30 days, and may carry an idempotency key.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import AccountBlockedError, InvalidAmountError, ValidationError
from billing_backend.app.domain.fraud.fraud_engine import FraudEngine
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.fraud_enums import Recommendation
from billing_backend.app.models.ledger_enums import EntryKind, EntryStatus
from billing_backend.app.services.rolling_counter import CounterMetric, RollingWindowCounter

logger = logging.getLogger(__name__)


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer", {"amount": amount})


class WalletService:

    @staticmethod
    async def deposit(
        db: AsyncSession,
        user_id: int,
        amount: int,
        reference: Optional[str] = None,
        now: Optional[datetime] = None,
        counter: Optional[RollingWindowCounter] = None,
    ) -> LedgerEntry:
        """Credit a confirmed top-up to the user's account."""
        _require_positive(amount)
        now = now or datetime.utcnow()
        account = await LedgerStore.open_account(db, user_id)
        await db.commit()

        await FraudEngine.assess_deposit(db, user_id, amount, now=now, counter=counter)

        try:
            entry = await LedgerStore.post_entry(
                db, account.id, amount, EntryKind.DEPOSIT,
                description=f"Deposit {reference}" if reference else "Deposit",
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await FraudEngine.record_movement(account.id, CounterMetric.DEPOSIT, entry.id, amount, at=now, counter=counter)
        logger.info("Deposit of %s credited to account %s (entry %s)", amount, account.id, entry.id)
        return entry

    @staticmethod
    async def withdrawn_since(db: AsyncSession, account_id: int, since: datetime) -> int:
        total = await db.scalar(
            select(func.coalesce(func.sum(func.abs(LedgerEntry.amount)), 0)).where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.kind == EntryKind.WITHDRAWAL,
                LedgerEntry.status == EntryStatus.COMPLETED,
                LedgerEntry.created_at > since,
            )
        )
        return int(total or 0)

    @staticmethod
    async def check_withdrawal_limits(db: AsyncSession, account_id: int, amount: int, now: datetime) -> None:
        """
        Per-transaction, rolling 24 hour and rolling 30 day caps.

        Raises:
            ValidationError: a cap would be exceeded
        """
        if amount > settings.withdrawal_max_per_transaction:
            raise ValidationError(
                f"Maximum withdrawal per transaction is {settings.withdrawal_max_per_transaction}",
                details={"amount": amount, "limit": settings.withdrawal_max_per_transaction},
            )

        for period, window, limit in (
            ("Daily", timedelta(days=1), settings.withdrawal_daily_limit),
            ("Monthly", timedelta(days=30), settings.withdrawal_monthly_limit),
        ):
            used = await WalletService.withdrawn_since(db, account_id, now - window)
            if used + amount > limit:
                raise ValidationError(
                    f"{period} withdrawal limit exceeded",
                    details={"amount": amount, "limit": limit, "used": used, "remaining": max(limit - used, 0)},
                )

    @staticmethod
    async def _replay(db: AsyncSession, account_id: int, amount: int, idempotency_key: str) -> Optional[LedgerEntry]:
        entry = await LedgerStore.find_by_idempotency_key(db, account_id, idempotency_key)
        if entry is None:
            return None
        if entry.kind != EntryKind.WITHDRAWAL or entry.amount != -amount:
            raise ValidationError(
                "Idempotency key already used for a different request",
                details={"idempotency_key": idempotency_key, "entry_id": entry.id},
            )
        logger.info("Withdrawal replay for key %s returns entry %s", idempotency_key, entry.id)
        return entry

    @staticmethod
    async def request_withdrawal(
        db: AsyncSession,
        user_id: int,
        amount: int,
        now: Optional[datetime] = None,
        counter: Optional[RollingWindowCounter] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Debit a cash-out from the user's account.

        Call earnings not yet paid out stay on the balance for the D+30
        payout and cannot be withdrawn. A request repeated with the same
        idempotency key returns the entry of the first one.

        Raises:
            ValidationError: below the minimum, above a limit, or a reused key
            AccountBlockedError: account blocked, or the fraud check recommends blocking
            InsufficientFundsError: amount above the withdrawable balance
        """
        _require_positive(amount)
        if amount < settings.min_withdrawal_amount:
            raise ValidationError(
                f"Minimum withdrawal amount is {settings.min_withdrawal_amount}",
                details={"amount": amount, "minimum": settings.min_withdrawal_amount},
            )

        now = now or datetime.utcnow()
        account_id = (await LedgerStore.get_account_for_user(db, user_id)).id

        if idempotency_key:
            existing = await WalletService._replay(db, account_id, amount, idempotency_key)
            if existing:
                return existing

        await WalletService.check_withdrawal_limits(db, account_id, amount, now)

        assessment = await FraudEngine.assess_withdrawal(db, user_id, amount, now=now, counter=counter)
        if assessment.recommendation == Recommendation.BLOCK:
            logger.warning("Withdrawal of %s by user %s refused (score %s)", amount, user_id, assessment.score)
            raise AccountBlockedError(account_id, "Withdrawal blocked for security review")
        if assessment.flags:
            logger.warning(
                "Withdrawal of %s by user %s flagged: %s",
                amount, user_id, assessment.recommendation.value
            )

        reserved = await LedgerStore.unsettled_earnings(db, account_id)
        try:
            entry = await LedgerStore.post_entry(
                db, account_id, -amount, EntryKind.WITHDRAWAL,
                description="Withdrawal",
                idempotency_key=idempotency_key,
                reserved=reserved,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            if not idempotency_key:
                raise
            # Same key committed by a concurrent request
            existing = await WalletService._replay(db, account_id, amount, idempotency_key)
            if existing is None:
                raise
            return existing
        except Exception:
            await db.rollback()
            raise

        await FraudEngine.record_movement(account_id, CounterMetric.WITHDRAWAL, entry.id, amount, at=now, counter=counter)
        logger.info("Withdrawal of %s debited from account %s (entry %s)", amount, account_id, entry.id)
        return entry
