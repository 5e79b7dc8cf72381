"""
Ledger Store (Domain Logic).

The only writer of Account.balance. Every balance change is mirrored by an
immutable LedgerEntry in the same transaction.

Transactions are owned by the caller: methods here only flush, and the
caller commits once per unit of work (or rolls back on any error), so a
half-applied paired posting is never visible.

Per-account linearizability comes from the guarded debit:

    UPDATE accounts SET balance = balance - :n WHERE id = :id AND balance >= :n

Zero affected rows means the balance was insufficient at the instant of the
update, whatever any earlier read said.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.exceptions import (
    AccountBlockedError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidStateError,
    ResourceNotFoundError,
)
from billing_backend.app.models.account import Account
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.ledger_enums import EntryKind, EntryStatus, DEBIT_KINDS, CREDIT_KINDS

logger = logging.getLogger(__name__)


@dataclass
class Posting:
    """One leg of a paired posting. Amount is signed."""
    account_id: int
    amount: int
    kind: EntryKind
    description: Optional[str] = None


@dataclass
class PairedPosting:
    transfer_id: str
    debit: LedgerEntry
    credits: List[LedgerEntry] = field(default_factory=list)


def validate_amount(amount: int, kind: EntryKind) -> None:
    """Reject zero, non-integer and wrong-sign amounts for a kind."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("Amount must be an integer number of minor units", {"amount": amount})
    if amount == 0:
        raise InvalidAmountError("Amount must be non-zero", {"kind": kind.value})
    if kind in DEBIT_KINDS and amount > 0:
        raise InvalidAmountError(f"{kind.value} entries must be negative", {"amount": amount, "kind": kind.value})
    if kind in CREDIT_KINDS and amount < 0:
        raise InvalidAmountError(f"{kind.value} entries must be positive", {"amount": amount, "kind": kind.value})


class LedgerStore:

    @staticmethod
    async def open_account(db: AsyncSession, user_id: int) -> Account:
        """Return the user's account, creating it on first use."""
        result = await db.execute(select(Account).where(Account.user_id == user_id))
        account = result.scalar_one_or_none()
        if account:
            return account

        account = Account(user_id=user_id, balance=0)
        db.add(account)
        await db.flush()
        return account

    @staticmethod
    async def get_account_for_user(db: AsyncSession, user_id: int) -> Account:
        result = await db.execute(select(Account).where(Account.user_id == user_id))
        account = result.scalar_one_or_none()
        if not account:
            raise ResourceNotFoundError("Account for user", user_id)
        return account

    @staticmethod
    async def get_platform_account(db: AsyncSession) -> Account:
        """Return the single platform account, creating it lazily."""
        result = await db.execute(select(Account).where(Account.is_platform.is_(True)).order_by(Account.id).limit(1))
        account = result.scalar_one_or_none()
        if account:
            return account

        account = Account(user_id=None, balance=0, is_platform=True)
        db.add(account)
        await db.flush()
        logger.info("Created platform account %s", account.id)
        return account

    @staticmethod
    async def get_balance(db: AsyncSession, account_id: int) -> int:
        """Current committed-or-own-transaction balance, read from storage."""
        balance = await db.scalar(select(Account.balance).where(Account.id == account_id))
        if balance is None:
            raise ResourceNotFoundError("Account", account_id)
        return balance

    @staticmethod
    async def is_blocked(db: AsyncSession, account_id: int) -> bool:
        blocked = await db.scalar(select(Account.is_blocked).where(Account.id == account_id))
        if blocked is None:
            raise ResourceNotFoundError("Account", account_id)
        return blocked

    @staticmethod
    async def set_blocked(db: AsyncSession, account_id: int, blocked: bool) -> None:
        result = await db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(is_blocked=blocked)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ResourceNotFoundError("Account", account_id)

    @staticmethod
    async def _apply(
        db: AsyncSession,
        account_id: int,
        amount: int,
        kind: EntryKind,
        status: EntryStatus = EntryStatus.COMPLETED,
        related_entry_id: Optional[int] = None,
        transfer_id: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reserved: int = 0,
    ) -> LedgerEntry:
        # Blocked accounts may only receive reversals
        if kind != EntryKind.REFUND and await LedgerStore.is_blocked(db, account_id):
            raise AccountBlockedError(account_id)

        if amount < 0:
            required = -amount
            result = await db.execute(
                update(Account)
                .where(Account.id == account_id, Account.balance >= required + reserved)
                .values(balance=Account.balance - required)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                balance = await LedgerStore.get_balance(db, account_id)
                raise InsufficientFundsError(account_id, max(balance - reserved, 0), required)
        else:
            result = await db.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(balance=Account.balance + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ResourceNotFoundError("Account", account_id)

        entry = LedgerEntry(
            account_id=account_id,
            amount=amount,
            kind=kind,
            status=status,
            related_entry_id=related_entry_id,
            transfer_id=transfer_id,
            description=description,
            idempotency_key=idempotency_key,
        )
        db.add(entry)
        await db.flush()
        return entry

    @staticmethod
    async def post_entry(
        db: AsyncSession,
        account_id: int,
        amount: int,
        kind: EntryKind,
        related_entry_id: Optional[int] = None,
        description: Optional[str] = None,
        status: EntryStatus = EntryStatus.COMPLETED,
        idempotency_key: Optional[str] = None,
        reserved: int = 0,
    ) -> LedgerEntry:
        """
        Apply a single signed entry to one account.

        A debit must leave at least `reserved` on the balance.

        Raises:
            InvalidAmountError: zero or wrong-sign amount
            AccountBlockedError: account blocked and kind is not refund
            InsufficientFundsError: debit larger than the balance
        """
        validate_amount(amount, kind)
        return await LedgerStore._apply(
            db, account_id, amount, kind,
            status=status,
            related_entry_id=related_entry_id,
            description=description,
            idempotency_key=idempotency_key,
            reserved=reserved,
        )

    @staticmethod
    async def post_paired(
        db: AsyncSession,
        debit: Posting,
        credits: Sequence[Posting],
    ) -> PairedPosting:
        """
        Apply one debit and its credit legs as a single unit.

        Credits may sum to less than the debit magnitude; the difference
        is retained by the platform. The debit is applied first so an
        insufficient balance fails before any credit is written.
        """
        if not credits:
            raise InvalidAmountError("A paired posting needs at least one credit")
        if debit.amount >= 0:
            raise InvalidAmountError("Debit leg must be negative", {"amount": debit.amount})
        validate_amount(debit.amount, debit.kind)
        for credit in credits:
            if credit.amount <= 0:
                raise InvalidAmountError("Credit legs must be positive", {"amount": credit.amount})
            validate_amount(credit.amount, credit.kind)

        credited = sum(c.amount for c in credits)
        if credited > -debit.amount:
            raise InvalidAmountError(
                "Credits exceed debit",
                {"debit": -debit.amount, "credits": credited}
            )

        transfer_id = uuid.uuid4().hex
        debit_entry = await LedgerStore._apply(
            db, debit.account_id, debit.amount, debit.kind,
            transfer_id=transfer_id,
            description=debit.description,
        )

        credit_entries = []
        for credit in credits:
            credit_entries.append(await LedgerStore._apply(
                db, credit.account_id, credit.amount, credit.kind,
                related_entry_id=debit_entry.id,
                transfer_id=transfer_id,
                description=credit.description,
            ))

        debit_entry.related_entry_id = credit_entries[0].id
        await db.flush()

        return PairedPosting(transfer_id=transfer_id, debit=debit_entry, credits=credit_entries)

    @staticmethod
    async def get_entry(db: AsyncSession, entry_id: int, for_update: bool = False) -> LedgerEntry:
        entry = await db.get(LedgerEntry, entry_id, populate_existing=True, with_for_update=for_update)
        if not entry:
            raise ResourceNotFoundError("Ledger entry", entry_id)
        return entry

    @staticmethod
    async def reversed_so_far(db: AsyncSession, entry_id: int) -> int:
        """Magnitude already given back through refunds of this entry."""
        total = await db.scalar(
            select(func.coalesce(func.sum(func.abs(LedgerEntry.amount)), 0)).where(
                LedgerEntry.related_entry_id == entry_id,
                LedgerEntry.kind == EntryKind.REFUND,
            )
        )
        return int(total or 0)

    @staticmethod
    async def find_by_idempotency_key(db: AsyncSession, account_id: int, key: str) -> Optional[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry).where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.idempotency_key == key,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def unsettled_earnings(db: AsyncSession, account_id: int) -> int:
        """
        Call earnings still waiting for a payout, net of their refunds.

        Claimed earnings are excluded: their payout hold already left the
        balance.
        """
        earning_ids = (
            select(LedgerEntry.id)
            .where(
                LedgerEntry.account_id == account_id,
                LedgerEntry.kind == EntryKind.CALL_EARNING,
                LedgerEntry.status == EntryStatus.COMPLETED,
                LedgerEntry.paid.is_(False),
                LedgerEntry.scheduled_payment_id.is_(None),
            )
        )
        earned = await db.scalar(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.id.in_(earning_ids))
        )
        refunded = await db.scalar(
            select(func.coalesce(func.sum(func.abs(LedgerEntry.amount)), 0)).where(
                LedgerEntry.related_entry_id.in_(earning_ids),
                LedgerEntry.kind == EntryKind.REFUND,
            )
        )
        return max(int(earned or 0) - int(refunded or 0), 0)

    @staticmethod
    async def reverse_entry(
        db: AsyncSession,
        entry_id: int,
        amount: Optional[int] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Post a refund undoing all or part of an entry.

        The refund carries the opposite sign of the original and points to
        it. Once the refunded magnitude reaches the original's magnitude,
        the original is marked reversed; a partial refund leaves it as is.

        Raises:
            InvalidStateError: entry already reversed
            InvalidAmountError: amount outside (0, remaining]
        """
        entry = await LedgerStore.get_entry(db, entry_id, for_update=True)
        if entry.status == EntryStatus.REVERSED:
            raise InvalidStateError("Ledger entry", entry.status.value, expected="not reversed",
                                    details={"entry_id": entry_id})

        remaining = abs(entry.amount) - await LedgerStore.reversed_so_far(db, entry.id)
        if amount is None:
            amount = remaining
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0 or amount > remaining:
            raise InvalidAmountError(
                "Reversal amount must be positive and at most the unreversed amount",
                {"amount": amount, "remaining": remaining}
            )

        signed = amount if entry.amount < 0 else -amount
        refund = await LedgerStore._apply(
            db, entry.account_id, signed, EntryKind.REFUND,
            related_entry_id=entry.id,
            transfer_id=entry.transfer_id,
            description=description or f"Reversal of entry {entry.id}",
        )

        if amount == remaining:
            entry.status = EntryStatus.REVERSED
            await db.flush()

        logger.info("Reversed %s of entry %s (refund entry %s)", amount, entry.id, refund.id)
        return refund

    @staticmethod
    async def complete_entry(db: AsyncSession, entry_id: int) -> LedgerEntry:
        """Move a pending entry (a payout hold) to completed."""
        entry = await LedgerStore.get_entry(db, entry_id, for_update=True)
        if entry.status != EntryStatus.PENDING:
            raise InvalidStateError("Ledger entry", entry.status.value, expected=EntryStatus.PENDING.value)
        entry.status = EntryStatus.COMPLETED
        await db.flush()
        return entry

    @staticmethod
    async def list_entries(
        db: AsyncSession,
        account_id: int,
        kind: Optional[EntryKind] = None,
        status: Optional[EntryStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        paid: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LedgerEntry]:
        """Entries of one account, newest first."""
        query = select(LedgerEntry).where(LedgerEntry.account_id == account_id)

        if kind:
            query = query.where(LedgerEntry.kind == kind)
        if status:
            query = query.where(LedgerEntry.status == status)
        if since:
            query = query.where(LedgerEntry.created_at >= since)
        if until:
            query = query.where(LedgerEntry.created_at < until)
        if paid is not None:
            query = query.where(LedgerEntry.paid.is_(paid))

        query = query.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())
