"""
Chargeback Resolver (Domain Logic).

Disputes against historical ledger entries and their resolution:

    PENDING -> INVESTIGATING -> ACCEPTED | REJECTED

refund:  full reversal of the disputed entry, ACCEPTED
partial: refund of 0 < amount < disputed amount, ACCEPTED
keep:    no ledger change, REJECTED

Refunding a debit that paid for a call or a gift also claws back the
credit legs of the same transfer, in proportion and as far as the credited
balances allow.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.exceptions import (
    InvalidAmountError,
    InvalidStateError,
    ResourceNotFoundError,
    ValidationError,
)
from billing_backend.app.domain.fraud.fraud_engine import FraudEngine
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.models.account import Account
from billing_backend.app.models.billing_enums import (
    ChargebackDecision,
    ChargebackStatus,
    OPEN_CHARGEBACK_STATUSES,
)
from billing_backend.app.models.chargeback import Chargeback
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.ledger_enums import EntryKind, EntryStatus
from billing_backend.app.services.audit import log_event, AuditAction
from billing_backend.app.services.event_outbox import enqueue_event

logger = logging.getLogger(__name__)


class ChargebackResolver:

    @staticmethod
    async def get_chargeback(db: AsyncSession, chargeback_id: int) -> Chargeback:
        chargeback = await db.get(Chargeback, chargeback_id, populate_existing=True)
        if not chargeback:
            raise ResourceNotFoundError("Chargeback", chargeback_id)
        return chargeback

    @staticmethod
    async def file_chargeback(
        db: AsyncSession,
        entry_id: int,
        reason: str,
        actor_id: Optional[int] = None,
        external_reference: Optional[str] = None,
    ) -> Chargeback:
        """
        Open a dispute against a ledger entry.

        The disputing user is the owner of the entry's account. Filing
        feeds the user's chargeback history into the fraud engine.

        Raises:
            ResourceNotFoundError: unknown entry
            ValidationError: entry belongs to the platform account
            InvalidStateError: entry already reversed or already disputed
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")

        entry = await LedgerStore.get_entry(db, entry_id)
        if entry.status == EntryStatus.REVERSED:
            raise InvalidStateError("Ledger entry", entry.status.value, expected="not reversed")

        account = await db.get(Account, entry.account_id)
        if account.user_id is None:
            raise ValidationError("Platform entries cannot be disputed", details={"entry_id": entry_id})

        open_dispute = await db.scalar(
            select(Chargeback.id).where(
                Chargeback.transaction_id == entry_id,
                Chargeback.status.in_(OPEN_CHARGEBACK_STATUSES),
            )
        )
        if open_dispute:
            raise InvalidStateError("Ledger entry", "already disputed",
                                    details={"chargeback_id": open_dispute})

        try:
            chargeback = Chargeback(
                transaction_id=entry.id,
                user_id=account.user_id,
                amount=abs(entry.amount),
                reason=reason.strip(),
                status=ChargebackStatus.PENDING,
                external_reference=external_reference,
            )
            db.add(chargeback)
            await db.flush()

            signal = await FraudEngine.check_chargeback_history(db, account.user_id)
            if signal:
                await FraudEngine.apply_signals(db, account.user_id, [signal])

            await log_event(
                db,
                AuditAction.CHARGEBACK_FILED,
                actor_id=actor_id,
                target_user_id=account.user_id,
                resource_type="chargeback",
                resource_id=chargeback.id,
                metadata={"entry_id": entry.id, "amount": chargeback.amount},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Chargeback %s filed against entry %s for %s", chargeback.id, entry.id, chargeback.amount)
        return chargeback

    @staticmethod
    async def start_investigation(db: AsyncSession, chargeback_id: int, reviewer_id: int) -> Chargeback:
        chargeback = await ChargebackResolver.get_chargeback(db, chargeback_id)
        if chargeback.status != ChargebackStatus.PENDING:
            raise InvalidStateError("Chargeback", chargeback.status.value, expected=ChargebackStatus.PENDING.value)

        try:
            result = await db.execute(
                update(Chargeback)
                .where(Chargeback.id == chargeback_id, Chargeback.status == ChargebackStatus.PENDING)
                .values(status=ChargebackStatus.INVESTIGATING)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError("Chargeback", "no longer pending", expected=ChargebackStatus.PENDING.value)

            await log_event(
                db,
                AuditAction.CHARGEBACK_INVESTIGATING,
                actor_id=reviewer_id,
                target_user_id=chargeback.user_id,
                resource_type="chargeback",
                resource_id=chargeback.id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        return await ChargebackResolver.get_chargeback(db, chargeback_id)

    @staticmethod
    async def _claw_back(
        db: AsyncSession, chargeback: Chargeback, disputed: LedgerEntry, refunded: int
    ) -> Tuple[int, int]:
        """
        Reverse the credit legs of a refunded debit in proportion to the refund.

        Each leg gives back refunded * leg / debit, limited to what is left
        of the leg and to its account's balance. Returns (recovered,
        unrecovered); the unrecovered part is absorbed by the platform.
        """
        if disputed.amount >= 0 or not disputed.transfer_id:
            return 0, 0

        result = await db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.transfer_id == disputed.transfer_id,
                LedgerEntry.id != disputed.id,
                LedgerEntry.kind != EntryKind.REFUND,
                LedgerEntry.amount > 0,
            )
            .order_by(LedgerEntry.id)
        )
        recovered = unrecovered = 0
        for leg in result.scalars().all():
            share = refunded * leg.amount // -disputed.amount
            target = min(share, leg.amount - await LedgerStore.reversed_so_far(db, leg.id))
            if target <= 0:
                continue
            amount = min(target, await LedgerStore.get_balance(db, leg.account_id))
            if amount > 0:
                await LedgerStore.reverse_entry(
                    db, leg.id, amount=amount,
                    description=f"Chargeback {chargeback.id} clawback"
                )
            recovered += amount
            unrecovered += target - amount

        if unrecovered:
            logger.warning("Chargeback %s: %s could not be clawed back", chargeback.id, unrecovered)
        return recovered, unrecovered

    @staticmethod
    async def decide_chargeback(
        db: AsyncSession,
        chargeback_id: int,
        decision: ChargebackDecision,
        notes: Optional[str],
        reviewer_id: int,
        partial_amount: Optional[int] = None,
    ) -> Chargeback:
        """
        Resolve an open chargeback.

        The status change is a compare-and-swap from an open status, so two
        operators deciding at once resolve it only once.

        Raises:
            InvalidStateError: chargeback already resolved
            InvalidAmountError: partial amount missing or not in (0, amount)
        """
        chargeback = await ChargebackResolver.get_chargeback(db, chargeback_id)
        if chargeback.status not in OPEN_CHARGEBACK_STATUSES:
            raise InvalidStateError("Chargeback", chargeback.status.value, expected="pending or investigating")

        if decision == ChargebackDecision.PARTIAL:
            if (
                partial_amount is None
                or isinstance(partial_amount, bool)
                or not isinstance(partial_amount, int)
                or not 0 < partial_amount < chargeback.amount
            ):
                raise InvalidAmountError(
                    "Partial refund must be between zero and the disputed amount",
                    {"partial_amount": partial_amount, "amount": chargeback.amount}
                )

        new_status = ChargebackStatus.REJECTED if decision == ChargebackDecision.KEEP else ChargebackStatus.ACCEPTED
        now = datetime.utcnow()

        try:
            result = await db.execute(
                update(Chargeback)
                .where(Chargeback.id == chargeback_id, Chargeback.status.in_(OPEN_CHARGEBACK_STATUSES))
                .values(status=new_status)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError("Chargeback", "already resolved", expected="pending or investigating")

            refund = None
            if decision == ChargebackDecision.REFUND:
                refund = await LedgerStore.reverse_entry(
                    db, chargeback.transaction_id,
                    description=f"Chargeback {chargeback.id} refund"
                )
            elif decision == ChargebackDecision.PARTIAL:
                refund = await LedgerStore.reverse_entry(
                    db, chargeback.transaction_id, amount=partial_amount,
                    description=f"Chargeback {chargeback.id} partial refund"
                )

            recovered = unrecovered = 0
            if refund:
                disputed = await LedgerStore.get_entry(db, chargeback.transaction_id)
                recovered, unrecovered = await ChargebackResolver._claw_back(
                    db, chargeback, disputed, abs(refund.amount)
                )

            chargeback.status = new_status
            chargeback.admin_decision = decision
            chargeback.admin_notes = notes
            chargeback.refunded_amount = abs(refund.amount) if refund else 0
            chargeback.reversal_entry_id = refund.id if refund else None
            chargeback.recovered_amount = recovered
            chargeback.unrecovered_amount = unrecovered
            chargeback.resolved_by = reviewer_id
            chargeback.resolved_at = now
            await db.flush()

            await log_event(
                db,
                AuditAction.CHARGEBACK_DECIDED,
                actor_id=reviewer_id,
                target_user_id=chargeback.user_id,
                resource_type="chargeback",
                resource_id=chargeback.id,
                metadata={
                    "decision": decision.value,
                    "amount": chargeback.amount,
                    "refunded_amount": chargeback.refunded_amount,
                    "recovered_amount": recovered,
                    "unrecovered_amount": unrecovered,
                },
            )
            await enqueue_event(db, chargeback.user_id, "chargeback_resolved", {
                "chargeback_id": chargeback.id,
                "decision": decision.value,
                "status": new_status.value,
                "refunded_amount": chargeback.refunded_amount,
                "message": f"Your dispute was {new_status.value}",
            })
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Chargeback %s resolved: %s (refunded %s)", chargeback.id, decision.value, chargeback.refunded_amount)
        return chargeback

    @staticmethod
    async def list_chargebacks(
        db: AsyncSession,
        status: Optional[ChargebackStatus] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Chargeback]:
        query = select(Chargeback)
        if status:
            query = query.where(Chargeback.status == status)
        if user_id:
            query = query.where(Chargeback.user_id == user_id)
        query = query.order_by(Chargeback.created_at.desc(), Chargeback.id.desc()).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def get_stats(db: AsyncSession) -> Dict[str, Any]:
        """Count and amount per status, plus the total refunded."""
        result = await db.execute(
            select(
                Chargeback.status,
                func.count(Chargeback.id),
                func.coalesce(func.sum(Chargeback.amount), 0),
            ).group_by(Chargeback.status)
        )
        by_status = {
            status.value: {"count": count, "total_amount": int(total)}
            for status, count, total in result.all()
        }
        refunded, unrecovered = (await db.execute(
            select(
                func.coalesce(func.sum(Chargeback.refunded_amount), 0),
                func.coalesce(func.sum(Chargeback.unrecovered_amount), 0),
            )
        )).one()
        return {
            "by_status": by_status,
            "total_refunded": int(refunded or 0),
            "total_unrecovered": int(unrecovered or 0),
        }
