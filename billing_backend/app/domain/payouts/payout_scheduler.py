"""
Payout Scheduler (Domain Logic).

Daily D+30 sweep paying streamers their matured call earnings.

Per streamer with eligible earnings:
1. Claim unit: create a PENDING ScheduledPayment, claim the earnings
   (scheduled_payment_id) and hold the amount on the streamer balance with
   a pending `payout` debit. Commit.
2. Call the payout gateway, bounded by a timeout and a circuit breaker.
   Never retried inline; the next sweep picks failed payouts up again.
3. Success unit: payment PAID, earnings paid, hold completed.
   Failure unit: payment FAILED, claims released, hold reversed.

Claimed earnings are invisible to later sweeps, so overlapping or repeated
sweeps never pay the same earning twice.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import (
    AccountBlockedError,
    ConcurrencyConflictError,
    InsufficientFundsError,
)
from billing_backend.app.core.reliability import CircuitBreaker
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.domain.payouts.payout_gateway import PayoutGateway, get_payout_gateway
from billing_backend.app.models.account import Account
from billing_backend.app.models.billing_enums import ScheduledPaymentStatus
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.ledger_enums import EntryKind, EntryStatus
from billing_backend.app.models.scheduled_payment import ScheduledPayment
from billing_backend.app.models.user import User
from billing_backend.app.services.audit import log_event, AuditAction
from billing_backend.app.services.event_outbox import enqueue_event

logger = logging.getLogger(__name__)

payout_breaker = CircuitBreaker(
    failure_threshold=settings.payout_breaker_failure_threshold,
    reset_timeout=settings.payout_breaker_reset_timeout,
)


@dataclass
class PayoutOutcome:
    streamer_id: int
    amount: int
    status: ScheduledPaymentStatus
    payment_id: Optional[int] = None
    reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PayoutSweepResult:
    processed: int = 0
    paid: int = 0
    failed: int = 0
    skipped: int = 0
    total_paid_amount: int = 0
    payouts: List[PayoutOutcome] = field(default_factory=list)


class PayoutScheduler:

    @staticmethod
    def _eligible_filter(cutoff: datetime):
        return (
            LedgerEntry.kind == EntryKind.CALL_EARNING,
            LedgerEntry.status == EntryStatus.COMPLETED,
            LedgerEntry.paid.is_(False),
            LedgerEntry.scheduled_payment_id.is_(None),
            LedgerEntry.created_at <= cutoff,
        )

    @staticmethod
    async def _eligible_streamers(db: AsyncSession, cutoff: datetime) -> List[int]:
        result = await db.execute(
            select(Account.user_id)
            .join(LedgerEntry, LedgerEntry.account_id == Account.id)
            .where(*PayoutScheduler._eligible_filter(cutoff))
            .group_by(Account.user_id)
            .order_by(Account.user_id)
        )
        return [user_id for user_id in result.scalars().all() if user_id is not None]

    @staticmethod
    async def run_payout_sweep(
        db: AsyncSession,
        gateway: Optional[PayoutGateway] = None,
        now: Optional[datetime] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> PayoutSweepResult:
        """
        Pay every streamer their earnings older than the maturation window.

        Args:
            db: Database session; committed once per unit described above
            gateway: Payout gateway, defaults to the configured one
            now: Sweep time, defaults to utcnow
            breaker: Circuit breaker around the gateway

        Returns:
            PayoutSweepResult with one outcome per streamer attempted
        """
        gateway = gateway or get_payout_gateway()
        breaker = breaker or payout_breaker
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=settings.payout_maturation_days)

        streamer_ids = await PayoutScheduler._eligible_streamers(db, cutoff)
        logger.info("Payout sweep at %s: %s streamers with matured earnings", now.isoformat(), len(streamer_ids))

        sweep = PayoutSweepResult()
        for streamer_id in streamer_ids:
            outcome = await PayoutScheduler._pay_streamer(db, streamer_id, cutoff, now, gateway, breaker)
            if outcome is None:
                sweep.skipped += 1
                continue

            sweep.processed += 1
            sweep.payouts.append(outcome)
            if outcome.status == ScheduledPaymentStatus.PAID:
                sweep.paid += 1
                sweep.total_paid_amount += outcome.amount
            else:
                sweep.failed += 1

        logger.info(
            "Payout sweep finished: paid=%s failed=%s skipped=%s total=%s",
            sweep.paid, sweep.failed, sweep.skipped, sweep.total_paid_amount
        )
        return sweep

    @staticmethod
    async def _pay_streamer(
        db: AsyncSession,
        streamer_id: int,
        cutoff: datetime,
        now: datetime,
        gateway: PayoutGateway,
        breaker: CircuitBreaker,
    ) -> Optional[PayoutOutcome]:
        account = await LedgerStore.get_account_for_user(db, streamer_id)
        result = await db.execute(
            select(LedgerEntry.id, LedgerEntry.amount, LedgerEntry.created_at)
            .where(LedgerEntry.account_id == account.id, *PayoutScheduler._eligible_filter(cutoff))
            .order_by(LedgerEntry.id)
        )
        rows = result.all()
        if not rows:
            return None

        entry_ids = [row.id for row in rows]
        refunded = await db.scalar(
            select(func.coalesce(func.sum(func.abs(LedgerEntry.amount)), 0)).where(
                LedgerEntry.related_entry_id.in_(entry_ids),
                LedgerEntry.kind == EntryKind.REFUND,
            )
        )
        amount = sum(row.amount for row in rows) - int(refunded or 0)
        if amount <= 0:
            logger.info("Streamer %s has no payable earnings after refunds", streamer_id)
            return None

        period_start = min(row.created_at for row in rows)
        period_end = max(row.created_at for row in rows)
        streamer = await db.get(User, streamer_id)

        if not streamer.payout_key:
            return await PayoutScheduler._record_unclaimed_failure(
                db, streamer_id, amount, period_start, period_end, now,
                "Streamer has no payout key registered"
            )

        # 1. Claim
        try:
            payment = ScheduledPayment(
                streamer_id=streamer_id,
                amount=amount,
                period_start=period_start,
                period_end=period_end,
                due_date=now,
                status=ScheduledPaymentStatus.PENDING,
            )
            db.add(payment)
            await db.flush()

            claimed = await db.execute(
                update(LedgerEntry)
                .where(
                    LedgerEntry.id.in_(entry_ids),
                    LedgerEntry.scheduled_payment_id.is_(None),
                    LedgerEntry.paid.is_(False),
                )
                .values(scheduled_payment_id=payment.id)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != len(entry_ids):
                raise ConcurrencyConflictError("Earnings claimed by a concurrent sweep")

            hold = await LedgerStore.post_entry(
                db, account.id, -amount, EntryKind.PAYOUT,
                status=EntryStatus.PENDING,
                description=f"D+30 payout {payment.id}",
            )
            payment.hold_entry_id = hold.id
            await db.commit()
        except ConcurrencyConflictError:
            await db.rollback()
            logger.info("Skipping streamer %s: earnings already claimed", streamer_id)
            return None
        except (InsufficientFundsError, AccountBlockedError) as e:
            await db.rollback()
            return await PayoutScheduler._record_unclaimed_failure(
                db, streamer_id, amount, period_start, period_end, now, e.message
            )
        except Exception:
            await db.rollback()
            raise

        payment_id, hold_id = payment.id, hold.id
        memo = f"D+30 earnings payout - streamer {streamer_id}"

        # 2. Transfer
        async def transfer() -> str:
            return await asyncio.wait_for(
                gateway.initiate_transfer(streamer.payout_key, amount, memo),
                timeout=settings.payout_gateway_timeout_seconds,
            )

        try:
            reference = await breaker.call(transfer)
        except asyncio.TimeoutError:
            return await PayoutScheduler._fail_claimed(
                db, payment_id, hold_id, streamer_id, amount, now,
                f"Payout gateway timed out after {settings.payout_gateway_timeout_seconds}s"
            )
        except Exception as e:
            logger.warning("Payout gateway failed for payment %s: %s", payment_id, e)
            message = getattr(e, "message", None) or str(e) or e.__class__.__name__
            return await PayoutScheduler._fail_claimed(db, payment_id, hold_id, streamer_id, amount, now, message)

        # 3. Confirm
        try:
            payment = await db.get(ScheduledPayment, payment_id, populate_existing=True)
            payment.status = ScheduledPaymentStatus.PAID
            payment.payment_reference = reference
            payment.processed_at = now

            await db.execute(
                update(LedgerEntry)
                .where(LedgerEntry.scheduled_payment_id == payment_id)
                .values(paid=True, paid_at=now)
                .execution_options(synchronize_session=False)
            )
            await LedgerStore.complete_entry(db, hold_id)

            await log_event(
                db,
                AuditAction.PAYOUT_PAID,
                target_user_id=streamer_id,
                resource_type="scheduled_payment",
                resource_id=payment_id,
                metadata={"amount": amount, "reference": reference},
            )
            await enqueue_event(db, streamer_id, "payout_processed", {
                "payment_id": payment_id,
                "amount": amount,
                "reference": reference,
                "message": f"Your payout of {amount} was sent",
            })
            await db.commit()
        except Exception:
            await db.rollback()
            # Money left through the gateway; the claim and hold stay in
            # place so the earnings cannot be paid twice.
            logger.critical(
                "Payout %s sent (reference %s) but could not be recorded; needs manual reconciliation",
                payment_id, reference
            )
            raise

        logger.info("Payout %s paid to streamer %s: %s (%s)", payment_id, streamer_id, amount, reference)
        return PayoutOutcome(
            streamer_id=streamer_id,
            amount=amount,
            status=ScheduledPaymentStatus.PAID,
            payment_id=payment_id,
            reference=reference,
        )

    @staticmethod
    async def _fail_claimed(
        db: AsyncSession,
        payment_id: int,
        hold_id: int,
        streamer_id: int,
        amount: int,
        now: datetime,
        error: str,
    ) -> PayoutOutcome:
        """Release the claim and the hold of a payment the gateway did not accept."""
        try:
            payment = await db.get(ScheduledPayment, payment_id, populate_existing=True)
            payment.status = ScheduledPaymentStatus.FAILED
            payment.error_message = error
            payment.processed_at = now

            await db.execute(
                update(LedgerEntry)
                .where(LedgerEntry.scheduled_payment_id == payment_id, LedgerEntry.paid.is_(False))
                .values(scheduled_payment_id=None)
                .execution_options(synchronize_session=False)
            )
            await LedgerStore.reverse_entry(db, hold_id, description=f"Payout {payment_id} failed")

            await PayoutScheduler._log_failure(db, streamer_id, payment_id, amount, error)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.warning("Payout %s to streamer %s failed: %s", payment_id, streamer_id, error)
        return PayoutOutcome(
            streamer_id=streamer_id,
            amount=amount,
            status=ScheduledPaymentStatus.FAILED,
            payment_id=payment_id,
            error=error,
        )

    @staticmethod
    async def _record_unclaimed_failure(
        db: AsyncSession,
        streamer_id: int,
        amount: int,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
        error: str,
    ) -> PayoutOutcome:
        """
        Failed payment that never claimed earnings nor reached the gateway.

        Repeating an earlier such failure for the same earnings only bumps
        its processed_at; no new row, audit entry or event.
        """
        try:
            payment = await db.scalar(
                select(ScheduledPayment)
                .where(
                    ScheduledPayment.streamer_id == streamer_id,
                    ScheduledPayment.status == ScheduledPaymentStatus.FAILED,
                    ScheduledPayment.hold_entry_id.is_(None),
                    ScheduledPayment.amount == amount,
                    ScheduledPayment.period_start == period_start,
                    ScheduledPayment.period_end == period_end,
                    ScheduledPayment.error_message == error,
                )
                .order_by(ScheduledPayment.id.desc())
                .limit(1)
            )
            if payment:
                payment.processed_at = now
                await db.flush()
                logger.info("Payout to streamer %s still failing (payment %s): %s", streamer_id, payment.id, error)
            else:
                payment = ScheduledPayment(
                    streamer_id=streamer_id,
                    amount=amount,
                    period_start=period_start,
                    period_end=period_end,
                    due_date=now,
                    status=ScheduledPaymentStatus.FAILED,
                    error_message=error,
                    processed_at=now,
                )
                db.add(payment)
                await db.flush()
                await PayoutScheduler._log_failure(db, streamer_id, payment.id, amount, error)
                logger.warning("Payout to streamer %s not attempted: %s", streamer_id, error)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        return PayoutOutcome(
            streamer_id=streamer_id,
            amount=amount,
            status=ScheduledPaymentStatus.FAILED,
            payment_id=payment.id,
            error=error,
        )

    @staticmethod
    async def _log_failure(db: AsyncSession, streamer_id: int, payment_id: int, amount: int, error: str) -> None:
        await log_event(
            db,
            AuditAction.PAYOUT_FAILED,
            target_user_id=streamer_id,
            resource_type="scheduled_payment",
            resource_id=payment_id,
            metadata={"amount": amount, "error": error},
        )
        await enqueue_event(db, streamer_id, "payout_failed", {
            "payment_id": payment_id,
            "amount": amount,
            "message": "Your payout could not be sent and will be retried",
        })

    @staticmethod
    async def list_payments(
        db: AsyncSession,
        status: Optional[ScheduledPaymentStatus] = None,
        streamer_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ScheduledPayment]:
        query = select(ScheduledPayment)
        if status:
            query = query.where(ScheduledPayment.status == status)
        if streamer_id:
            query = query.where(ScheduledPayment.streamer_id == streamer_id)
        query = query.order_by(ScheduledPayment.id.desc()).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())
