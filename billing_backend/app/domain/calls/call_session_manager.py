"""
Call Session Manager (Domain Logic).

Owns the call state machine and settles ended calls through the Ledger
Store.

    PENDING -> ACTIVE -> ENDED
    PENDING -> CANCELLED

Every transition is a compare-and-swap on `status`, so concurrent or
retried requests apply a transition at most once. Ending an already ended
call returns the stored settlement without posting anything.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import (
    AccountBlockedError,
    ConcurrencyConflictError,
    InsufficientFundsError,
    InvalidStateError,
    ResourceNotFoundError,
    ValidationError,
)
from billing_backend.app.core.reliability import RetryConfig, retry_async
from billing_backend.app.domain.billing.billing_meter import BillingMeter
from billing_backend.app.domain.fraud.fraud_engine import FraudEngine
from billing_backend.app.domain.ledger.ledger_store import LedgerStore, Posting, PairedPosting
from billing_backend.app.models.call import Call
from billing_backend.app.models.call_enums import CallStatus
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.models.user import User
from billing_backend.app.services.event_outbox import enqueue_event

logger = logging.getLogger(__name__)


@dataclass
class CallSettlement:
    call_id: int
    duration_seconds: int
    total_cost: int
    settled_amount: int
    insufficient_settlement: bool
    payment_entry_id: Optional[int] = None
    earning_entry_id: Optional[int] = None
    already_settled: bool = False
    settlement_parked: bool = False

    @classmethod
    def from_call(cls, call: Call, already_settled: bool = False) -> "CallSettlement":
        return cls(
            call_id=call.id,
            duration_seconds=call.duration_seconds or 0,
            total_cost=call.total_cost or 0,
            settled_amount=call.settled_amount or 0,
            insufficient_settlement=not call.settlement_parked and (call.settled_amount or 0) < (call.total_cost or 0),
            payment_entry_id=call.payment_entry_id,
            earning_entry_id=call.earning_entry_id,
            already_settled=already_settled,
            settlement_parked=bool(call.settlement_parked),
        )


@dataclass
class LiveMeter:
    call_id: int
    status: CallStatus
    duration_seconds: int
    billed_minutes: int
    current_cost: int
    viewer_balance: int
    affordable_seconds: int
    remaining_seconds: int


def ledger_retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.ledger_max_retries,
        base_delay=settings.ledger_retry_base_delay,
        retryable_exceptions=(ConcurrencyConflictError,),
    )


class CallSessionManager:

    @staticmethod
    async def get_call(db: AsyncSession, call_id: int) -> Call:
        call = await db.get(Call, call_id, populate_existing=True)
        if not call:
            raise ResourceNotFoundError("Call", call_id)
        return call

    @staticmethod
    async def _swap_status(db: AsyncSession, call_id: int, expected: CallStatus, **values) -> bool:
        result = await db.execute(
            update(Call)
            .where(Call.id == call_id, Call.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def create_call(db: AsyncSession, viewer_id: int, streamer_id: int, rate_per_minute: int) -> Call:
        """
        Request a call with a streamer at a fixed per-minute rate.

        Raises:
            ValidationError: bad rate, self-call or callee is not a streamer
        """
        if isinstance(rate_per_minute, bool) or not isinstance(rate_per_minute, int) or rate_per_minute <= 0:
            raise ValidationError("rate_per_minute must be a positive integer", details={"rate_per_minute": rate_per_minute})
        if viewer_id == streamer_id:
            raise ValidationError("Cannot call yourself")

        streamer = await db.get(User, streamer_id)
        if not streamer or not streamer.is_active:
            raise ResourceNotFoundError("Streamer", streamer_id)
        if streamer.role != UserRole.STREAMER:
            raise ValidationError("Callee is not a streamer", details={"user_id": streamer_id})

        try:
            await LedgerStore.open_account(db, viewer_id)
            await LedgerStore.open_account(db, streamer_id)

            call = Call(
                viewer_id=viewer_id,
                streamer_id=streamer_id,
                rate_per_minute=rate_per_minute,
                status=CallStatus.PENDING,
            )
            db.add(call)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Call %s requested: viewer=%s streamer=%s rate=%s", call.id, viewer_id, streamer_id, rate_per_minute)
        return call

    @staticmethod
    async def start_call(db: AsyncSession, call_id: int, now: Optional[datetime] = None) -> Call:
        """
        Activate a pending call and start the meter.

        The viewer must be unblocked and able to pay for the first minute.
        """
        call = await CallSessionManager.get_call(db, call_id)
        if call.status != CallStatus.PENDING:
            raise InvalidStateError("Call", call.status.value, expected=CallStatus.PENDING.value)

        viewer_account = await LedgerStore.get_account_for_user(db, call.viewer_id)
        if await LedgerStore.is_blocked(db, viewer_account.id):
            raise AccountBlockedError(viewer_account.id)
        balance = await LedgerStore.get_balance(db, viewer_account.id)
        if balance < call.rate_per_minute:
            raise InsufficientFundsError(viewer_account.id, balance, call.rate_per_minute)

        now = now or datetime.utcnow()
        try:
            if not await CallSessionManager._swap_status(
                db, call_id, CallStatus.PENDING, status=CallStatus.ACTIVE, started_at=now
            ):
                raise InvalidStateError("Call", "no longer pending", expected=CallStatus.PENDING.value)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Call %s started at %s", call_id, now.isoformat())
        return await CallSessionManager.get_call(db, call_id)

    @staticmethod
    async def cancel_call(db: AsyncSession, call_id: int) -> Call:
        call = await CallSessionManager.get_call(db, call_id)
        if call.status != CallStatus.PENDING:
            raise InvalidStateError("Call", call.status.value, expected=CallStatus.PENDING.value)

        try:
            if not await CallSessionManager._swap_status(db, call_id, CallStatus.PENDING, status=CallStatus.CANCELLED):
                raise InvalidStateError("Call", "no longer pending", expected=CallStatus.PENDING.value)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Call %s cancelled", call_id)
        return await CallSessionManager.get_call(db, call_id)

    @staticmethod
    async def end_call(db: AsyncSession, call_id: int, now: Optional[datetime] = None) -> CallSettlement:
        """
        Stop the meter and settle the call.

        Flow:
        1. Ended already -> return the stored settlement
        2. Compare-and-swap ACTIVE -> ENDED
        3. Post the viewer debit / streamer credit pair for the metered cost
        4. If the viewer cannot cover it, charge what is available
           (re-read and retried on a lost race) and flag the shortfall
        5. Enqueue call_settled events
        All of 2-5 commit together.

        When either party is blocked the call still ends and its cost is
        frozen, but 3-5 are parked until the block is lifted
        (see settle_parked_calls).

        Returns:
            CallSettlement
        """
        call = await CallSessionManager.get_call(db, call_id)
        if call.status == CallStatus.ENDED:
            return CallSettlement.from_call(call, already_settled=True)
        if call.status != CallStatus.ACTIVE:
            raise InvalidStateError("Call", call.status.value, expected=CallStatus.ACTIVE.value)

        now = now or datetime.utcnow()
        reading = BillingMeter.compute_cost(call.started_at, now, call.rate_per_minute)

        try:
            swapped = await CallSessionManager._swap_status(
                db, call_id, CallStatus.ACTIVE,
                status=CallStatus.ENDED,
                ended_at=now,
                duration_seconds=reading.duration_seconds,
                total_cost=reading.total_cost,
            )
            if not swapped:
                # Another request ended it first
                await db.rollback()
                call = await CallSessionManager.get_call(db, call_id)
                if call.status == CallStatus.ENDED:
                    return CallSettlement.from_call(call, already_settled=True)
                raise InvalidStateError("Call", call.status.value, expected=CallStatus.ACTIVE.value)

            call.status = CallStatus.ENDED
            call.ended_at = now
            call.duration_seconds = reading.duration_seconds
            call.total_cost = reading.total_cost

            if await CallSessionManager._party_blocked(db, call):
                call.settled_amount = 0
                call.settlement_parked = True
                await db.flush()
                logger.warning("Call %s ended with a blocked party; settlement of %s parked", call_id, reading.total_cost)
            else:
                await CallSessionManager._record_settlement(db, call)

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Call %s ended: %ss, cost=%s, settled=%s",
            call_id, reading.duration_seconds, reading.total_cost, call.settled_amount
        )
        return CallSettlement.from_call(call)

    @staticmethod
    async def _party_blocked(db: AsyncSession, call: Call) -> bool:
        for user_id in (call.viewer_id, call.streamer_id):
            account = await LedgerStore.get_account_for_user(db, user_id)
            if await LedgerStore.is_blocked(db, account.id):
                return True
        return False

    @staticmethod
    async def _record_settlement(db: AsyncSession, call: Call) -> None:
        """Post the settlement of an ended call, flag a shortfall and notify both parties. Flushes only."""
        viewer_account = await LedgerStore.get_account_for_user(db, call.viewer_id)
        streamer_account = await LedgerStore.get_account_for_user(db, call.streamer_id)

        paired = None
        if call.total_cost > 0:
            paired = await CallSessionManager._settle(
                db, call.id, viewer_account.id, streamer_account.id, call.total_cost
            )

        settled = -paired.debit.amount if paired else 0
        call.settled_amount = settled
        call.settlement_parked = False
        call.payment_entry_id = paired.debit.id if paired else None
        call.earning_entry_id = paired.credits[0].id if paired else None
        await db.flush()

        if settled < call.total_cost:
            logger.warning(
                "Call %s settled %s of %s: viewer balance insufficient",
                call.id, settled, call.total_cost
            )
            await FraudEngine.apply_signals(
                db, call.viewer_id,
                [FraudEngine.insufficient_settlement_signal(call.id, call.total_cost, settled)]
            )

        payload = {
            "call_id": call.id,
            "duration_seconds": call.duration_seconds,
            "total_cost": call.total_cost,
            "settled_amount": settled,
        }
        await enqueue_event(db, call.viewer_id, "call_settled",
                            {**payload, "message": f"Your call was charged {settled}"})
        await enqueue_event(db, call.streamer_id, "call_settled",
                            {**payload, "message": f"You earned {settled} from a call"})

    @staticmethod
    async def settle_parked_call(db: AsyncSession, call_id: int) -> CallSettlement:
        """
        Settle a call that ended while a party was blocked.

        Raises:
            InvalidStateError: call not ended or nothing parked
            AccountBlockedError: a party is still blocked
        """
        call = await CallSessionManager.get_call(db, call_id)
        if call.status != CallStatus.ENDED or not call.settlement_parked:
            raise InvalidStateError("Call", call.status.value, expected="ended with a parked settlement")

        try:
            result = await db.execute(
                update(Call)
                .where(Call.id == call_id, Call.settlement_parked.is_(True))
                .values(settlement_parked=False)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise InvalidStateError("Call", "settled", expected="ended with a parked settlement")

            await CallSessionManager._record_settlement(db, call)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Parked call %s settled %s of %s", call_id, call.settled_amount, call.total_cost)
        return CallSettlement.from_call(call)

    @staticmethod
    async def settle_parked_calls(db: AsyncSession, user_id: int) -> List[CallSettlement]:
        """Settle every parked call of a user whose parties are all unblocked now."""
        result = await db.execute(
            select(Call.id)
            .where(
                Call.settlement_parked.is_(True),
                or_(Call.viewer_id == user_id, Call.streamer_id == user_id),
            )
            .order_by(Call.id)
        )
        settlements = []
        for call_id in result.scalars().all():
            try:
                settlements.append(await CallSessionManager.settle_parked_call(db, call_id))
            except AccountBlockedError as e:
                logger.info("Parked call %s still waiting: %s", call_id, e.message)
        return settlements

    @staticmethod
    async def _settle(
        db: AsyncSession,
        call_id: int,
        viewer_account_id: int,
        streamer_account_id: int,
        total_cost: int,
    ) -> Optional[PairedPosting]:
        """Charge the full cost, falling back to whatever the viewer holds."""
        try:
            return await LedgerStore.post_paired(
                db,
                Posting(viewer_account_id, -total_cost, EntryKind.CALL_PAYMENT, f"Call {call_id}"),
                [Posting(streamer_account_id, total_cost, EntryKind.CALL_EARNING, f"Call {call_id}")],
            )
        except InsufficientFundsError:
            pass

        async def settle_available() -> Optional[PairedPosting]:
            available = min(await LedgerStore.get_balance(db, viewer_account_id), total_cost)
            if available <= 0:
                return None
            try:
                return await LedgerStore.post_paired(
                    db,
                    Posting(viewer_account_id, -available, EntryKind.CALL_PAYMENT, f"Call {call_id} (partial)"),
                    [Posting(streamer_account_id, available, EntryKind.CALL_EARNING, f"Call {call_id} (partial)")],
                )
            except InsufficientFundsError as e:
                raise ConcurrencyConflictError(details={"call_id": call_id}) from e

        return await retry_async(settle_available, ledger_retry_config())

    @staticmethod
    async def get_live_meter(db: AsyncSession, call_id: int, now: Optional[datetime] = None) -> LiveMeter:
        """Running cost of a call plus how long the viewer can keep paying."""
        call = await CallSessionManager.get_call(db, call_id)
        viewer_account = await LedgerStore.get_account_for_user(db, call.viewer_id)
        balance = await LedgerStore.get_balance(db, viewer_account.id)
        affordable = BillingMeter.affordable_seconds(balance, call.rate_per_minute)

        if call.status == CallStatus.ACTIVE:
            reading = BillingMeter.compute_cost(call.started_at, now or datetime.utcnow(), call.rate_per_minute)
            duration, minutes, cost = reading.duration_seconds, reading.billed_minutes, reading.total_cost
        else:
            duration = call.duration_seconds or 0
            minutes = BillingMeter.billed_minutes(duration)
            cost = call.total_cost or 0

        remaining = max(0, affordable - duration) if call.status == CallStatus.ACTIVE else 0
        return LiveMeter(
            call_id=call.id,
            status=call.status,
            duration_seconds=duration,
            billed_minutes=minutes,
            current_cost=cost,
            viewer_balance=balance,
            affordable_seconds=affordable,
            remaining_seconds=remaining,
        )
