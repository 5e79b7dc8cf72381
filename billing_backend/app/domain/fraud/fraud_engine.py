"""
Fraud Signal Engine (Domain Logic).

Heuristic checks run synchronously before sensitive money movement. Each
check that fires becomes a persisted FraudFlag; the flags of one assessment
are scored and turned into a recommendation:

    score = sum(severity weights), capped at 100
    allow < review_threshold <= review < block_threshold <= block

A `block` recommendation force-blocks the account when auto-blocking is
enabled. Assessments commit on their own so flags survive a failure of the
operation that triggered them.

Velocity heuristics read per-account rolling windows kept in Redis
(see services/rolling_counter.py).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import InvalidStateError, ResourceNotFoundError
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.models.chargeback import Chargeback
from billing_backend.app.models.fraud_enums import (
    FlagType,
    Recommendation,
    ReviewAction,
    Severity,
    SEVERITY_ORDER,
    SEVERITY_WEIGHTS,
)
from billing_backend.app.models.fraud_flag import FraudFlag
from billing_backend.app.models.user import User
from billing_backend.app.services.audit import log_event, AuditAction
from billing_backend.app.services.rolling_counter import RollingWindowCounter, CounterMetric, WindowStats

logger = logging.getLogger(__name__)


@dataclass
class FlagSignal:
    """A heuristic that fired, before it is persisted."""
    flag_type: FlagType
    severity: Severity
    description: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FraudAssessment:
    user_id: int
    score: int
    recommendation: Recommendation
    flags: List[FraudFlag] = field(default_factory=list)
    blocked: bool = False


def severity_for_overshoot(observed: float, threshold: float, floor: Severity = Severity.LOW) -> Severity:
    """
    Map how far an observation overshoots its threshold to a severity.

    ratio >= 4 -> critical, >= 2 -> high, >= 1.5 -> medium, otherwise low.
    Never returns less than `floor`.
    """
    ratio = observed / threshold if threshold > 0 else float("inf")
    if ratio >= 4:
        severity = Severity.CRITICAL
    elif ratio >= 2:
        severity = Severity.HIGH
    elif ratio >= 1.5:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return max(severity, floor, key=SEVERITY_ORDER.index)


def score_severities(severities: List[Severity]) -> int:
    return min(100, sum(SEVERITY_WEIGHTS[s] for s in severities))


def recommend(score: int) -> Recommendation:
    if score >= settings.fraud_block_threshold:
        return Recommendation.BLOCK
    if score >= settings.fraud_review_threshold:
        return Recommendation.REVIEW
    return Recommendation.ALLOW


class FraudEngine:

    @staticmethod
    async def read_window(
        counter: RollingWindowCounter, account_id: int, metric: str, window_seconds: int, now: datetime
    ) -> WindowStats:
        """Rolling window stats, empty when the counter store is unreachable."""
        try:
            return await counter.window(account_id, metric, window_seconds, now)
        except Exception:
            logger.exception("Failed to read %s window for account %s; treating it as empty", metric, account_id)
            return WindowStats()

    # ---------------------------------------------------------------- checks

    @staticmethod
    async def check_withdrawal_velocity(
        counter: RollingWindowCounter, account_id: int, amount: int, now: datetime
    ) -> Optional[FlagSignal]:
        stats = await FraudEngine.read_window(
            counter, account_id, CounterMetric.WITHDRAWAL, settings.fraud_withdrawal_window_seconds, now
        )
        count = stats.count + 1
        total = stats.total + amount

        severities = []
        if count > settings.fraud_max_withdrawals_per_window:
            severities.append(severity_for_overshoot(count, settings.fraud_max_withdrawals_per_window))
        if total > settings.fraud_max_withdrawal_amount_per_window:
            severities.append(severity_for_overshoot(total, settings.fraud_max_withdrawal_amount_per_window))
        if not severities:
            return None

        return FlagSignal(
            flag_type=FlagType.WITHDRAWAL_VELOCITY,
            severity=max(severities, key=SEVERITY_ORDER.index),
            description=f"{count} withdrawals totaling {total} in the last {settings.fraud_withdrawal_window_seconds}s",
            details={"count": count, "total": total},
        )

    @staticmethod
    async def check_immediate_withdrawal(
        counter: RollingWindowCounter, account_id: int, now: datetime
    ) -> Optional[FlagSignal]:
        stats = await FraudEngine.read_window(
            counter, account_id, CounterMetric.DEPOSIT, settings.fraud_immediate_withdrawal_seconds, now
        )
        if stats.count == 0:
            return None
        return FlagSignal(
            flag_type=FlagType.IMMEDIATE_WITHDRAWAL,
            severity=Severity.CRITICAL,
            description=f"Withdrawal requested within {settings.fraud_immediate_withdrawal_seconds // 60} minutes of a deposit",
            details={"recent_deposits": stats.count, "recent_deposit_total": stats.total},
        )

    @staticmethod
    async def check_rapid_deposits(
        counter: RollingWindowCounter, account_id: int, now: datetime
    ) -> Optional[FlagSignal]:
        stats = await FraudEngine.read_window(
            counter, account_id, CounterMetric.DEPOSIT, settings.fraud_rapid_deposit_window_seconds, now
        )
        count = stats.count + 1
        if count < settings.fraud_rapid_deposit_count:
            return None
        return FlagSignal(
            flag_type=FlagType.RAPID_DEPOSITS,
            severity=severity_for_overshoot(count, settings.fraud_rapid_deposit_count, floor=Severity.MEDIUM),
            description=f"{count} deposits in {settings.fraud_rapid_deposit_window_seconds} seconds",
            details={"count": count},
        )

    @staticmethod
    async def check_new_account_high_deposit(
        counter: RollingWindowCounter, user: User, account_id: int, amount: int, now: datetime
    ) -> Optional[FlagSignal]:
        window = settings.fraud_new_account_days * 86400
        if user.created_at is None or now - user.created_at >= timedelta(seconds=window):
            return None

        stats = await FraudEngine.read_window(
            counter, account_id, CounterMetric.DEPOSIT, window, now
        )
        total = stats.total + amount
        if total <= settings.fraud_new_account_deposit_threshold:
            return None

        age_days = (now - user.created_at).days
        return FlagSignal(
            flag_type=FlagType.NEW_ACCOUNT_HIGH_DEPOSIT,
            severity=severity_for_overshoot(total, settings.fraud_new_account_deposit_threshold, floor=Severity.HIGH),
            description=f"New account ({age_days} days) with {total} deposited",
            details={"account_age_days": age_days, "total_deposits": total},
        )

    @staticmethod
    def check_large_gift(amount: int) -> Optional[FlagSignal]:
        if amount < settings.fraud_large_gift_threshold:
            return None
        return FlagSignal(
            flag_type=FlagType.LARGE_GIFT,
            severity=severity_for_overshoot(amount, settings.fraud_large_gift_threshold),
            description=f"Gift of {amount} at or above the large gift threshold",
            details={"amount": amount, "threshold": settings.fraud_large_gift_threshold},
        )

    @staticmethod
    async def check_chargeback_history(db: AsyncSession, user_id: int) -> Optional[FlagSignal]:
        result = await db.execute(
            select(func.count(Chargeback.id), func.coalesce(func.sum(Chargeback.amount), 0))
            .where(Chargeback.user_id == user_id)
        )
        count, total = result.one()
        if count == 0:
            return None

        if count >= 3:
            severity = Severity.CRITICAL
        elif count >= 2:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        return FlagSignal(
            flag_type=FlagType.CHARGEBACK_HISTORY,
            severity=severity,
            description=f"{count} chargebacks totaling {total}",
            details={"chargeback_count": count, "total_amount": int(total)},
        )

    @staticmethod
    def insufficient_settlement_signal(call_id: int, total_cost: int, settled: int) -> FlagSignal:
        return FlagSignal(
            flag_type=FlagType.INSUFFICIENT_SETTLEMENT,
            severity=Severity.HIGH if settled == 0 else Severity.MEDIUM,
            description=f"Call {call_id} settled {settled} of {total_cost}",
            details={"call_id": call_id, "total_cost": total_cost, "settled": settled},
        )

    # ----------------------------------------------------------- assessment

    @staticmethod
    async def apply_signals(
        db: AsyncSession,
        user_id: int,
        signals: List[FlagSignal],
    ) -> FraudAssessment:
        """
        Persist fired signals as flags and act on the recommendation.

        Flushes only; the caller decides where the unit of work ends.
        """
        flags = []
        for signal in signals:
            flag = FraudFlag(
                user_id=user_id,
                flag_type=signal.flag_type,
                severity=signal.severity,
                description=signal.description[:255],
                details=signal.details,
                auto_generated=True,
            )
            db.add(flag)
            flags.append(flag)

        score = score_severities([s.severity for s in signals])
        assessment = FraudAssessment(
            user_id=user_id,
            score=score,
            recommendation=recommend(score),
            flags=flags,
        )

        if assessment.recommendation == Recommendation.BLOCK and settings.fraud_auto_block_enabled:
            account = await LedgerStore.get_account_for_user(db, user_id)
            await LedgerStore.set_blocked(db, account.id, True)
            assessment.blocked = True
            await log_event(
                db,
                AuditAction.ACCOUNT_AUTO_BLOCKED,
                target_user_id=user_id,
                resource_type="account",
                resource_id=account.id,
                metadata={"score": score, "flags": [s.flag_type.value for s in signals]},
            )
            logger.warning("Account %s auto-blocked (user %s, score %s)", account.id, user_id, score)

        await db.flush()
        if signals:
            logger.info(
                "Fraud assessment for user %s: score=%s recommendation=%s flags=%s",
                user_id, score, assessment.recommendation.value, [s.flag_type.value for s in signals]
            )
        return assessment

    @staticmethod
    async def _commit_assessment(db: AsyncSession, user_id: int, signals: List[FlagSignal]) -> FraudAssessment:
        try:
            assessment = await FraudEngine.apply_signals(db, user_id, signals)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return assessment

    @staticmethod
    async def assess_withdrawal(
        db: AsyncSession,
        user_id: int,
        amount: int,
        now: Optional[datetime] = None,
        counter: Optional[RollingWindowCounter] = None,
    ) -> FraudAssessment:
        """Pre-check for a withdrawal of `amount` (positive magnitude)."""
        now = now or datetime.utcnow()
        counter = counter or RollingWindowCounter()
        account = await LedgerStore.get_account_for_user(db, user_id)

        signals = [
            s for s in (
                await FraudEngine.check_withdrawal_velocity(counter, account.id, amount, now),
                await FraudEngine.check_immediate_withdrawal(counter, account.id, now),
            ) if s
        ]
        return await FraudEngine._commit_assessment(db, user_id, signals)

    @staticmethod
    async def assess_deposit(
        db: AsyncSession,
        user_id: int,
        amount: int,
        now: Optional[datetime] = None,
        counter: Optional[RollingWindowCounter] = None,
    ) -> FraudAssessment:
        """Pre-check for a deposit of `amount`."""
        now = now or datetime.utcnow()
        counter = counter or RollingWindowCounter()
        account = await LedgerStore.get_account_for_user(db, user_id)
        user = await db.get(User, user_id)
        if not user:
            raise ResourceNotFoundError("User", user_id)

        signals = [
            s for s in (
                await FraudEngine.check_rapid_deposits(counter, account.id, now),
                await FraudEngine.check_new_account_high_deposit(counter, user, account.id, amount, now),
            ) if s
        ]
        return await FraudEngine._commit_assessment(db, user_id, signals)

    @staticmethod
    async def assess_gift(db: AsyncSession, user_id: int, amount: int) -> FraudAssessment:
        """Pre-check for sending a gift worth `amount`."""
        signal = FraudEngine.check_large_gift(amount)
        return await FraudEngine._commit_assessment(db, user_id, [signal] if signal else [])

    @staticmethod
    async def record_movement(
        account_id: int,
        metric: str,
        entry_id: int,
        amount: int,
        at: Optional[datetime] = None,
        counter: Optional[RollingWindowCounter] = None,
    ) -> None:
        """
        Feed a committed entry into the rolling windows.

        Runs after commit; a counter outage is logged and does not undo
        the committed operation.
        """
        counter = counter or RollingWindowCounter()
        try:
            await counter.record(account_id, metric, entry_id, amount, at)
        except Exception:
            logger.exception("Failed to record %s entry %s in fraud counters", metric, entry_id)

    # ------------------------------------------------------------ operators

    @staticmethod
    async def create_flag(
        db: AsyncSession,
        user_id: int,
        severity: Severity,
        description: str,
        actor_id: int,
        flag_type: FlagType = FlagType.MANUAL,
        details: Optional[Dict[str, Any]] = None,
    ) -> FraudFlag:
        """Raise a flag by hand. Manual flags never auto-block."""
        if not await db.get(User, user_id):
            raise ResourceNotFoundError("User", user_id)

        flag = FraudFlag(
            user_id=user_id,
            flag_type=flag_type,
            severity=severity,
            description=description[:255],
            details=details or {},
            auto_generated=False,
        )
        db.add(flag)
        await db.flush()
        await log_event(
            db,
            AuditAction.FRAUD_FLAG_CREATED,
            actor_id=actor_id,
            target_user_id=user_id,
            resource_type="fraud_flag",
            resource_id=flag.id,
            metadata={"severity": severity.value, "flag_type": flag_type.value},
        )
        await db.commit()
        return flag

    @staticmethod
    async def list_flags(
        db: AsyncSession,
        reviewed: Optional[bool] = None,
        user_id: Optional[int] = None,
        severity: Optional[Severity] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[FraudFlag]:
        query = select(FraudFlag)
        if reviewed is not None:
            query = query.where(FraudFlag.reviewed.is_(reviewed))
        if user_id:
            query = query.where(FraudFlag.user_id == user_id)
        if severity:
            query = query.where(FraudFlag.severity == severity)

        query = query.order_by(FraudFlag.created_at.desc(), FraudFlag.id.desc()).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def review_flag(
        db: AsyncSession,
        flag_id: int,
        reviewer_id: int,
        action: ReviewAction,
        notes: Optional[str] = None,
    ) -> FraudFlag:
        """
        Close or escalate a flag.

        dismiss: reviewed, no account change
        block: reviewed, account blocked
        escalate: severity raised one level, flag stays open

        Raises:
            ResourceNotFoundError: unknown flag
            InvalidStateError: flag already reviewed
        """
        flag = await db.get(FraudFlag, flag_id, populate_existing=True, with_for_update=True)
        if not flag:
            raise ResourceNotFoundError("Fraud flag", flag_id)
        if flag.reviewed:
            raise InvalidStateError("Fraud flag", "reviewed", expected="open")

        try:
            flag.review_action = action
            flag.review_notes = notes
            flag.reviewed_by = reviewer_id
            flag.reviewed_at = datetime.utcnow()

            if action == ReviewAction.ESCALATE:
                position = SEVERITY_ORDER.index(flag.severity)
                flag.severity = SEVERITY_ORDER[min(position + 1, len(SEVERITY_ORDER) - 1)]
            else:
                flag.reviewed = True

            if action == ReviewAction.BLOCK:
                account = await LedgerStore.get_account_for_user(db, flag.user_id)
                await LedgerStore.set_blocked(db, account.id, True)
                await log_event(
                    db,
                    AuditAction.ACCOUNT_BLOCKED,
                    actor_id=reviewer_id,
                    target_user_id=flag.user_id,
                    resource_type="account",
                    resource_id=account.id,
                    metadata={"flag_id": flag.id},
                )

            await log_event(
                db,
                AuditAction.FRAUD_FLAG_REVIEWED,
                actor_id=reviewer_id,
                target_user_id=flag.user_id,
                resource_type="fraud_flag",
                resource_id=flag.id,
                metadata={"action": action.value, "severity": flag.severity.value, "notes": notes},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Fraud flag %s reviewed by %s: %s", flag.id, reviewer_id, action.value)
        return flag

    @staticmethod
    async def unblock_account(db: AsyncSession, user_id: int, actor_id: int, reason: Optional[str] = None) -> None:
        account = await LedgerStore.get_account_for_user(db, user_id)
        try:
            await LedgerStore.set_blocked(db, account.id, False)
            await log_event(
                db,
                AuditAction.ACCOUNT_UNBLOCKED,
                actor_id=actor_id,
                target_user_id=user_id,
                resource_type="account",
                resource_id=account.id,
                metadata={"reason": reason},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info("Account %s unblocked by %s", account.id, actor_id)
