"""
Ledger Reconciliation (Domain Logic).

Daily consistency check of balances against the ledger:

- every account balance equals the sum of its entries
- no balance is negative
- no paired posting credits more than it debited
- no payout has been stuck in PENDING for more than a day

Refund entries are left out of the transfer check: a chargeback reverses
one leg only, so its transfer group no longer nets to zero.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_backend.app.models.account import Account
from billing_backend.app.models.billing_enums import ScheduledPaymentStatus
from billing_backend.app.models.ledger_entry import LedgerEntry
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.models.scheduled_payment import ScheduledPayment
from billing_backend.app.services.audit import log_event, AuditAction

logger = logging.getLogger(__name__)

STALE_PAYOUT_AFTER = timedelta(days=1)


@dataclass
class ReconciliationReport:
    status: str
    generated_at: datetime
    checked_accounts: int = 0
    total_balance: int = 0
    total_entries: int = 0
    drifted_accounts: List[Dict[str, int]] = field(default_factory=list)
    negative_balances: List[Dict[str, int]] = field(default_factory=list)
    unbalanced_transfers: List[Dict[str, Any]] = field(default_factory=list)
    stale_pending_payouts: List[int] = field(default_factory=list)
    retained_by_platform: int = 0


class ReconciliationService:

    @staticmethod
    async def run_reconciliation(
        db: AsyncSession,
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationReport:
        now = now or datetime.utcnow()

        entry_sums = (
            select(LedgerEntry.account_id, func.sum(LedgerEntry.amount).label("total"))
            .group_by(LedgerEntry.account_id)
            .subquery()
        )
        result = await db.execute(
            select(Account.id, Account.balance, func.coalesce(entry_sums.c.total, 0))
            .outerjoin(entry_sums, entry_sums.c.account_id == Account.id)
            .order_by(Account.id)
        )

        report = ReconciliationReport(status="ok", generated_at=now)
        for account_id, balance, total in result.all():
            total = int(total)
            report.checked_accounts += 1
            report.total_balance += balance
            report.total_entries += total
            if balance != total:
                report.drifted_accounts.append({"account_id": account_id, "balance": balance, "ledger_total": total})
            if balance < 0:
                report.negative_balances.append({"account_id": account_id, "balance": balance})

        result = await db.execute(
            select(LedgerEntry.transfer_id, func.sum(LedgerEntry.amount))
            .where(LedgerEntry.transfer_id.is_not(None), LedgerEntry.kind != EntryKind.REFUND)
            .group_by(LedgerEntry.transfer_id)
        )
        for transfer_id, net in result.all():
            net = int(net)
            if net > 0:
                report.unbalanced_transfers.append({"transfer_id": transfer_id, "net": net})
            elif net < 0:
                # Debit larger than credits: implicit platform retention
                report.retained_by_platform += -net

        result = await db.execute(
            select(ScheduledPayment.id).where(
                ScheduledPayment.status == ScheduledPaymentStatus.PENDING,
                ScheduledPayment.created_at < now - STALE_PAYOUT_AFTER,
            )
        )
        report.stale_pending_payouts = list(result.scalars().all())

        if report.drifted_accounts or report.negative_balances or report.unbalanced_transfers:
            report.status = "critical"
        elif report.stale_pending_payouts:
            report.status = "warning"

        try:
            await log_event(
                db,
                AuditAction.RECONCILIATION_RUN,
                actor_id=actor_id,
                resource_type="ledger",
                metadata={
                    "status": report.status,
                    "checked_accounts": report.checked_accounts,
                    "drifted_accounts": len(report.drifted_accounts),
                    "negative_balances": len(report.negative_balances),
                    "unbalanced_transfers": len(report.unbalanced_transfers),
                    "stale_pending_payouts": len(report.stale_pending_payouts),
                },
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if report.status == "ok":
            logger.info("Reconciliation ok: %s accounts, total balance %s", report.checked_accounts, report.total_balance)
        else:
            logger.error("Reconciliation %s: %s", report.status, asdict(report))
        return report
