"""
Daily payout job.

Runs the D+30 payout sweep, then delivers pending outbound events.
Schedule it once a day (e.g. cron `0 3 * * *`).
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from billing_backend.app.core.observability import configure_logging
from billing_backend.app.db.session import AsyncSessionLocal, engine
from billing_backend.app.domain.payouts.payout_scheduler import PayoutScheduler
from billing_backend.app.services.event_outbox import dispatch_pending_events
from billing_backend.app.main import app  # noqa: F401  registers every model

logger = logging.getLogger("billing.payout_job")


async def main() -> int:
    configure_logging()
    async with AsyncSessionLocal() as db:
        result = await PayoutScheduler.run_payout_sweep(db)
        logger.info(
            "Payout job: processed=%s paid=%s failed=%s total=%s",
            result.processed, result.paid, result.failed, result.total_paid_amount
        )
        await dispatch_pending_events(db)
    await engine.dispose()
    return 1 if result.failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
