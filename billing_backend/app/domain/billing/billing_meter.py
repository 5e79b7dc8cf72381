"""
Billing Meter (Domain Logic).

Pure cost computation for metered calls. No I/O.

Billing is per started minute: 60s costs one minute, 61s costs two.
"""

import math
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class MeterReading:
    duration_seconds: int
    billed_minutes: int
    total_cost: int


class BillingMeter:

    @staticmethod
    def elapsed_seconds(started_at: datetime, now: datetime) -> int:
        """Whole seconds between start and now, clamped at zero for clock skew."""
        return max(0, math.floor((now - started_at).total_seconds()))

    @staticmethod
    def billed_minutes(duration_seconds: int) -> int:
        return math.ceil(duration_seconds / 60)

    @staticmethod
    def compute_cost(started_at: datetime, now: datetime, rate_per_minute: int) -> MeterReading:
        """
        Meter a call.

        Args:
            started_at: Moment the call became active
            now: Moment to meter up to
            rate_per_minute: Price of one started minute, in minor units

        Returns:
            MeterReading with duration, billed minutes and total cost
        """
        duration = BillingMeter.elapsed_seconds(started_at, now)
        minutes = BillingMeter.billed_minutes(duration)
        return MeterReading(
            duration_seconds=duration,
            billed_minutes=minutes,
            total_cost=minutes * rate_per_minute,
        )

    @staticmethod
    def affordable_seconds(balance: int, rate_per_minute: int) -> int:
        """Seconds of talk time the balance covers, counting only whole paid minutes."""
        if rate_per_minute <= 0:
            return 0
        return max(0, balance // rate_per_minute) * 60
