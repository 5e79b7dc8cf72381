"""
Per-account rolling window counters backed by Redis sorted sets.

Each (account, metric) pair is one sorted set scored by event time. Members
are "<entry_id>:<amount>" so recording the same ledger entry twice is a
no-op and amounts can be summed without a second lookup.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from billing_backend.app.core.config import settings
from billing_backend.app.core.redis_client import get_redis


class CounterMetric:
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass
class WindowStats:
    count: int = 0
    total: int = 0


def _score(moment: datetime) -> float:
    return moment.replace(tzinfo=timezone.utc).timestamp()


class RollingWindowCounter:
    """Sliding time window of amounts per account and metric."""

    def __init__(self, redis=None, ttl_seconds: Optional[int] = None):
        self._redis = redis
        self.ttl_seconds = ttl_seconds or settings.fraud_counter_ttl_seconds

    async def _client(self):
        if self._redis is None:
            return await get_redis()
        return self._redis

    @staticmethod
    def key(account_id: int, metric: str) -> str:
        return f"fraud:window:{account_id}:{metric}"

    async def record(
        self,
        account_id: int,
        metric: str,
        entry_id: int,
        amount: int,
        at: Optional[datetime] = None,
    ) -> None:
        client = await self._client()
        key = self.key(account_id, metric)
        moment = at or datetime.utcnow()

        await client.zadd(key, {f"{entry_id}:{abs(amount)}": _score(moment)})
        # Anything older than the TTL can never fall inside a window again
        await client.zremrangebyscore(key, "-inf", _score(moment) - self.ttl_seconds)
        await client.expire(key, self.ttl_seconds)

    async def window(
        self,
        account_id: int,
        metric: str,
        window_seconds: int,
        now: Optional[datetime] = None,
    ) -> WindowStats:
        client = await self._client()
        end = _score(now or datetime.utcnow())
        members = await client.zrangebyscore(self.key(account_id, metric), end - window_seconds, end)

        stats = WindowStats()
        for member in members:
            if isinstance(member, bytes):
                member = member.decode()
            _, _, amount = member.rpartition(":")
            stats.count += 1
            stats.total += int(amount)
        return stats
