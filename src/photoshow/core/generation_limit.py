"""Daily image generation quota.

Generations are counted per calendar day in a counter named
``generation:YYYY-MM-DD`` inside the backing store namespace.  The counter
expires after ``retention_seconds`` (48 hours by default), so yesterday's
count is still inspectable for a while and no cleanup job is needed.  The day
rolls over naturally: a new date means a new, empty counter.

The service talks to the backing store directly rather than through the
:class:`~photoshow.core.cache_manager.CacheManager`, because counters must
never be answered from a memory layer.

Only stores that support atomic counters (Redis) really enforce the quota.
On the file store every count is 0 and the store logs a warning; exceeding
the limit is reported as data in :class:`LimitStatus`, never as an error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

from photoshow.core.cache_store import CacheStoreBase

logger = logging.getLogger(__name__)

COUNTER_PREFIX = "generation:"


@dataclass
class LimitStatus:
    """Quota check result for the current day."""

    current_count: int
    limit: int
    remaining: int
    is_limit_exceeded: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentCount": self.current_count,
            "limit": self.limit,
            "remaining": self.remaining,
            "isLimitExceeded": self.is_limit_exceeded,
        }


class GenerationLimitService:
    """Counts generations per day and checks them against a daily limit.

    Attributes:
        store (CacheStoreBase): Backing store holding the counters.
        daily_limit (int): Maximum generations per calendar day.
        retention_seconds (int): Expiry applied to each day's counter.
    """

    def __init__(
        self,
        store: CacheStoreBase,
        *,
        daily_limit: int = 50,
        retention_seconds: int = 172800,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.daily_limit = daily_limit
        self.retention_seconds = retention_seconds
        self._today = today

    def counter_key(self, day: date | None = None) -> str:
        day = day or self._today()
        return f"{COUNTER_PREFIX}{day.isoformat()}"

    async def get_count(self) -> int:
        """Return today's generation count."""
        return await self.store.get_counter(self.counter_key())

    async def increment(self) -> int:
        """Count one generation for today and return the new count."""
        count = await self.store.increment_counter(self.counter_key(), self.retention_seconds)
        logger.info(f"Generation count for today: {count}/{self.daily_limit}")
        return count

    async def check_limit(self) -> LimitStatus:
        """Check today's count against the daily limit.

        Never raises.  If the count cannot be read, the check is permissive
        (``current_count=0``) so a broken counter does not block generation.
        """
        try:
            count = int(await self.get_count())
        except Exception as e:
            logger.error(f"Failed to read generation count, allowing generation: {e}")
            count = 0

        remaining = max(0, self.daily_limit - count)
        status = LimitStatus(
            current_count=count,
            limit=self.daily_limit,
            remaining=remaining,
            is_limit_exceeded=count >= self.daily_limit,
        )
        if status.is_limit_exceeded:
            logger.warning(f"Daily generation limit reached ({count}/{self.daily_limit})")
        return status
