"""Tests for photoshow.core.generation_limit — daily generation quota.

Tests cover:
- Per-day counter keys and day rollover.
- Limit boundary (limit reached exactly at the configured count).
- Counter retention applied on every increment.
- Conservative results on the file store and on store failures.
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from photoshow.core.generation_limit import GenerationLimitService, LimitStatus

DAY = date(2024, 3, 15)


class Today:
    """Settable replacement for date.today."""

    def __init__(self, day: date) -> None:
        self.day = day

    def __call__(self) -> date:
        return self.day


@pytest.fixture
def today() -> Today:
    return Today(DAY)


@pytest.fixture
def limits(redis_store, today) -> GenerationLimitService:
    return GenerationLimitService(redis_store, daily_limit=50, today=today)


class TestCounting:
    """Test counting against the Redis store."""

    def test_counter_key_per_day(self, limits):
        assert limits.counter_key() == "generation:2024-03-15"
        assert limits.counter_key(date(2024, 1, 2)) == "generation:2024-01-02"

    @pytest.mark.asyncio
    async def test_increment_counts_up(self, limits):
        assert await limits.get_count() == 0
        assert await limits.increment() == 1
        assert await limits.increment() == 2
        assert await limits.get_count() == 2

    @pytest.mark.asyncio
    async def test_retention_applied_on_increment(self, limits, fake_redis):
        await limits.increment()
        assert fake_redis.expiries["photoshow:generation:2024-03-15"] == 172800

    @pytest.mark.asyncio
    async def test_rollover_to_new_day(self, limits, today, fake_redis):
        """A new day starts from zero; the previous day's counter is untouched."""
        await limits.increment()
        await limits.increment()

        today.day = DAY + timedelta(days=1)

        assert await limits.get_count() == 0
        assert fake_redis.data["photoshow:generation:2024-03-15"] == "2"


class TestCheckLimit:
    """Test the limit boundary and result shape."""

    @pytest.mark.asyncio
    async def test_below_limit(self, limits):
        for _ in range(49):
            await limits.increment()

        status = await limits.check_limit()

        assert status == LimitStatus(
            current_count=49, limit=50, remaining=1, is_limit_exceeded=False
        )

    @pytest.mark.asyncio
    async def test_at_limit(self, limits):
        for _ in range(50):
            await limits.increment()

        status = await limits.check_limit()

        assert status.is_limit_exceeded is True
        assert status.remaining == 0

    @pytest.mark.asyncio
    async def test_remaining_never_negative(self, limits, fake_redis):
        fake_redis.data["photoshow:generation:2024-03-15"] = "75"
        status = await limits.check_limit()
        assert status.remaining == 0
        assert status.current_count == 75

    def test_to_dict(self):
        status = LimitStatus(current_count=3, limit=50, remaining=47, is_limit_exceeded=False)
        assert status.to_dict() == {
            "currentCount": 3,
            "limit": 50,
            "remaining": 47,
            "isLimitExceeded": False,
        }


class TestConservativeResults:
    """Quota checks never block users because of infrastructure problems."""

    @pytest.mark.asyncio
    async def test_file_store_reports_zero(self, file_store, today):
        limits = GenerationLimitService(file_store, daily_limit=50, today=today)

        assert await limits.increment() == 0
        status = await limits.check_limit()

        assert status.current_count == 0
        assert status.is_limit_exceeded is False
        assert status.remaining == 50

    @pytest.mark.asyncio
    async def test_failing_store_gives_full_quota(self, failing_store, today):
        limits = GenerationLimitService(failing_store, daily_limit=50, today=today)

        status = await limits.check_limit()

        assert status.to_dict() == {
            "currentCount": 0,
            "limit": 50,
            "remaining": 50,
            "isLimitExceeded": False,
        }

    @pytest.mark.asyncio
    async def test_redis_outage_uses_mirror(self, limits, fake_redis):
        await limits.increment()
        fake_redis.down = True

        status = await limits.check_limit()

        assert status.current_count == 1
        assert status.remaining == 49
