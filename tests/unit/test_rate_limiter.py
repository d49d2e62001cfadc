"""
Tests for the pattern-aware rate limiter.
"""

import random
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest
from fakes import FakeClock

from crm_enricher.features.enrichment.domain import Deny, HumanPattern, PauseReason, Proceed
from crm_enricher.features.enrichment.services import HumanPatternTable, RateLimiter
from crm_enricher.features.enrichment.services.human_patterns import DEFAULT_FALLBACK

QUOTA = "acme.crm.dynamics.com"


def make_limiter(store, patterns, clock, daily=100, hourly=15):
    return RateLimiter(
        store,
        patterns,
        limits={
            "daily_limit": daily,
            "hourly_limit": hourly,
            "default_min_delay": 1.0,
            "default_max_delay": 2.0,
        },
        rng=random.Random(3),
        now_fn=clock,
    )


@pytest.fixture
def capped_table():
    work = HumanPattern(name="work", hour_start=0, hour_end=23, max_items_per_occurrence=2)
    return HumanPatternTable([work], DEFAULT_FALLBACK, ZoneInfo("UTC"))


@pytest.mark.asyncio
async def test_proceed_reserves_all_counters(store, pattern_table, clock):
    limiter = make_limiter(store, pattern_table, clock)

    decision = await limiter.check_and_reserve(QUOTA)

    assert isinstance(decision, Proceed)
    assert decision.pattern == "afternoon_work"
    assert 45 <= decision.delay <= 150
    assert decision.counts == {"pattern": 1, "daily": 1, "hourly": 1}


@pytest.mark.asyncio
async def test_pattern_without_delays_uses_defaults(store, capped_table, clock):
    limiter = make_limiter(store, capped_table, clock)

    decision = await limiter.check_and_reserve(QUOTA)

    assert isinstance(decision, Proceed)
    assert 1.0 <= decision.delay <= 2.0


@pytest.mark.asyncio
async def test_pause_window_denies_without_reserving(store, pattern_table):
    clock = FakeClock(datetime(2025, 1, 15, 12, 30, tzinfo=UTC))
    limiter = make_limiter(store, pattern_table, clock)

    decision = await limiter.check_and_reserve(QUOTA)

    assert isinstance(decision, Deny)
    assert decision.reason == PauseReason.PAUSE_PERIOD
    assert decision.pattern == "lunch_break"
    assert decision.estimated_resume_time == datetime(2025, 1, 15, 13, 0, tzinfo=UTC)

    status = await limiter.limit_status(QUOTA)
    assert status["daily_count"] == 0
    assert status["in_pause"] is True
    assert status["blocked_reason"] == "pause_period"
    assert status["can_process"] is False


@pytest.mark.asyncio
async def test_pattern_limit_checked_before_daily(store, capped_table, clock):
    limiter = make_limiter(store, capped_table, clock, daily=2)

    assert isinstance(await limiter.check_and_reserve(QUOTA), Proceed)
    assert isinstance(await limiter.check_and_reserve(QUOTA), Proceed)
    decision = await limiter.check_and_reserve(QUOTA)

    assert isinstance(decision, Deny)
    assert decision.reason == PauseReason.PATTERN_LIMIT_REACHED
    # "work" ends at 23:00, the fallback pauses, work starts again at midnight
    assert decision.estimated_resume_time == datetime(2025, 1, 16, 0, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_daily_limit_resumes_at_first_active_hour_of_next_day(store, pattern_table, clock):
    limiter = make_limiter(store, pattern_table, clock, daily=2)

    await limiter.check_and_reserve(QUOTA)
    await limiter.check_and_reserve(QUOTA)
    decision = await limiter.check_and_reserve(QUOTA)

    assert isinstance(decision, Deny)
    assert decision.reason == PauseReason.DAILY_LIMIT_REACHED
    assert decision.estimated_resume_time == datetime(2025, 1, 16, 8, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_hourly_limit_denial_leaves_counters_untouched(store, pattern_table, clock):
    limiter = make_limiter(store, pattern_table, clock, hourly=1)

    await limiter.check_and_reserve(QUOTA)
    decision = await limiter.check_and_reserve(QUOTA)

    assert isinstance(decision, Deny)
    assert decision.reason == PauseReason.HOURLY_LIMIT_REACHED
    assert decision.estimated_resume_time == datetime(2025, 1, 15, 15, 0, tzinfo=UTC)

    status = await limiter.limit_status(QUOTA)
    assert status["daily_count"] == 1
    assert status["pattern_count"] == 1
    assert status["blocked_reason"] == "hourly_limit_reached"


@pytest.mark.asyncio
async def test_hour_bucket_rolls_over(store, pattern_table, clock):
    limiter = make_limiter(store, pattern_table, clock, hourly=1)

    await limiter.check_and_reserve(QUOTA)
    clock.advance(hours=1)
    decision = await limiter.check_and_reserve(QUOTA)

    assert isinstance(decision, Proceed)
    assert decision.counts["hourly"] == 1
    assert decision.counts["daily"] == 2


@pytest.mark.asyncio
async def test_quota_keys_are_isolated(store, pattern_table, clock):
    limiter = make_limiter(store, pattern_table, clock, daily=1)

    await limiter.check_and_reserve(QUOTA)

    assert isinstance(await limiter.check_and_reserve("other.crm.dynamics.com"), Proceed)
    assert isinstance(await limiter.check_and_reserve(QUOTA), Deny)


@pytest.mark.asyncio
async def test_limit_status_reports_next_active_window(store, pattern_table, clock):
    limiter = make_limiter(store, pattern_table, clock)
    await limiter.check_and_reserve(QUOTA)

    status = await limiter.limit_status(QUOTA)

    assert status["current_pattern"] == "afternoon_work"
    assert status["pattern_limit"] == 30
    assert status["daily_limit"] == 100
    assert status["can_process"] is True
    assert status["next_active_start"] == datetime(2025, 1, 15, 15, 0, tzinfo=UTC)
