"""
Pattern-aware rate limiter.

Decides, for a quota key and an instant, whether one more item may be
processed. Checks run in a fixed order (pause window, pattern quota, daily
limit, hourly limit) and the first denial wins. A successful check reserves
the day, hour and pattern counters in the same atomic step, so a crash
after the reservation can only over-count, never under-count.
"""

import random
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import (
    Decision,
    Deny,
    HumanPattern,
    PauseReason,
    Proceed,
)
from crm_enricher.features.enrichment.repository import EnrichmentStore
from crm_enricher.features.enrichment.services.human_patterns import HumanPatternTable
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Counters outlive their bucket long enough for status queries, then expire
DAY_COUNTER_TTL = 2 * 24 * 3600
HOUR_COUNTER_TTL = 2 * 3600

# Reservation order; the index of the blocked counter maps to its reason
_LIMIT_REASONS = (
    PauseReason.PATTERN_LIMIT_REACHED,
    PauseReason.DAILY_LIMIT_REACHED,
    PauseReason.HOURLY_LIMIT_REACHED,
)


class RateLimiter:
    """Owns every rate counter mutation for every quota key."""

    def __init__(
        self,
        store: EnrichmentStore,
        patterns: HumanPatternTable,
        limits: dict | None = None,
        rng: random.Random | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        limits = limits or settings.get_limits()
        self.store = store
        self.patterns = patterns
        self.daily_limit: int = limits["daily_limit"]
        self.hourly_limit: int = limits["hourly_limit"]
        self.default_min_delay: float = limits["default_min_delay"]
        self.default_max_delay: float = limits["default_max_delay"]
        self.rng = rng or random.Random()
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    def _buckets(self, pattern: HumanPattern, now: datetime) -> list[str]:
        day = self.patterns.day_key(now)
        return [
            f"pattern:{day}:{pattern.name}",
            f"day:{day}",
            f"hour:{self.patterns.hour_key(now)}",
        ]

    def _delay_for(self, pattern: HumanPattern) -> float:
        low = pattern.min_delay if pattern.min_delay is not None else self.default_min_delay
        high = pattern.max_delay if pattern.max_delay is not None else self.default_max_delay
        return self.rng.uniform(low, high)

    def estimate_resume_time(self, reason: PauseReason, now: datetime) -> datetime | None:
        """When a job paused for `reason` at `now` could reasonably try again."""
        if reason == PauseReason.PATTERN_LIMIT_REACHED:
            window_end = self.patterns.window_end(now)
            return self.patterns.first_active_from(window_end) if window_end else None
        if reason == PauseReason.DAILY_LIMIT_REACHED:
            return self.patterns.first_active_from(self.patterns.next_midnight(now))
        # pause_period and hourly_limit_reached both wait for the next active hour
        return self.patterns.next_active_start(now)

    async def check_and_reserve(self, quota_key: str, now: datetime | None = None) -> Decision:
        """
        Ask permission to process one item for `quota_key`.

        Returns:
            Proceed with a sampled delay (counters already reserved), or
            Deny with the first failing reason and an estimated resume time
        """
        now = now or self.now_fn()
        pattern = self.patterns.current_pattern(now)

        if pattern.pause:
            resume_at = self.estimate_resume_time(PauseReason.PAUSE_PERIOD, now)
            logger.info(
                "Rate limiter denied: pause window",
                quota_key=quota_key,
                pattern=pattern.name,
                estimated_resume_time=resume_at.isoformat() if resume_at else None,
            )
            return Deny(PauseReason.PAUSE_PERIOD, resume_at, pattern.name)

        buckets = self._buckets(pattern, now)
        blocked, counts = await self.store.reserve_counters(
            quota_key,
            buckets,
            [pattern.max_items_per_occurrence, self.daily_limit, self.hourly_limit],
            [DAY_COUNTER_TTL, DAY_COUNTER_TTL, HOUR_COUNTER_TTL],
        )

        if blocked is not None:
            reason = _LIMIT_REASONS[blocked]
            resume_at = self.estimate_resume_time(reason, now)
            logger.info(
                "Rate limiter denied",
                quota_key=quota_key,
                reason=reason.value,
                pattern=pattern.name,
                pattern_count=counts[0],
                daily_count=counts[1],
                hourly_count=counts[2],
                estimated_resume_time=resume_at.isoformat() if resume_at else None,
            )
            return Deny(reason, resume_at, pattern.name)

        delay = self._delay_for(pattern)
        logger.debug(
            "Rate limiter reserved",
            quota_key=quota_key,
            pattern=pattern.name,
            delay_seconds=round(delay, 2),
            daily_count=counts[1],
        )
        return Proceed(
            delay=delay,
            pattern=pattern.name,
            counts={"pattern": counts[0], "daily": counts[1], "hourly": counts[2]},
        )

    async def limit_status(self, quota_key: str, now: datetime | None = None) -> dict[str, Any]:
        """Read-only snapshot of counters and limits for a quota key."""
        now = now or self.now_fn()
        pattern = self.patterns.current_pattern(now)
        pattern_count, daily_count, hourly_count = await self.store.get_counters(
            quota_key, self._buckets(pattern, now)
        )

        next_active = self.patterns.next_active_pattern(now)
        pattern_limit = pattern.max_items_per_occurrence

        denial: PauseReason | None = None
        if pattern.pause:
            denial = PauseReason.PAUSE_PERIOD
        elif pattern_limit is not None and pattern_count >= pattern_limit:
            denial = PauseReason.PATTERN_LIMIT_REACHED
        elif daily_count >= self.daily_limit:
            denial = PauseReason.DAILY_LIMIT_REACHED
        elif hourly_count >= self.hourly_limit:
            denial = PauseReason.HOURLY_LIMIT_REACHED

        resume_at = self.estimate_resume_time(denial, now) if denial else None

        return {
            "daily_count": daily_count,
            "hourly_count": hourly_count,
            "pattern_count": pattern_count,
            "daily_limit": self.daily_limit,
            "hourly_limit": self.hourly_limit,
            "pattern_limit": pattern_limit,
            "current_pattern": pattern.name,
            "in_pause": pattern.pause,
            "next_active_pattern": next_active[0].name if next_active else None,
            "next_active_start": next_active[1] if next_active else None,
            "estimated_resume_time": resume_at,
            "blocked_reason": denial.value if denial else None,
            "can_process": denial is None,
        }
