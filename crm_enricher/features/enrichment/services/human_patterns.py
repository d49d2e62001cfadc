"""
Human pattern table.

Maps an instant to the named behavior pattern active at that local time.
Patterns are checked in configuration order and the first match wins;
when nothing matches, the configured default pattern applies.
"""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic import TypeAdapter, ValidationError

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import DayFilter, HumanPattern
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Hour-by-hour search horizon for the next active window
SEARCH_HORIZON_HOURS = 8 * 24

DEFAULT_PATTERNS: list[HumanPattern] = [
    HumanPattern(
        name="morning_warmup",
        hour_start=8,
        hour_end=10,
        days=DayFilter.WEEKDAY,
        max_items_per_occurrence=15,
        min_delay=60,
        max_delay=180,
        description="Slow start of the working day",
    ),
    HumanPattern(
        name="focused_morning",
        hour_start=10,
        hour_end=12,
        days=DayFilter.WEEKDAY,
        max_items_per_occurrence=25,
        min_delay=45,
        max_delay=120,
        description="Peak morning focus",
    ),
    HumanPattern(
        name="lunch_break",
        hour_start=12,
        hour_end=13,
        days=DayFilter.BOTH,
        pause=True,
        description="Lunch, no activity",
    ),
    HumanPattern(
        name="afternoon_work",
        hour_start=13,
        hour_end=17,
        days=DayFilter.WEEKDAY,
        max_items_per_occurrence=30,
        min_delay=45,
        max_delay=150,
        description="Steady afternoon work",
    ),
    HumanPattern(
        name="evening_wind_down",
        hour_start=17,
        hour_end=21,
        days=DayFilter.WEEKDAY,
        max_items_per_occurrence=10,
        min_delay=120,
        max_delay=300,
        description="Occasional evening activity",
    ),
    HumanPattern(
        name="weekend_light",
        hour_start=10,
        hour_end=18,
        days=DayFilter.WEEKEND,
        max_items_per_occurrence=10,
        min_delay=180,
        max_delay=420,
        description="Light weekend activity",
    ),
    HumanPattern(
        name="night_rest",
        hour_start=21,
        hour_end=8,
        days=DayFilter.BOTH,
        pause=True,
        description="Night, no activity",
    ),
]

DEFAULT_FALLBACK = HumanPattern(name="off_hours", pause=True, description="Outside every pattern")


class PatternConfigError(Exception):
    """Raised when a pattern table file cannot be loaded or is invalid."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


def load_patterns(path: str | Path) -> list[HumanPattern]:
    """
    Load a pattern table from a JSON list.

    Entries use camelCase keys (hourStart, hourEnd, weekdayOnly/weekendOnly
    or days, pause, maxItemsPerOccurrence, minDelay, maxDelay).
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise PatternConfigError(f"Cannot read pattern file: {e}", path=str(path)) from e

    try:
        patterns = TypeAdapter(list[HumanPattern]).validate_python(raw)
    except ValidationError as e:
        raise PatternConfigError(f"Invalid pattern table: {e}", path=str(path)) from e

    names = [pattern.name for pattern in patterns]
    if len(names) != len(set(names)):
        raise PatternConfigError("Pattern names must be unique", path=str(path))
    if not patterns:
        raise PatternConfigError("Pattern table is empty", path=str(path))

    logger.info("Loaded human pattern table", path=str(path), patterns=names)
    return patterns


class HumanPatternTable:
    """Deterministic lookup of the active pattern for a given instant."""

    def __init__(
        self,
        patterns: list[HumanPattern],
        default: HumanPattern,
        zone: ZoneInfo,
    ):
        self.patterns = list(patterns)
        self.default = default
        self.zone = zone

    @classmethod
    def from_settings(cls) -> "HumanPatternTable":
        patterns = (
            load_patterns(settings.HUMAN_PATTERNS_FILE)
            if settings.HUMAN_PATTERNS_FILE
            else DEFAULT_PATTERNS
        )
        default = next(
            (p for p in patterns if p.name == settings.DEFAULT_PATTERN_NAME),
            DEFAULT_FALLBACK.model_copy(update={"name": settings.DEFAULT_PATTERN_NAME}),
        )
        return cls(patterns, default, settings.pattern_zone())

    def local(self, now: datetime) -> datetime:
        return now.astimezone(self.zone)

    def current_pattern(self, now: datetime) -> HumanPattern:
        local_now = self.local(now)
        for pattern in self.patterns:
            if pattern.matches(local_now):
                return pattern
        return self.default

    def all_patterns(self) -> list[HumanPattern]:
        return list(self.patterns)

    def _next_boundary(self, now: datetime) -> datetime:
        local_now = self.local(now)
        floor = local_now.replace(minute=0, second=0, microsecond=0)
        # Hour arithmetic in UTC keeps steps exact across DST changes
        return floor.astimezone(UTC) + timedelta(hours=1)

    def first_active_from(self, start: datetime) -> datetime | None:
        """
        First hour boundary at or after `start` whose pattern allows work.

        `start` is expected to sit on an hour boundary.
        """
        candidate = start
        for _ in range(SEARCH_HORIZON_HOURS):
            if not self.current_pattern(candidate).pause:
                return candidate
            candidate = candidate + timedelta(hours=1)
        return None

    def next_active_start(self, now: datetime) -> datetime | None:
        """Start of the first hour after `now` that is not a pause window."""
        return self.first_active_from(self._next_boundary(now))

    def next_active_pattern(self, now: datetime) -> tuple[HumanPattern, datetime] | None:
        start = self.next_active_start(now)
        if start is None:
            return None
        return self.current_pattern(start), start

    def window_end(self, now: datetime) -> datetime | None:
        """First hour boundary after `now` at which the active pattern changes."""
        current = self.current_pattern(now)
        candidate = self._next_boundary(now)
        for _ in range(SEARCH_HORIZON_HOURS):
            if self.current_pattern(candidate).name != current.name:
                return candidate
            candidate = candidate + timedelta(hours=1)
        return None

    def next_midnight(self, now: datetime) -> datetime:
        local_now = self.local(now)
        midnight = (local_now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(UTC)

    def day_key(self, now: datetime) -> str:
        return self.local(now).strftime("%Y-%m-%d")

    def hour_key(self, now: datetime) -> str:
        return self.local(now).strftime("%Y-%m-%d-%H")


_pattern_table: HumanPatternTable | None = None


def get_pattern_table() -> HumanPatternTable:
    global _pattern_table
    if _pattern_table is None:
        _pattern_table = HumanPatternTable.from_settings()
    return _pattern_table
