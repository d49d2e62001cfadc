"""
Domain models for the enrichment engine.

Persisted entities (Job, Session, CooldownRecord) are pydantic models so the
store can round-trip them as canonical JSON. Pure values produced by the
services (decisions, outcomes, events) are lightweight dataclasses.
"""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.PAUSED})


class ItemStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PauseReason(StrEnum):
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    HOURLY_LIMIT_REACHED = "hourly_limit_reached"
    PATTERN_LIMIT_REACHED = "pattern_limit_reached"
    PAUSE_PERIOD = "pause_period"
    SESSION_INVALID = "session_invalid"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"


# Pauses that clear on their own once the clock moves on
RATE_PAUSE_REASONS = frozenset(
    {
        PauseReason.DAILY_LIMIT_REACHED,
        PauseReason.HOURLY_LIMIT_REACHED,
        PauseReason.PATTERN_LIMIT_REACHED,
        PauseReason.PAUSE_PERIOD,
    }
)


class DayFilter(StrEnum):
    WEEKDAY = "weekday"
    WEEKEND = "weekend"
    BOTH = "both"


class JobItem(BaseModel):
    """One target record inside a job (a CRM contact and its profile URL)."""

    item_id: str
    source_ref: str
    label: str | None = None
    status: ItemStatus = ItemStatus.PENDING
    last_error: str | None = None
    processed_at: datetime | None = None


class PatternHistoryEntry(BaseModel):
    pattern_name: str
    entered_at: datetime
    exited_at: datetime | None = None
    items_processed: int = 0


class JobErrorEntry(BaseModel):
    item_id: str
    error: str
    timestamp: datetime


class Job(BaseModel):
    """Canonical job record. The same shape is stored and served."""

    job_id: str
    quota_key: str
    participant_ids: list[str] = Field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    items: list[JobItem] = Field(default_factory=list)

    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0

    created_at: datetime
    last_processed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None

    pause_reason: PauseReason | None = None
    estimated_resume_time: datetime | None = None
    error: str | None = None

    pattern_history: list[PatternHistoryEntry] = Field(default_factory=list)
    errors: list[JobErrorEntry] = Field(default_factory=list)
    daily_stats: dict[str, dict[str, int]] = Field(default_factory=dict)

    credential_failures: int = 0
    respawn_attempts: int = 0
    restarted_from: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_items(self) -> int:
        return len(self.items)

    def find_item(self, item_id: str) -> JobItem | None:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None

    def next_pending_item(self) -> JobItem | None:
        for item in self.items:
            if item.status == ItemStatus.PENDING:
                return item
        return None

    def has_unfinished_items(self) -> bool:
        return any(item.status in (ItemStatus.PENDING, ItemStatus.PROCESSING) for item in self.items)

    def recount(self) -> None:
        """Recompute the persisted counters from the item list."""
        self.success_count = sum(1 for item in self.items if item.status == ItemStatus.COMPLETED)
        self.failure_count = sum(1 for item in self.items if item.status == ItemStatus.FAILED)
        self.processed_count = self.success_count + self.failure_count

    def add_participant(self, caller_id: str) -> bool:
        if caller_id in self.participant_ids:
            return False
        self.participant_ids.append(caller_id)
        return True

    def close_pattern_window(self, at: datetime) -> None:
        if self.pattern_history and self.pattern_history[-1].exited_at is None:
            self.pattern_history[-1].exited_at = at


class Session(BaseModel):
    """Per-caller credential bundle for the CRM and the profile source."""

    caller_id: str
    crm_url: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    client_id: str | None = None
    tenant_id: str | None = None
    verifier: str | None = None
    profile_token: str | None = None
    last_activity: datetime | None = None
    token_expires_at: datetime | None = None

    def can_refresh(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.tenant_id)

    def is_valid(self, now: datetime) -> bool:
        if not self.access_token or not self.crm_url:
            return False
        if self.token_expires_at is None or self.token_expires_at > now:
            return True
        return self.can_refresh()


class CooldownRecord(BaseModel):
    quota_key: str
    job_id: str | None = None
    completed_at: datetime
    cooldown_end_date: datetime
    overridden: bool = False
    override_reason: str | None = None
    overridden_at: datetime | None = None
    overridden_by: str | None = None

    def is_blocking(self, now: datetime) -> bool:
        return not self.overridden and now < self.cooldown_end_date

    def days_remaining(self, now: datetime) -> int:
        if not self.is_blocking(now):
            return 0
        return math.ceil((self.cooldown_end_date - now) / timedelta(days=1))


class HumanPattern(BaseModel):
    """
    Named time-of-day behavior profile.

    Hours are local to the pattern timezone; a range whose start is after
    its end wraps past midnight. A pattern without hours never matches and
    only serves as the fallback default.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    hour_start: int | None = Field(default=None, ge=0, le=23)
    hour_end: int | None = Field(default=None, ge=0, le=23)
    days: DayFilter = DayFilter.BOTH
    pause: bool = False
    max_items_per_occurrence: int | None = Field(default=None, ge=0)
    min_delay: float | None = Field(default=None, ge=0)
    max_delay: float | None = Field(default=None, ge=0)
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_day_flags(cls, data: Any) -> Any:
        # Pattern files may use weekdayOnly/weekendOnly flags instead of `days`
        if not isinstance(data, dict) or "days" in data:
            return data
        data = dict(data)
        weekday_only = data.pop("weekdayOnly", data.pop("weekday_only", False))
        weekend_only = data.pop("weekendOnly", data.pop("weekend_only", False))
        if weekday_only and weekend_only:
            raise ValueError("pattern cannot be both weekday-only and weekend-only")
        if weekday_only:
            data["days"] = DayFilter.WEEKDAY
        elif weekend_only:
            data["days"] = DayFilter.WEEKEND
        return data

    @model_validator(mode="after")
    def _check_ranges(self) -> "HumanPattern":
        if (self.hour_start is None) != (self.hour_end is None):
            raise ValueError(f"pattern {self.name}: hourStart and hourEnd must be set together")
        if self.hour_start is not None and self.hour_start == self.hour_end:
            raise ValueError(f"pattern {self.name}: hourStart must differ from hourEnd")
        if (
            self.min_delay is not None
            and self.max_delay is not None
            and self.min_delay > self.max_delay
        ):
            raise ValueError(f"pattern {self.name}: minDelay must not exceed maxDelay")
        return self

    def matches(self, local_time: datetime) -> bool:
        if self.hour_start is None or self.hour_end is None:
            return False

        is_weekend = local_time.weekday() >= 5
        if self.days == DayFilter.WEEKDAY and is_weekend:
            return False
        if self.days == DayFilter.WEEKEND and not is_weekend:
            return False

        hour = local_time.hour
        if self.hour_start < self.hour_end:
            return self.hour_start <= hour < self.hour_end
        return hour >= self.hour_start or hour < self.hour_end


@dataclass(slots=True, frozen=True)
class Proceed:
    """Permission to process one item after waiting `delay` seconds."""

    delay: float
    pattern: str
    counts: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Deny:
    reason: PauseReason
    estimated_resume_time: datetime | None
    pattern: str


Decision = Proceed | Deny


@dataclass(slots=True, frozen=True)
class ItemOutcome:
    success: bool
    error: str | None = None

    @classmethod
    def succeeded(cls) -> "ItemOutcome":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "ItemOutcome":
        return cls(success=False, error=error)


@dataclass(slots=True)
class JobEvent:
    """Published to listeners whenever a job changes state."""

    event: str
    job_id: str
    quota_key: str
    status: JobStatus
    at: datetime = field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = field(default_factory=dict)
