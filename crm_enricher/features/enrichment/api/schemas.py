"""
Request and response models for the enrichment API.
All bodies are camelCase on the wire; one canonical job view is used by
every endpoint that returns a job.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from crm_enricher.features.enrichment.domain import HumanPattern, Job, JobItem


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


class ContactIn(CamelModel):
    contact_id: str = Field(..., description="CRM record id")
    profile_url: str = Field(..., description="Profile URL for the contact")
    full_name: str | None = Field(None, description="Display name")

    def to_item(self) -> JobItem:
        return JobItem(item_id=self.contact_id, source_ref=self.profile_url, label=self.full_name)


class StartProcessingRequest(CamelModel):
    user_id: str = Field(..., description="Caller id")
    crm_url: str | None = Field(None, description="CRM organization URL")
    access_token: str | None = Field(None, description="CRM access token")
    refresh_token: str | None = Field(None, description="CRM refresh token")
    client_id: str | None = Field(None, description="OAuth client id")
    tenant_id: str | None = Field(None, description="OAuth tenant id")
    verifier: str | None = Field(None, description="PKCE code verifier")
    profile_token: str | None = Field(None, description="Profile source token")
    token_expires_at: datetime | None = Field(None, description="CRM token expiry")
    contacts: list[ContactIn] | None = Field(
        None, description="Explicit contact list; read from the CRM when omitted"
    )

    def session_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"user_id", "contacts"})


class RestartProcessingRequest(CamelModel):
    reason: str = Field("manual override", description="Why the cooldown is overridden")


class CancelProcessingRequest(CamelModel):
    reason: str = Field("Cancelled by user", description="Cancellation reason")


class RestartAfterCancelRequest(CamelModel):
    reset_contacts: bool = Field(False, description="Re-process already completed contacts too")


# ----------------------------------------------------------------------
# Views
# ----------------------------------------------------------------------


class JobErrorView(CamelModel):
    item_id: str
    error: str
    timestamp: datetime


class PatternHistoryView(CamelModel):
    pattern_name: str
    entered_at: datetime
    exited_at: datetime | None = None
    items_processed: int = 0


class JobView(CamelModel):
    job_id: str
    quota_key: str
    participant_ids: list[str]
    status: str
    total_contacts: int
    processed_count: int
    success_count: int
    failure_count: int
    pause_reason: str | None = None
    estimated_resume_time: datetime | None = None
    created_at: datetime
    last_processed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    error: str | None = None
    errors: list[JobErrorView] = Field(default_factory=list)
    pattern_history: list[PatternHistoryView] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(
            job_id=job.job_id,
            quota_key=job.quota_key,
            participant_ids=list(job.participant_ids),
            status=job.status.value,
            total_contacts=job.total_items,
            processed_count=job.processed_count,
            success_count=job.success_count,
            failure_count=job.failure_count,
            pause_reason=job.pause_reason.value if job.pause_reason else None,
            estimated_resume_time=job.estimated_resume_time,
            created_at=job.created_at,
            last_processed_at=job.last_processed_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
            cancelled_at=job.cancelled_at,
            error=job.error,
            errors=[JobErrorView(**entry.model_dump()) for entry in job.errors],
            pattern_history=[
                PatternHistoryView(**entry.model_dump()) for entry in job.pattern_history
            ],
        )


class PatternView(CamelModel):
    name: str
    hour_start: int | None = None
    hour_end: int | None = None
    days: str
    pause: bool
    max_items_per_occurrence: int | None = None
    min_delay: float | None = None
    max_delay: float | None = None
    description: str | None = None

    @classmethod
    def from_pattern(cls, pattern: HumanPattern) -> "PatternView":
        return cls(**pattern.model_dump(mode="json", by_alias=False))


class LimitInfo(CamelModel):
    daily_count: int
    hourly_count: int
    pattern_count: int
    daily_limit: int
    hourly_limit: int
    pattern_limit: int | None = None
    current_pattern: str
    in_pause: bool
    next_active_pattern: str | None = None
    next_active_start: datetime | None = None
    estimated_resume_time: datetime | None = None
    blocked_reason: str | None = None
    can_process: bool
    cooldown_active: bool = False
    cooldown_days_left: int = 0


class CooldownStatusView(CamelModel):
    has_cooldown: bool
    days_remaining: int
    completed_at: datetime | None = None
    cooldown_end_date: datetime | None = None
    overridden: bool = False


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


class StartProcessingResponse(CamelModel):
    success: bool = True
    message: str
    job_id: str
    status: str
    total_contacts: int
    processed_count: int
    attached: bool = False
    limit_info: LimitInfo
    job: JobView


class ConflictResponse(CamelModel):
    success: bool = False
    message: str
    job_id: str | None = None
    can_resume: bool = False
    cooldown_active: bool = False
    cooldown_days_left: int = 0


class JobStatusResponse(CamelModel):
    success: bool = True
    job: JobView


class UserJobResponse(CamelModel):
    success: bool = True
    can_resume: bool
    job: JobView | None = None


class HumanPatternsResponse(CamelModel):
    success: bool = True
    timezone: str
    current_pattern: PatternView
    next_active_pattern: str | None = None
    next_active_start: datetime | None = None
    all_patterns: list[PatternView]


class DailyLimitsResponse(CamelModel):
    success: bool = True
    limits: LimitInfo


class CooldownResponse(CamelModel):
    success: bool = True
    cooldown_status: CooldownStatusView


class MessageResponse(CamelModel):
    success: bool = True
    message: str
    job: JobView | None = None
