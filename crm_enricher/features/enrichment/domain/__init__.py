"""
Domain subpackage for the enrichment feature.
"""

from .errors import (
    CooldownNotFoundError,
    EnrichmentError,
    InvalidJobTransitionError,
    JobConflictError,
    JobNotFoundError,
    NoItemsError,
)
from .models import (
    ACTIVE_STATUSES,
    RATE_PAUSE_REASONS,
    TERMINAL_STATUSES,
    CooldownRecord,
    DayFilter,
    Decision,
    Deny,
    HumanPattern,
    ItemOutcome,
    ItemStatus,
    Job,
    JobErrorEntry,
    JobEvent,
    JobItem,
    JobStatus,
    PatternHistoryEntry,
    PauseReason,
    Proceed,
    Session,
)

__all__ = [
    "ACTIVE_STATUSES",
    "RATE_PAUSE_REASONS",
    "TERMINAL_STATUSES",
    "CooldownNotFoundError",
    "CooldownRecord",
    "DayFilter",
    "Decision",
    "Deny",
    "EnrichmentError",
    "HumanPattern",
    "InvalidJobTransitionError",
    "ItemOutcome",
    "ItemStatus",
    "Job",
    "JobConflictError",
    "JobErrorEntry",
    "JobEvent",
    "JobItem",
    "JobNotFoundError",
    "JobStatus",
    "NoItemsError",
    "PatternHistoryEntry",
    "PauseReason",
    "Proceed",
    "Session",
]
