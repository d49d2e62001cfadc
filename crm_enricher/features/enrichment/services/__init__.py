"""
Service layer for the enrichment feature.
"""

from .collaborators import (
    CollaboratorError,
    CredentialRefreshError,
    CrmReader,
    CrmWriter,
    FatalCollaboratorError,
    InvalidSourceRefError,
    ItemNotFoundError,
    ProfileFetcher,
    ProfileTransformer,
    QuotaExceededError,
    SessionInvalidError,
)
from .cooldown_service import CooldownManager
from .human_patterns import HumanPatternTable, PatternConfigError, get_pattern_table, load_patterns
from .job_lifecycle import JobLifecycleManager
from .quota import normalize_crm_url, quota_key_for
from .rate_limiter import RateLimiter
from .session_service import SessionService

__all__ = [
    "CollaboratorError",
    "CooldownManager",
    "CredentialRefreshError",
    "CrmReader",
    "CrmWriter",
    "FatalCollaboratorError",
    "HumanPatternTable",
    "InvalidSourceRefError",
    "ItemNotFoundError",
    "JobLifecycleManager",
    "PatternConfigError",
    "ProfileFetcher",
    "ProfileTransformer",
    "QuotaExceededError",
    "RateLimiter",
    "SessionInvalidError",
    "SessionService",
    "get_pattern_table",
    "load_patterns",
    "normalize_crm_url",
    "quota_key_for",
]
