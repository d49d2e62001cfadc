"""
Seams between the engine and the outside world.

The worker only talks to these protocols. Implementations report problems
through the typed errors below; the worker classifies failures by type,
never by message text.
"""

from typing import Any, Protocol

from crm_enricher.features.enrichment.domain import JobItem, PauseReason, Session


class CollaboratorError(Exception):
    """Per-item failure. The item is marked failed and the run continues."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ItemNotFoundError(CollaboratorError):
    """The profile or the CRM record behind an item no longer exists."""


class InvalidSourceRefError(CollaboratorError):
    """The item's source reference cannot be turned into a profile lookup."""


class FatalCollaboratorError(CollaboratorError):
    """Failure that stops the current run and pauses the job."""

    pause_reason: PauseReason


class SessionInvalidError(FatalCollaboratorError):
    pause_reason = PauseReason.SESSION_INVALID


class CredentialRefreshError(FatalCollaboratorError):
    pause_reason = PauseReason.TOKEN_REFRESH_FAILED


class QuotaExceededError(FatalCollaboratorError):
    pause_reason = PauseReason.DAILY_LIMIT_REACHED


class ProfileFetcher(Protocol):
    async def fetch_profile(self, session: Session, source_ref: str) -> dict[str, Any]: ...


class ProfileTransformer(Protocol):
    async def transform(self, profile: dict[str, Any]) -> dict[str, Any]: ...


class CrmReader(Protocol):
    async def list_items(self, session: Session) -> list[JobItem]: ...


class CrmWriter(Protocol):
    async def update_record(self, session: Session, record_id: str, fields: dict[str, Any]) -> None: ...
