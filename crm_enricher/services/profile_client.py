"""
Profile source client.
Resolves a contact's profile URL to a profile id and fetches the profile
from the configured profile API.
"""

import asyncio
import re
from typing import Any

import httpx

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import Session
from crm_enricher.features.enrichment.services import (
    CollaboratorError,
    InvalidSourceRefError,
    ItemNotFoundError,
    QuotaExceededError,
    SessionInvalidError,
)
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 20  # seconds
MAX_RETRIES = 2
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {500, 502, 503, 504}

_PROFILE_ID = re.compile(r"/in/([^/?#]+)")


def extract_profile_id(source_ref: str) -> str:
    """
    Pull the profile id out of a `/in/<id>` profile URL.

    Raises:
        InvalidSourceRefError: If the URL has no profile id
    """
    match = _PROFILE_ID.search(source_ref or "")
    if not match:
        raise InvalidSourceRefError(f"Not a profile URL: {source_ref!r}")
    return match.group(1)


class ProfileApiClient:
    """Fetches profiles with the session's profile-source token."""

    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or settings.PROFILE_API_BASE_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT))

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, url: str, headers: dict) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.get(url, headers=headers)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    await asyncio.sleep(BACKOFF_FACTOR * (2 ** (attempt - 1)))
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise CollaboratorError(f"Profile source unreachable: {e}") from e
                await asyncio.sleep(BACKOFF_FACTOR * (2 ** (attempt - 1)))
        raise CollaboratorError("Profile source retry loop exhausted")

    async def fetch_profile(self, session: Session, source_ref: str) -> dict[str, Any]:
        profile_id = extract_profile_id(source_ref)
        if not session.profile_token:
            raise SessionInvalidError("Session has no profile source token")

        response = await self._get_with_retry(
            f"{self.base_url}/profiles/{profile_id}",
            headers={
                "Authorization": f"Bearer {session.profile_token}",
                "Accept": "application/json",
            },
        )

        status = response.status_code
        if status in (401, 403):
            raise SessionInvalidError("Profile source rejected the session", status_code=status)
        if status == 404:
            raise ItemNotFoundError(f"Profile {profile_id} not found", status_code=status)
        if status == 429:
            raise QuotaExceededError("Profile source rate limit reached", status_code=status)
        if not response.is_success:
            raise CollaboratorError(f"Profile fetch failed (HTTP {status})", status_code=status)

        try:
            profile = response.json()
        except ValueError as e:
            raise CollaboratorError(f"Invalid profile response: {e}") from e

        logger.debug("Profile fetched", profile_id=profile_id)
        return profile
