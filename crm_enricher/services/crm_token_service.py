"""
OAuth token refresh for the CRM (Microsoft identity platform).
Exchanges a session's refresh token for a new access token.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import Session
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4, 8 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class CrmTokenError(Exception):
    """Custom exception for CRM OAuth errors."""

    def __init__(
        self, message: str, error_code: str | None = None, response_data: dict | None = None
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}


class TokenResponse:
    """Structured representation of OAuth token response."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = data.get("expires_in")

        if self.expires_in:
            self.expires_at = datetime.now(UTC) + timedelta(seconds=int(self.expires_in))
        else:
            self.expires_at = None

    def is_valid(self) -> bool:
        return bool(self.access_token and self.token_type)


class CrmTokenService:
    """Refreshes CRM access tokens with retry on transient failures."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT))

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_with_retry(self, url: str, data: dict) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.post(
                    url,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "CRM token endpoint retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "CRM token request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("CRM token retry loop exhausted")

    async def refresh(self, session: Session) -> Session:
        """
        Refresh the session's CRM access token.

        Args:
            session: Session holding refresh token, client id and tenant id

        Returns:
            Session: Copy of the session carrying the new token

        Raises:
            CrmTokenError: If the session cannot be refreshed
        """
        if not session.can_refresh():
            raise CrmTokenError("Session has no refresh credentials", error_code="no_refresh_token")

        data = {
            "client_id": session.client_id,
            "scope": f"{session.crm_url.rstrip('/')}/.default",
            "grant_type": "refresh_token",
            "refresh_token": session.refresh_token,
            "redirect_uri": settings.CRM_OAUTH_REDIRECT_URI,
        }
        if session.verifier:
            data["code_verifier"] = session.verifier

        url = settings.CRM_OAUTH_TOKEN_URL.format(tenant_id=session.tenant_id)
        logger.info(
            "Refreshing CRM access token",
            caller_id=session.caller_id,
            refresh_token_preview=session.refresh_token[:8] + "...",
        )

        try:
            response = await self._post_with_retry(url, data)
        except httpx.RequestError as e:
            logger.error("Network error during CRM token refresh", error=str(e))
            raise CrmTokenError(f"Network error during token refresh: {e}") from e

        try:
            payload = response.json() if response.text else {}
        except ValueError:
            payload = {}

        if not response.is_success or payload.get("error"):
            error_code = payload.get("error", f"http_{response.status_code}")
            logger.error(
                "CRM token refresh rejected",
                caller_id=session.caller_id,
                status_code=response.status_code,
                error_code=error_code,
            )
            raise CrmTokenError(
                payload.get("error_description") or f"Token refresh failed ({error_code})",
                error_code=error_code,
                response_data=payload,
            )

        token = TokenResponse(payload)
        if not token.is_valid():
            raise CrmTokenError("Token response missing access token", error_code="invalid_response")

        return session.model_copy(
            update={
                "access_token": token.access_token,
                # The identity platform may omit a new refresh token
                "refresh_token": token.refresh_token or session.refresh_token,
                "token_expires_at": token.expires_at,
            }
        )
