"""
Dataverse (Dynamics 365) Web API client.
Lists contacts that carry a profile URL and patches enriched fields back.
"""

import asyncio
from typing import Any

import httpx

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import JobItem, Session
from crm_enricher.features.enrichment.services import (
    CollaboratorError,
    CredentialRefreshError,
    ItemNotFoundError,
    QuotaExceededError,
    SessionService,
)
from crm_enricher.infrastructure.observability.logging import get_logger
from crm_enricher.services.crm_token_service import CrmTokenError, CrmTokenService

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {500, 502, 503, 504}


class DataverseClient:
    """
    CRM reader and writer backed by the Dataverse Web API.

    A 401 triggers one token refresh through CrmTokenService; the refreshed
    token is persisted into the caller's session before the retry.
    """

    def __init__(
        self,
        sessions: SessionService,
        token_service: CrmTokenService,
        client: httpx.AsyncClient | None = None,
    ):
        self.sessions = sessions
        self.token_service = token_service
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()
        await self.token_service.close()

    def _endpoint(self, session: Session) -> str:
        return f"{session.crm_url.rstrip('/')}/api/data/{settings.CRM_API_VERSION}"

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
        }

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff on transient failures."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Dataverse retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise CollaboratorError(f"Dataverse unreachable: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Dataverse request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise CollaboratorError("Dataverse retry loop exhausted")

    async def _authorized_request(
        self, session: Session, method: str, url: str, **kwargs
    ) -> tuple[httpx.Response, Session]:
        response = await self._request_with_retry(
            method, url, headers=self._get_auth_headers(session.access_token), **kwargs
        )
        if response.status_code != 401:
            return response, session

        logger.info("Dataverse token rejected, refreshing", caller_id=session.caller_id)
        try:
            session = await self.token_service.refresh(session)
        except CrmTokenError as e:
            raise CredentialRefreshError(f"CRM token refresh failed: {e}", status_code=401) from e
        await self.sessions.save_session(session)

        response = await self._request_with_retry(
            method, url, headers=self._get_auth_headers(session.access_token), **kwargs
        )
        if response.status_code == 401:
            raise CredentialRefreshError("CRM rejected the refreshed token", status_code=401)
        return response, session

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return

        try:
            error_data = response.json() if response.text else {}
            message = error_data.get("error", {}).get("message") or response.reason_phrase
        except ValueError:
            message = response.text[:200] if response.text else response.reason_phrase

        logger.warning(
            f"Dataverse {operation} failed",
            status_code=response.status_code,
            error_message=message,
        )

        if response.status_code == 404:
            raise ItemNotFoundError(f"CRM record not found: {message}", status_code=404)
        if response.status_code == 429:
            raise QuotaExceededError(f"CRM API limit reached: {message}", status_code=429)
        raise CollaboratorError(
            f"Dataverse {operation} failed (HTTP {response.status_code}): {message}",
            status_code=response.status_code,
        )

    async def list_items(self, session: Session) -> list[JobItem]:
        """Contacts with a non-empty profile URL, as job items."""
        field = settings.CRM_PROFILE_URL_FIELD
        url = f"{self._endpoint(session)}/contacts"
        params = {
            "$select": f"contactid,fullname,{field}",
            "$filter": f"{field} ne null",
        }

        items: list[JobItem] = []
        next_url: str | None = url
        while next_url:
            response, session = await self._authorized_request(
                session, "GET", next_url, params=params if next_url == url else None
            )
            self._raise_for_status(response, "list_contacts")
            payload = response.json()
            for contact in payload.get("value", []):
                source_ref = (contact.get(field) or "").strip()
                if not source_ref:
                    continue
                items.append(
                    JobItem(
                        item_id=contact["contactid"],
                        source_ref=source_ref,
                        label=contact.get("fullname"),
                    )
                )
            next_url = payload.get("@odata.nextLink")

        logger.info("Listed CRM contacts", caller_id=session.caller_id, contacts=len(items))
        return items

    async def update_record(self, session: Session, record_id: str, fields: dict[str, Any]) -> None:
        url = f"{self._endpoint(session)}/contacts({record_id})"
        response, _ = await self._authorized_request(session, "PATCH", url, json=fields)
        self._raise_for_status(response, "update_contact")
        logger.debug("CRM contact updated", record_id=record_id, fields=sorted(fields))
