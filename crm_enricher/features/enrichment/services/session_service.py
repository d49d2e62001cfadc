"""
Session access for the engine: upserting a caller's credentials and
finding a participant whose session can still carry work.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from crm_enricher.features.enrichment.domain import Session
from crm_enricher.features.enrichment.repository import EnrichmentStore
from crm_enricher.features.enrichment.services.quota import quota_key_for
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SessionService:
    def __init__(self, store: EnrichmentStore, now_fn: Callable[[], datetime] | None = None):
        self.store = store
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    async def get_session(self, caller_id: str) -> Session | None:
        return await self.store.get_session(caller_id)

    async def upsert_session(self, caller_id: str, **fields) -> Session:
        """Merge non-empty fields into the caller's stored session."""
        session = await self.store.get_session(caller_id) or Session(caller_id=caller_id)
        updates = {key: value for key, value in fields.items() if value is not None}
        updates["last_activity"] = self.now_fn()
        session = session.model_copy(update=updates)
        await self.store.save_session(session)
        logger.info(
            "Session updated",
            caller_id=caller_id,
            has_crm_url=bool(session.crm_url),
            has_refresh_token=bool(session.refresh_token),
        )
        return session

    async def save_session(self, session: Session) -> None:
        await self.store.save_session(session)

    async def quota_key_for_caller(self, caller_id: str) -> str:
        session = await self.store.get_session(caller_id)
        return quota_key_for(caller_id, session.crm_url if session else None)

    async def get_live_session(self, participant_ids: Iterable[str]) -> Session | None:
        """First participant session that is valid right now, in join order."""
        now = self.now_fn()
        for caller_id in participant_ids:
            session = await self.store.get_session(caller_id)
            if session is not None and session.is_valid(now):
                return session
            logger.debug("Participant session not usable", caller_id=caller_id)
        return None
