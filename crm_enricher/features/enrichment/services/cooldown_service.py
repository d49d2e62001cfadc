"""
Cooldown manager.

After a job completes, its quota key rests for COOLDOWN_DAYS before a new
job may start. Two distinct escape hatches exist: `override` flags the
record and leaves history in place, `reset_all` deletes it outright.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import CooldownNotFoundError, CooldownRecord, Job
from crm_enricher.features.enrichment.repository import EnrichmentStore
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class CooldownManager:
    """Sole writer of cooldown records."""

    def __init__(
        self,
        store: EnrichmentStore,
        cooldown_days: int | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.cooldown_days = cooldown_days if cooldown_days is not None else settings.COOLDOWN_DAYS
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    async def on_completed(self, job: Job) -> CooldownRecord:
        completed_at = job.completed_at or self.now_fn()
        record = CooldownRecord(
            quota_key=job.quota_key,
            job_id=job.job_id,
            completed_at=completed_at,
            cooldown_end_date=completed_at + timedelta(days=self.cooldown_days),
        )
        await self.store.upsert_cooldown(job.quota_key, lambda _current: record)
        logger.info(
            "Cooldown started",
            job_id=job.job_id,
            quota_key=job.quota_key,
            cooldown_end_date=record.cooldown_end_date.isoformat(),
        )
        return record

    async def get_record(self, quota_key: str) -> CooldownRecord | None:
        return await self.store.get_cooldown(quota_key)

    async def is_blocked(self, quota_key: str, now: datetime | None = None) -> bool:
        record = await self.store.get_cooldown(quota_key)
        return record is not None and record.is_blocking(now or self.now_fn())

    async def days_remaining(self, quota_key: str, now: datetime | None = None) -> int:
        record = await self.store.get_cooldown(quota_key)
        return record.days_remaining(now or self.now_fn()) if record else 0

    async def status(self, quota_key: str, now: datetime | None = None) -> dict[str, Any]:
        now = now or self.now_fn()
        record = await self.store.get_cooldown(quota_key)
        if record is None:
            return {
                "has_cooldown": False,
                "days_remaining": 0,
                "completed_at": None,
                "cooldown_end_date": None,
                "overridden": False,
            }
        return {
            "has_cooldown": record.is_blocking(now),
            "days_remaining": record.days_remaining(now),
            "completed_at": record.completed_at,
            "cooldown_end_date": record.cooldown_end_date,
            "overridden": record.overridden,
        }

    async def override(
        self, quota_key: str, reason: str, caller_id: str | None = None
    ) -> CooldownRecord:
        """Unblock new jobs for `quota_key`; the record and all counters are kept."""
        now = self.now_fn()

        def _flag(current: CooldownRecord | None) -> CooldownRecord | None:
            if current is None:
                raise CooldownNotFoundError(quota_key)
            return current.model_copy(
                update={
                    "overridden": True,
                    "override_reason": reason,
                    "overridden_at": now,
                    "overridden_by": caller_id,
                }
            )

        record = await self.store.upsert_cooldown(quota_key, _flag)
        logger.warning(
            "Cooldown overridden",
            quota_key=quota_key,
            reason=reason,
            caller_id=caller_id,
        )
        return record

    async def reset_all(self, quota_key: str) -> bool:
        """Delete the cooldown record entirely. Rate counters are not touched."""
        deleted = await self.store.delete_cooldown(quota_key)
        logger.warning("Cooldown record deleted", quota_key=quota_key, existed=deleted)
        return deleted
