"""
Persistence layer for the enrichment engine.

Jobs, sessions, rate counters, cooldown records and worker leases all live
in Redis under one key prefix. Every read-modify-write goes through an
atomic primitive of the Redis client (compare-and-set, reservation script,
SET NX) so concurrent workers and API calls never lose updates.
"""

from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import CooldownRecord, Job, JobStatus, Session
from crm_enricher.infrastructure.observability.logging import get_logger
from crm_enricher.services.infrastructure.redis_client import (
    FastRedisClient,
    RedisClientError,
    fast_redis,
)

logger = get_logger(__name__)

MAX_CAS_RETRIES = 10

ModelT = TypeVar("ModelT", bound=BaseModel)


class StoreError(Exception):
    """Raised when the store cannot read or write an engine record."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class StoreConflictError(StoreError):
    """Optimistic update kept losing to concurrent writers."""

    def __init__(self, key: str):
        super().__init__(f"Too many concurrent updates to {key}", operation="compare_and_set")
        self.key = key


class EnrichmentStore:
    """Redis-backed store adapter for every durable engine record."""

    def __init__(self, redis: FastRedisClient | None = None, prefix: str | None = None):
        self.redis = redis or fast_redis
        self.prefix = prefix or settings.REDIS_KEY_PREFIX

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def status_index_key(self, status: JobStatus) -> str:
        return f"{self.prefix}:jobs:status:{status.value}"

    def quota_job_key(self, quota_key: str) -> str:
        return f"{self.prefix}:quota:{quota_key}:job"

    def session_key(self, caller_id: str) -> str:
        return f"{self.prefix}:session:{caller_id}"

    def counter_key(self, quota_key: str, bucket: str) -> str:
        return f"{self.prefix}:counter:{quota_key}:{bucket}"

    def cooldown_key(self, quota_key: str) -> str:
        return f"{self.prefix}:cooldown:{quota_key}"

    def lease_key(self, job_id: str) -> str:
        return f"{self.prefix}:lease:{job_id}"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode(self, raw: str | None, model: type[ModelT], key: str) -> ModelT | None:
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Stored record failed validation", key=key, error=str(e))
            raise StoreError(f"Corrupt record at {key}", operation="decode", recoverable=False) from e

    async def _get_raw(self, key: str) -> str | None:
        try:
            return await self.redis.get(key)
        except RedisClientError as e:
            raise StoreError(str(e), operation="get") from e

    async def _compare_and_set(self, key: str, expected: str | None, value: str) -> bool:
        try:
            return await self.redis.compare_and_set(key, expected, value)
        except RedisClientError as e:
            raise StoreError(str(e), operation="compare_and_set") from e

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        key = self.job_key(job_id)
        return self._decode(await self._get_raw(key), Job, key)

    async def create_job(self, job: Job) -> None:
        """Persist a brand-new job. Job ids are never reused."""
        key = self.job_key(job.job_id)
        if not await self._compare_and_set(key, None, job.model_dump_json()):
            raise StoreError(f"Job {job.job_id} already exists", operation="create_job", recoverable=False)
        await self._index_status(job.job_id, None, job.status)
        logger.debug("Job persisted", job_id=job.job_id, quota_key=job.quota_key)

    async def delete_job(self, job_id: str) -> None:
        job = await self.get_job(job_id)
        try:
            await self.redis.delete(self.job_key(job_id))
            if job:
                await self.redis.set_remove(self.status_index_key(job.status), job_id)
        except RedisClientError as e:
            raise StoreError(str(e), operation="delete_job") from e

    async def update_job(self, job_id: str, mutate: Callable[[Job], bool]) -> Job | None:
        """
        Apply `mutate` to the latest copy of a job and write it back atomically.

        `mutate` edits the job in place and returns False when nothing changed
        (no write happens). Exceptions raised by `mutate` propagate unchanged.
        The write only lands if nobody else wrote the job since it was read;
        otherwise the mutation is replayed on the fresh copy.

        Returns:
            The job as stored after the update, or None if the job does not exist
        """
        key = self.job_key(job_id)
        for _ in range(MAX_CAS_RETRIES):
            raw = await self._get_raw(key)
            job = self._decode(raw, Job, key)
            if job is None:
                return None

            previous_status = job.status
            if not mutate(job):
                return job

            if await self._compare_and_set(key, raw, job.model_dump_json()):
                if job.status != previous_status:
                    await self._index_status(job_id, previous_status, job.status)
                return job

            logger.debug("Job write lost a race, retrying", job_id=job_id)

        logger.error("Job update retries exhausted", job_id=job_id)
        raise StoreConflictError(key)

    async def _index_status(
        self, job_id: str, previous: JobStatus | None, current: JobStatus
    ) -> None:
        # The index only narrows scans; the job record stays authoritative
        try:
            if previous is not None:
                await self.redis.set_remove(self.status_index_key(previous), job_id)
            await self.redis.set_add(self.status_index_key(current), job_id)
        except RedisClientError as e:
            raise StoreError(str(e), operation="index_status") from e

    async def list_jobs(self, status: JobStatus) -> list[Job]:
        """Jobs whose stored status is `status` (stale index entries are skipped)."""
        try:
            job_ids = sorted(await self.redis.set_members(self.status_index_key(status)))
        except RedisClientError as e:
            raise StoreError(str(e), operation="list_jobs") from e

        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is not None and job.status == status:
                jobs.append(job)
        return jobs

    async def get_current_job_id(self, quota_key: str) -> str | None:
        return await self._get_raw(self.quota_job_key(quota_key))

    async def swap_current_job(self, quota_key: str, expected: str | None, job_id: str) -> bool:
        """Point the quota key at `job_id` if it still points at `expected`."""
        return await self._compare_and_set(self.quota_job_key(quota_key), expected, job_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_session(self, caller_id: str) -> Session | None:
        key = self.session_key(caller_id)
        return self._decode(await self._get_raw(key), Session, key)

    async def save_session(self, session: Session) -> None:
        try:
            await self.redis.set_with_ttl(self.session_key(session.caller_id), session.model_dump_json())
        except RedisClientError as e:
            raise StoreError(str(e), operation="save_session") from e

    # ------------------------------------------------------------------
    # Rate counters
    # ------------------------------------------------------------------

    async def reserve_counters(
        self, quota_key: str, buckets: list[str], limits: list[int | None], ttls_s: list[int]
    ) -> tuple[int | None, list[int]]:
        """Increment every bucket counter unless one is at its limit (all or nothing)."""
        keys = [self.counter_key(quota_key, bucket) for bucket in buckets]
        try:
            return await self.redis.incr_if_below(keys, limits, ttls_s)
        except RedisClientError as e:
            raise StoreError(str(e), operation="reserve_counters") from e

    async def get_counters(self, quota_key: str, buckets: list[str]) -> list[int]:
        keys = [self.counter_key(quota_key, bucket) for bucket in buckets]
        try:
            values = await self.redis.get_many(keys)
        except RedisClientError as e:
            raise StoreError(str(e), operation="get_counters") from e
        return [int(value) if value else 0 for value in values]

    # ------------------------------------------------------------------
    # Cooldowns
    # ------------------------------------------------------------------

    async def get_cooldown(self, quota_key: str) -> CooldownRecord | None:
        key = self.cooldown_key(quota_key)
        return self._decode(await self._get_raw(key), CooldownRecord, key)

    async def upsert_cooldown(
        self,
        quota_key: str,
        mutate: Callable[[CooldownRecord | None], CooldownRecord | None],
    ) -> CooldownRecord | None:
        """
        Compare-and-set loop over the cooldown record.

        `mutate` receives the current record (or None) and returns the record
        to store, or None to leave the stored value untouched.
        """
        key = self.cooldown_key(quota_key)
        for _ in range(MAX_CAS_RETRIES):
            raw = await self._get_raw(key)
            current = self._decode(raw, CooldownRecord, key)
            updated = mutate(current)
            if updated is None:
                return current
            if await self._compare_and_set(key, raw, updated.model_dump_json()):
                return updated

        raise StoreConflictError(key)

    async def delete_cooldown(self, quota_key: str) -> bool:
        try:
            return await self.redis.delete(self.cooldown_key(quota_key))
        except RedisClientError as e:
            raise StoreError(str(e), operation="delete_cooldown") from e

    # ------------------------------------------------------------------
    # Worker leases
    # ------------------------------------------------------------------

    async def acquire_lease(self, job_id: str, token: str, ttl_s: int) -> bool:
        try:
            return await self.redis.set_if_absent(self.lease_key(job_id), token, ttl_s)
        except RedisClientError as e:
            raise StoreError(str(e), operation="acquire_lease") from e

    async def renew_lease(self, job_id: str, token: str, ttl_s: int) -> bool:
        try:
            return await self.redis.compare_and_expire(self.lease_key(job_id), token, ttl_s)
        except RedisClientError as e:
            raise StoreError(str(e), operation="renew_lease") from e

    async def release_lease(self, job_id: str, token: str) -> bool:
        try:
            return await self.redis.compare_and_delete(self.lease_key(job_id), token)
        except RedisClientError as e:
            raise StoreError(str(e), operation="release_lease") from e

    async def lease_holder(self, job_id: str) -> str | None:
        return await self._get_raw(self.lease_key(job_id))
