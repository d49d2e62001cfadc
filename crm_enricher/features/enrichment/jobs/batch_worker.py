"""
Batch worker loop.

Advances one job one item at a time: validate a participant session, ask
the rate limiter for permission, wait out the pacing delay, then fetch,
transform and write a single item. Quota denials and credential problems
pause the job; per-item failures are recorded and the loop moves on;
anything unexpected fails the job.

A worker holds a lease on its job for the whole run, so at most one worker
processes a job at any time even across processes. A worker that finds its
lease gone stops at once, and an item is only worked on by the worker that
claimed it.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import (
    Deny,
    ItemOutcome,
    Job,
    JobItem,
    JobStatus,
    PauseReason,
    Session,
)
from crm_enricher.features.enrichment.repository import EnrichmentStore
from crm_enricher.features.enrichment.services import (
    CollaboratorError,
    CrmWriter,
    FatalCollaboratorError,
    JobLifecycleManager,
    ProfileFetcher,
    ProfileTransformer,
    RateLimiter,
    SessionService,
)
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

LEASE_LOST = "lease_lost"


@dataclass(slots=True)
class WorkerRunResult:
    job_id: str
    stop_reason: str
    items_processed: int = 0


class BatchWorker:
    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        rate_limiter: RateLimiter,
        sessions: SessionService,
        store: EnrichmentStore,
        fetcher: ProfileFetcher,
        transformer: ProfileTransformer,
        writer: CrmWriter,
        collaborator_timeout: float | None = None,
        lease_ttl_seconds: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self.lifecycle = lifecycle
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.store = store
        self.fetcher = fetcher
        self.transformer = transformer
        self.writer = writer
        self.collaborator_timeout = collaborator_timeout or settings.COLLABORATOR_TIMEOUT_SECONDS
        self.lease_ttl_seconds = lease_ttl_seconds or settings.WORKER_LEASE_TTL_SECONDS
        self.sleep = sleep
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    async def run(self, job_id: str) -> WorkerRunResult:
        """Process `job_id` until it pauses, completes, fails or is cancelled."""
        lease_token = uuid.uuid4().hex
        if not await self.store.acquire_lease(job_id, lease_token, self.lease_ttl_seconds):
            logger.info("Job already has a worker, skipping", job_id=job_id)
            return WorkerRunResult(job_id, "lease_held")

        processed = 0
        try:
            job = await self.lifecycle.get_job(job_id)
            if job.is_terminal:
                return WorkerRunResult(job_id, job.status.value)

            await self.lifecycle.transition_to_processing(job_id)
            await self.lifecycle.requeue_in_flight(job_id)
            logger.info("Worker started", job_id=job_id, quota_key=job.quota_key)

            while True:
                job = await self.lifecycle.get_job(job_id)
                if job.status != JobStatus.PROCESSING:
                    return self._stopped(job, processed)
                if not await self._keep_lease(job, lease_token, self.lease_ttl_seconds):
                    return WorkerRunResult(job_id, LEASE_LOST, processed)

                session = await self._live_session(job)
                if session is None:
                    await self.lifecycle.transition_to_paused(job_id, PauseReason.SESSION_INVALID)
                    return WorkerRunResult(job_id, PauseReason.SESSION_INVALID.value, processed)

                if job.next_pending_item() is None:
                    await self.lifecycle.evaluate_completion(job_id)
                    job = await self.lifecycle.get_job(job_id)
                    return self._stopped(job, processed)

                decision = await self.rate_limiter.check_and_reserve(job.quota_key, self.now_fn())
                if isinstance(decision, Deny):
                    await self.lifecycle.transition_to_paused(
                        job_id, decision.reason, decision.estimated_resume_time
                    )
                    return WorkerRunResult(job_id, decision.reason.value, processed)

                delay_ttl = self.lease_ttl_seconds + int(decision.delay)
                if not await self._keep_lease(job, lease_token, delay_ttl):
                    return WorkerRunResult(job_id, LEASE_LOST, processed)
                await self.sleep(decision.delay)

                # Cancellation or a lease takeover may have landed during the delay
                job = await self.lifecycle.get_job(job_id)
                if job.status != JobStatus.PROCESSING:
                    return self._stopped(job, processed)
                if not await self._keep_lease(job, lease_token, self.lease_ttl_seconds):
                    return WorkerRunResult(job_id, LEASE_LOST, processed)
                item = job.next_pending_item()
                if item is None:
                    continue

                if not await self.lifecycle.mark_item_processing(job_id, item.item_id):
                    logger.info("Item already claimed, skipping", job_id=job_id, item_id=item.item_id)
                    continue
                outcome, pause_reason = await self._process_item(job, session, item)
                await self.lifecycle.record_item_outcome(
                    job_id, item.item_id, outcome, pattern_name=decision.pattern
                )
                processed += 1

                if pause_reason is not None:
                    resume_at = (
                        self.rate_limiter.estimate_resume_time(pause_reason, self.now_fn())
                        if pause_reason == PauseReason.DAILY_LIMIT_REACHED
                        else None
                    )
                    await self.lifecycle.transition_to_paused(job_id, pause_reason, resume_at)
                    return WorkerRunResult(job_id, pause_reason.value, processed)

        except asyncio.CancelledError:
            logger.info("Worker task cancelled", job_id=job_id, items_processed=processed)
            raise
        except Exception as e:
            logger.error(
                "Worker failed with internal error",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._fail_job(job_id, f"{type(e).__name__}: {e}")
            return WorkerRunResult(job_id, JobStatus.FAILED.value, processed)
        finally:
            await self._release(job_id, lease_token)

    def _stopped(self, job: Job, processed: int) -> WorkerRunResult:
        logger.info(
            "Worker stopped",
            job_id=job.job_id,
            quota_key=job.quota_key,
            status=job.status.value,
            items_processed=processed,
        )
        return WorkerRunResult(job.job_id, job.status.value, processed)

    async def _keep_lease(self, job: Job, lease_token: str, ttl_s: int) -> bool:
        if await self.store.renew_lease(job.job_id, lease_token, ttl_s):
            return True
        logger.warning(
            "Worker lease lost, stopping without further writes",
            job_id=job.job_id,
            quota_key=job.quota_key,
        )
        return False

    async def _transform(self, profile: dict) -> dict:
        try:
            return await asyncio.wait_for(
                self.transformer.transform(profile), self.collaborator_timeout
            )
        except (CollaboratorError, TimeoutError):
            raise
        except Exception as e:
            raise CollaboratorError(f"Profile could not be mapped: {type(e).__name__}: {e}") from e

    async def _live_session(self, job: Job) -> Session | None:
        try:
            return await asyncio.wait_for(
                self.sessions.get_live_session(job.participant_ids), self.collaborator_timeout
            )
        except TimeoutError:
            logger.warning("Session validation timed out", job_id=job.job_id)
            return None

    async def _process_item(
        self, job: Job, session: Session, item: JobItem
    ) -> tuple[ItemOutcome, PauseReason | None]:
        """
        Fetch, transform and write one item.

        Returns:
            The item outcome, plus the pause reason when the failure must stop the run
        """
        timeout = self.collaborator_timeout
        try:
            profile = await asyncio.wait_for(
                self.fetcher.fetch_profile(session, item.source_ref), timeout
            )
            fields = await self._transform(profile)
            await asyncio.wait_for(self.writer.update_record(session, item.item_id, fields), timeout)
            return ItemOutcome.succeeded(), None

        except FatalCollaboratorError as e:
            logger.warning(
                "Collaborator failure stops this run",
                job_id=job.job_id,
                item_id=item.item_id,
                reason=e.pause_reason.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ItemOutcome.failed(str(e)), e.pause_reason

        except CollaboratorError as e:
            return ItemOutcome.failed(str(e)), None

        except TimeoutError:
            logger.warning(
                "Collaborator call timed out",
                job_id=job.job_id,
                item_id=item.item_id,
                timeout_seconds=timeout,
            )
            return ItemOutcome.failed(f"Timed out after {timeout}s"), None

    async def _fail_job(self, job_id: str, error: str) -> None:
        try:
            await self.lifecycle.mark_failed(job_id, error)
        except Exception as e:
            logger.error("Could not mark job failed", job_id=job_id, error=str(e))

    async def _release(self, job_id: str, lease_token: str) -> None:
        try:
            await self.store.release_lease(job_id, lease_token)
        except Exception as e:
            # Lease expires on its own
            logger.warning("Could not release worker lease", job_id=job_id, error=str(e))
