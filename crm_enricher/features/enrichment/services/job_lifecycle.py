"""
Job lifecycle manager.

Single owner of job state transitions:

    pending -> processing -> {paused <-> processing, completed, failed, cancelled}

Terminal jobs are never mutated back into the pipeline; `restart` and
`reset_all` create a fresh job seeded from the old one's items and repoint
the quota key at it. Every write is a compare-and-set on the job record, so
API calls and the job's worker can race safely.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    EnrichmentError,
    InvalidJobTransitionError,
    ItemOutcome,
    ItemStatus,
    Job,
    JobConflictError,
    JobErrorEntry,
    JobEvent,
    JobItem,
    JobNotFoundError,
    JobStatus,
    NoItemsError,
    PatternHistoryEntry,
    PauseReason,
)
from crm_enricher.features.enrichment.repository import EnrichmentStore, StoreConflictError
from crm_enricher.features.enrichment.services.cooldown_service import CooldownManager
from crm_enricher.infrastructure.observability.logging import get_logger, log_job_transition

logger = get_logger(__name__)

MAX_ATTACH_ATTEMPTS = 5

JobListener = Callable[[JobEvent], Awaitable[None]]


class JobLifecycleManager:
    def __init__(
        self,
        store: EnrichmentStore,
        cooldown: CooldownManager,
        max_error_log: int | None = None,
        max_credential_failures: int | None = None,
        zone: ZoneInfo | None = None,
        now_fn: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self.store = store
        self.cooldown = cooldown
        self.max_error_log = max_error_log or settings.MAX_ERROR_LOG
        self.max_credential_failures = max_credential_failures or settings.MAX_CREDENTIAL_FAILURES
        self.zone = zone or settings.pattern_zone()
        self.now_fn = now_fn or (lambda: datetime.now(UTC))
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._listeners: list[JobListener] = []

    # ------------------------------------------------------------------
    # Notification hook
    # ------------------------------------------------------------------

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _publish(self, event: str, job: Job, **data) -> None:
        job_event = JobEvent(
            event=event,
            job_id=job.job_id,
            quota_key=job.quota_key,
            status=job.status,
            at=self.now_fn(),
            data=data,
        )
        for listener in list(self._listeners):
            try:
                await listener(job_event)
            except Exception as e:
                logger.warning(
                    "Job listener failed",
                    job_id=job.job_id,
                    job_event=event,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_current_job(self, quota_key: str) -> Job | None:
        job_id = await self.store.get_current_job_id(quota_key)
        return await self.store.get_job(job_id) if job_id else None

    async def list_jobs(self, status: JobStatus) -> list[Job]:
        return await self.store.list_jobs(status)

    async def _update(self, job_id: str, mutate: Callable[[Job], bool]) -> Job:
        job = await self.store.update_job(job_id, mutate)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _new_job(
        self,
        quota_key: str,
        participant_ids: list[str],
        items: list[JobItem],
        restarted_from: str | None = None,
    ) -> Job:
        return Job(
            job_id=self.id_factory(),
            quota_key=quota_key,
            participant_ids=list(dict.fromkeys(participant_ids)),
            status=JobStatus.PENDING,
            items=[
                item.model_copy(
                    update={"status": ItemStatus.PENDING, "last_error": None, "processed_at": None}
                )
                for item in items
            ],
            created_at=self.now_fn(),
            restarted_from=restarted_from,
        )

    async def _install_job(self, job: Job, expected_current: str | None) -> bool:
        """Persist `job` and make it the quota key's current job, or roll back."""
        await self.store.create_job(job)
        if await self.store.swap_current_job(job.quota_key, expected_current, job.job_id):
            return True
        await self.store.delete_job(job.job_id)
        return False

    async def create_or_attach(self, quota_key: str, caller_id: str, items: list[JobItem]) -> Job:
        """
        Return the quota key's live job with `caller_id` attached, or a new one.

        Raises:
            JobConflictError: the cooldown for `quota_key` is active
            NoItemsError: a new job would have nothing to do
        """
        for _ in range(MAX_ATTACH_ATTEMPTS):
            current_id = await self.store.get_current_job_id(quota_key)
            current = await self.store.get_job(current_id) if current_id else None

            if current is not None and current.status in ACTIVE_STATUSES:
                attached = await self.store.update_job(
                    current.job_id,
                    lambda job: job.status in ACTIVE_STATUSES and job.add_participant(caller_id),
                )
                if attached is not None and attached.status in ACTIVE_STATUSES:
                    logger.info(
                        "Caller attached to existing job",
                        job_id=attached.job_id,
                        quota_key=quota_key,
                        caller_id=caller_id,
                        participants=len(attached.participant_ids),
                    )
                    await self._publish("attached", attached, caller_id=caller_id)
                    return attached
                continue

            now = self.now_fn()
            record = await self.cooldown.get_record(quota_key)
            if record is not None and record.is_blocking(now):
                days_left = record.days_remaining(now)
                logger.info(
                    "Job creation blocked by cooldown",
                    quota_key=quota_key,
                    caller_id=caller_id,
                    cooldown_days_left=days_left,
                )
                raise JobConflictError(
                    f"Processing is cooling down for {days_left} more day(s)",
                    job_id=record.job_id,
                    can_resume=False,
                    cooldown_active=True,
                    cooldown_days_left=days_left,
                )

            if not items:
                raise NoItemsError(quota_key)

            job = self._new_job(quota_key, [caller_id], items)
            if await self._install_job(job, current_id):
                log_job_transition(job.job_id, quota_key, None, job.status.value, items=len(items))
                await self._publish("created", job, caller_id=caller_id)
                return job

            logger.debug("Quota pointer moved during creation, retrying", quota_key=quota_key)

        raise StoreConflictError(self.store.quota_job_key(quota_key))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition_to_processing(self, job_id: str) -> Job:
        """pending/paused -> processing. Idempotent for processing jobs."""
        previous: dict = {}

        def _mutate(job: Job) -> bool:
            previous["status"] = job.status
            if job.status == JobStatus.PROCESSING:
                return False
            if job.status not in (JobStatus.PENDING, JobStatus.PAUSED):
                raise InvalidJobTransitionError(job_id, job.status.value, JobStatus.PROCESSING.value)
            job.status = JobStatus.PROCESSING
            job.pause_reason = None
            job.estimated_resume_time = None
            return True

        job = await self._update(job_id, _mutate)
        if previous["status"] != JobStatus.PROCESSING:
            log_job_transition(job_id, job.quota_key, previous["status"].value, job.status.value)
            await self._publish("processing", job)
        return job

    async def transition_to_paused(
        self,
        job_id: str,
        reason: PauseReason,
        estimated_resume_time: datetime | None = None,
    ) -> Job:
        """
        processing -> paused with a structured reason.

        Never raises for a job in the wrong state; the request is logged and
        ignored. Repeated token refresh failures escalate to `failed`.
        """
        now = self.now_fn()
        outcome: dict = {}

        def _mutate(job: Job) -> bool:
            outcome["from"] = job.status
            outcome["to"] = job.status
            if job.status != JobStatus.PROCESSING:
                return False

            job.close_pattern_window(now)
            if reason == PauseReason.TOKEN_REFRESH_FAILED:
                job.credential_failures += 1
                if job.credential_failures >= self.max_credential_failures:
                    job.status = JobStatus.FAILED
                    job.failed_at = now
                    job.error = (
                        f"Credential refresh failed {job.credential_failures} times in a row"
                    )
                    job.pause_reason = None
                    job.estimated_resume_time = None
                    outcome["to"] = job.status
                    return True

            job.status = JobStatus.PAUSED
            job.pause_reason = reason
            job.estimated_resume_time = estimated_resume_time
            outcome["to"] = job.status
            return True

        job = await self._update(job_id, _mutate)

        if outcome["from"] != JobStatus.PROCESSING:
            logger.info(
                "Pause ignored, job is not processing",
                job_id=job_id,
                quota_key=job.quota_key,
                status=job.status.value,
                reason=reason.value,
            )
            return job

        if outcome["to"] == JobStatus.FAILED:
            log_job_transition(
                job_id, job.quota_key, JobStatus.PROCESSING.value, job.status.value, error=job.error
            )
            await self._publish("failed", job, error=job.error)
            return job

        log_job_transition(
            job_id,
            job.quota_key,
            JobStatus.PROCESSING.value,
            job.status.value,
            reason=reason.value,
            estimated_resume_time=(
                estimated_resume_time.isoformat() if estimated_resume_time else None
            ),
        )
        await self._publish(
            "paused",
            job,
            reason=reason.value,
            estimated_resume_time=estimated_resume_time,
        )
        return job

    async def cancel(self, job_id: str, reason: str | None = None) -> Job:
        """Stop a live job. Items and counters are kept exactly as they are."""
        now = self.now_fn()
        previous: dict = {}

        def _mutate(job: Job) -> bool:
            previous["status"] = job.status
            if job.status not in ACTIVE_STATUSES:
                raise InvalidJobTransitionError(job_id, job.status.value, JobStatus.CANCELLED.value)
            job.status = JobStatus.CANCELLED
            job.cancelled_at = now
            job.close_pattern_window(now)
            job.pause_reason = None
            job.estimated_resume_time = None
            if reason:
                job.error = reason
            return True

        job = await self._update(job_id, _mutate)
        log_job_transition(
            job_id, job.quota_key, previous["status"].value, job.status.value, reason=reason
        )
        await self._publish("cancelled", job, reason=reason)
        return job

    async def mark_failed(self, job_id: str, error: str) -> Job:
        """Any non-terminal state -> failed. Terminal jobs are left alone."""
        now = self.now_fn()
        previous: dict = {}

        def _mutate(job: Job) -> bool:
            previous["status"] = job.status
            if job.is_terminal:
                return False
            job.status = JobStatus.FAILED
            job.failed_at = now
            job.error = error
            job.close_pattern_window(now)
            job.pause_reason = None
            job.estimated_resume_time = None
            return True

        job = await self._update(job_id, _mutate)
        if previous["status"] in TERMINAL_STATUSES:
            logger.warning(
                "Failure ignored, job already terminal",
                job_id=job_id,
                quota_key=job.quota_key,
                status=job.status.value,
                error=error,
            )
            return job

        logger.error("Job marked failed", job_id=job_id, quota_key=job.quota_key, error=error)
        log_job_transition(job_id, job.quota_key, previous["status"].value, job.status.value)
        await self._publish("failed", job, error=error)
        return job

    async def evaluate_completion(self, job_id: str) -> bool:
        """
        Complete the job once no item is pending or in flight.

        Returns:
            True if the job is completed (by this call or earlier)
        """
        now = self.now_fn()
        outcome: dict = {"transitioned": False}

        def _mutate(job: Job) -> bool:
            if job.is_terminal or job.has_unfinished_items():
                return False
            previous = job.status
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.close_pattern_window(now)
            job.pause_reason = None
            job.estimated_resume_time = None
            outcome["transitioned"] = True
            outcome["from"] = previous
            return True

        job = await self._update(job_id, _mutate)
        if not outcome["transitioned"]:
            return job.status == JobStatus.COMPLETED

        log_job_transition(
            job_id,
            job.quota_key,
            outcome["from"].value,
            job.status.value,
            success_count=job.success_count,
            failure_count=job.failure_count,
        )
        await self.cooldown.on_completed(job)
        await self._publish("completed", job)
        return True

    # ------------------------------------------------------------------
    # Item progress
    # ------------------------------------------------------------------

    async def mark_item_processing(self, job_id: str, item_id: str) -> bool:
        """Claim a pending item. Returns False when it was no longer pending."""
        claimed = False

        def _mutate(job: Job) -> bool:
            nonlocal claimed
            claimed = False
            item = job.find_item(item_id)
            if item is None:
                raise EnrichmentError(f"Item {item_id} is not part of job {job_id}", recoverable=False)
            if item.status != ItemStatus.PENDING:
                return False
            item.status = ItemStatus.PROCESSING
            claimed = True
            return True

        await self._update(job_id, _mutate)
        return claimed

    async def requeue_in_flight(self, job_id: str) -> int:
        """Put items a crashed worker left in flight back in the queue."""
        requeued: list[str] = []

        def _mutate(job: Job) -> bool:
            requeued.clear()
            for item in job.items:
                if item.status == ItemStatus.PROCESSING:
                    item.status = ItemStatus.PENDING
                    requeued.append(item.item_id)
            return bool(requeued)

        job = await self._update(job_id, _mutate)
        if requeued:
            logger.warning(
                "Requeued in-flight items",
                job_id=job_id,
                quota_key=job.quota_key,
                items=requeued,
            )
        return len(requeued)

    async def record_item_outcome(
        self,
        job_id: str,
        item_id: str,
        outcome: ItemOutcome,
        pattern_name: str | None = None,
    ) -> Job:
        """
        Record one item's result and refresh the job's counters.

        Counters are recomputed from the item list in the same write, so they
        always agree with it. An item already completed or failed is left as is.
        """
        now = self.now_fn()
        day = now.astimezone(self.zone).strftime("%Y-%m-%d")

        def _mutate(job: Job) -> bool:
            item = job.find_item(item_id)
            if item is None:
                raise EnrichmentError(f"Item {item_id} is not part of job {job_id}", recoverable=False)
            if item.status in (ItemStatus.COMPLETED, ItemStatus.FAILED):
                return False

            item.processed_at = now
            if outcome.success:
                item.status = ItemStatus.COMPLETED
                item.last_error = None
                job.credential_failures = 0
            else:
                item.status = ItemStatus.FAILED
                item.last_error = outcome.error
                job.errors.append(
                    JobErrorEntry(item_id=item_id, error=outcome.error or "unknown error", timestamp=now)
                )
                del job.errors[: max(0, len(job.errors) - self.max_error_log)]

            job.respawn_attempts = 0
            job.last_processed_at = now
            job.recount()

            if pattern_name:
                last = job.pattern_history[-1] if job.pattern_history else None
                if last is None or last.pattern_name != pattern_name or last.exited_at is not None:
                    job.close_pattern_window(now)
                    job.pattern_history.append(
                        PatternHistoryEntry(pattern_name=pattern_name, entered_at=now)
                    )
                job.pattern_history[-1].items_processed += 1

                day_stats = job.daily_stats.setdefault(day, {})
                day_stats[pattern_name] = day_stats.get(pattern_name, 0) + 1
            return True

        job = await self._update(job_id, _mutate)

        if outcome.success:
            logger.info(
                "Item enriched",
                job_id=job_id,
                quota_key=job.quota_key,
                item_id=item_id,
                processed_count=job.processed_count,
                total=job.total_items,
            )
        else:
            logger.warning(
                "Item failed",
                job_id=job_id,
                quota_key=job.quota_key,
                item_id=item_id,
                error=outcome.error,
            )
        return job

    async def record_respawn(self, job_id: str) -> Job:
        def _mutate(job: Job) -> bool:
            job.respawn_attempts += 1
            return True

        return await self._update(job_id, _mutate)

    # ------------------------------------------------------------------
    # Re-entry
    # ------------------------------------------------------------------

    async def restart(self, job_id: str, caller_id: str, reset_items: bool = False) -> Job:
        """
        Seed a fresh pending job from a cancelled or failed one.

        Without `reset_items` only unfinished (not completed) items carry over.
        The old job is left exactly as it was.
        """
        old = await self.get_job(job_id)
        if old.status not in (JobStatus.CANCELLED, JobStatus.FAILED):
            raise InvalidJobTransitionError(job_id, old.status.value, "restarted")

        items = (
            old.items
            if reset_items
            else [item for item in old.items if item.status != ItemStatus.COMPLETED]
        )
        if not items:
            raise NoItemsError(old.quota_key)

        current_id = await self.store.get_current_job_id(old.quota_key)
        if current_id != job_id:
            current = await self.store.get_job(current_id) if current_id else None
            raise JobConflictError(
                "A newer job already exists for this organization",
                job_id=current_id,
                can_resume=current is not None and current.status in ACTIVE_STATUSES,
            )

        job = self._new_job(
            old.quota_key, [*old.participant_ids, caller_id], items, restarted_from=job_id
        )
        if not await self._install_job(job, current_id):
            raise JobConflictError("Another job was started concurrently", job_id=current_id)

        logger.info(
            "Job restarted",
            job_id=job.job_id,
            quota_key=job.quota_key,
            restarted_from=job_id,
            reset_items=reset_items,
            items=len(items),
        )
        log_job_transition(job.job_id, job.quota_key, None, job.status.value)
        await self._publish("restarted", job, restarted_from=job_id, caller_id=caller_id)
        return job

    async def reset_all(
        self, quota_key: str, caller_id: str, items: list[JobItem] | None = None
    ) -> Job:
        """
        Clear the cooldown and start over with every item pending.

        Items default to the previous job's full item list. Rate counters
        are never zeroed; a live job must be cancelled first.
        """
        current_id = await self.store.get_current_job_id(quota_key)
        current = await self.store.get_job(current_id) if current_id else None
        if current is not None and current.status in ACTIVE_STATUSES:
            raise JobConflictError(
                "A job is still running for this organization",
                job_id=current.job_id,
                can_resume=True,
            )

        seed_items = items if items is not None else (current.items if current else [])
        if not seed_items:
            raise NoItemsError(quota_key)

        await self.cooldown.reset_all(quota_key)

        participants = [*(current.participant_ids if current else []), caller_id]
        job = self._new_job(quota_key, participants, seed_items, restarted_from=current_id)
        if not await self._install_job(job, current_id):
            raise JobConflictError("Another job was started concurrently", job_id=current_id)

        logger.warning(
            "Processing reset to a fresh job",
            job_id=job.job_id,
            quota_key=quota_key,
            caller_id=caller_id,
            previous_job_id=current_id,
            items=len(seed_items),
        )
        log_job_transition(job.job_id, quota_key, None, job.status.value)
        await self._publish("restarted", job, restarted_from=current_id, caller_id=caller_id)
        return job
