"""
Recovery supervisor for orphaned and resumable jobs.

On startup it rebinds a worker to every processing job that has none.
Periodically it respawns processing jobs that stopped making progress
(worker crashed with its process), fails jobs that keep getting orphaned,
and resumes jobs whose rate-limit pause has run its course.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from crm_enricher.config import settings
from crm_enricher.features.enrichment.domain import RATE_PAUSE_REASONS, Job, JobStatus
from crm_enricher.features.enrichment.jobs.worker_pool import WorkerPool
from crm_enricher.features.enrichment.repository import EnrichmentStore
from crm_enricher.features.enrichment.services import JobLifecycleManager
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RecoveryMetrics:
    """Counters for one supervisor pass."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.jobs_scanned = 0
        self.respawned = 0
        self.failed = 0
        self.resumed = 0
        self.errors: list[dict] = []

    def record_error(self, job_id: str, error: str):
        self.errors.append(
            {"job_id": job_id, "error": error, "timestamp": datetime.now(UTC).isoformat()}
        )
        logger.error("Recovery action failed", job_id=job_id, error=error)

    def to_dict(self) -> dict:
        return {
            "job_run": "recovery_supervisor",
            "start_time": self.start_time.isoformat(),
            "jobs_scanned": self.jobs_scanned,
            "respawned": self.respawned,
            "failed": self.failed,
            "resumed": self.resumed,
            "errors_count": len(self.errors),
        }


class RecoverySupervisor:
    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        store: EnrichmentStore,
        pool: WorkerPool,
        config: dict | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        config = config or settings.recovery_config()
        self.lifecycle = lifecycle
        self.store = store
        self.pool = pool
        self.interval_seconds: int = config["interval_seconds"]
        self.stale_after = timedelta(minutes=config["stale_after_minutes"])
        self.max_respawn_attempts: int = config["max_respawn_attempts"]
        self.now_fn = now_fn or (lambda: datetime.now(UTC))
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.metrics = RecoveryMetrics()

    async def _has_worker(self, job_id: str) -> bool:
        if self.pool.is_running(job_id):
            return True
        return await self.store.lease_holder(job_id) is not None

    async def recover_on_startup(self) -> dict:
        """Bind a worker to every processing job that has none."""
        self.metrics.reset()
        jobs = await self.lifecycle.list_jobs(JobStatus.PROCESSING)
        for job in jobs:
            self.metrics.jobs_scanned += 1
            try:
                if await self._has_worker(job.job_id):
                    continue
                if self.pool.spawn(job.job_id):
                    self.metrics.respawned += 1
                    logger.info(
                        "Rehydrated worker for processing job",
                        job_id=job.job_id,
                        quota_key=job.quota_key,
                        processed_count=job.processed_count,
                        total=job.total_items,
                    )
            except Exception as e:
                self.metrics.record_error(job.job_id, str(e))

        metrics = self.metrics.to_dict()
        logger.info("Startup recovery finished", **metrics)
        return metrics

    def _is_stale(self, job: Job, now: datetime) -> bool:
        last_progress = job.last_processed_at or job.created_at
        return now - last_progress > self.stale_after

    async def scan_once(self, now: datetime | None = None) -> dict:
        """One supervisor pass over processing and paused jobs."""
        if self.is_running:
            logger.warning("Recovery scan already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        self.metrics.reset()
        now = now or self.now_fn()
        try:
            for job in await self.lifecycle.list_jobs(JobStatus.PROCESSING):
                self.metrics.jobs_scanned += 1
                try:
                    await self._recover_stale(job, now)
                except Exception as e:
                    self.metrics.record_error(job.job_id, str(e))

            for job in await self.lifecycle.list_jobs(JobStatus.PAUSED):
                self.metrics.jobs_scanned += 1
                try:
                    await self._resume_if_due(job, now)
                except Exception as e:
                    self.metrics.record_error(job.job_id, str(e))
        finally:
            self.is_running = False
            self.last_run_time = now

        metrics = self.metrics.to_dict()
        logger.info("Recovery scan completed", **metrics)
        return metrics

    async def _recover_stale(self, job: Job, now: datetime) -> None:
        if not self._is_stale(job, now) or await self._has_worker(job.job_id):
            return

        if job.respawn_attempts >= self.max_respawn_attempts:
            await self.lifecycle.mark_failed(
                job.job_id,
                f"Worker lost {job.respawn_attempts} times without progress",
            )
            self.metrics.failed += 1
            return

        await self.lifecycle.record_respawn(job.job_id)
        if self.pool.spawn(job.job_id):
            self.metrics.respawned += 1
            logger.warning(
                "Respawned orphaned job",
                job_id=job.job_id,
                quota_key=job.quota_key,
                respawn_attempt=job.respawn_attempts + 1,
                last_processed_at=(
                    job.last_processed_at.isoformat() if job.last_processed_at else None
                ),
            )

    async def _resume_if_due(self, job: Job, now: datetime) -> None:
        # Credential pauses wait for the caller to re-authenticate
        if job.pause_reason not in RATE_PAUSE_REASONS:
            return
        if job.estimated_resume_time is None or job.estimated_resume_time > now:
            return
        if await self._has_worker(job.job_id):
            return

        await self.lifecycle.transition_to_processing(job.job_id)
        if self.pool.spawn(job.job_id):
            self.metrics.resumed += 1
            logger.info(
                "Resumed paused job",
                job_id=job.job_id,
                quota_key=job.quota_key,
                pause_reason=job.pause_reason.value,
            )

    def get_status(self) -> dict:
        return {
            "job_name": "recovery_supervisor",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": self.interval_seconds,
            "running_workers": len(self.pool.running_job_ids()),
            "last_run_metrics": self.metrics.to_dict() if self.last_run_time else None,
        }


async def start_recovery_scheduler(supervisor: RecoverySupervisor | None = None) -> None:
    """
    Run the recovery supervisor forever.

    Used both inside the API process (as a background task) and by the
    dedicated worker process.
    """
    if supervisor is None:
        from crm_enricher.features.enrichment.engine import get_engine

        supervisor = get_engine().supervisor

    logger.info("Starting recovery scheduler", interval_seconds=supervisor.interval_seconds)
    await supervisor.recover_on_startup()

    while True:
        try:
            await asyncio.sleep(supervisor.interval_seconds)
            await supervisor.scan_once()
        except asyncio.CancelledError:
            logger.info("Recovery scheduler stopped")
            await supervisor.pool.shutdown()
            raise
        except Exception as e:
            logger.error("Error in recovery scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(60)
