"""
In-process pool of worker tasks, at most one per job id.

Cross-process exclusion comes from the worker lease; the pool only keeps
this process from starting a second task for a job it already runs.
"""

import asyncio

from crm_enricher.features.enrichment.jobs.batch_worker import BatchWorker, WorkerRunResult
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class WorkerPool:
    def __init__(self, worker: BatchWorker):
        self.worker = worker
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def running_job_ids(self) -> list[str]:
        return [job_id for job_id in self._tasks if self.is_running(job_id)]

    def spawn(self, job_id: str) -> bool:
        """Start a worker task for `job_id` unless one is already running here."""
        if self.is_running(job_id):
            logger.debug("Worker already running in this process", job_id=job_id)
            return False

        task = asyncio.create_task(self.worker.run(job_id), name=f"enrich-worker-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda finished: self._on_done(job_id, finished))
        logger.info("Worker spawned", job_id=job_id)
        return True

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Worker task crashed", job_id=job_id, error=str(error))

    async def wait(self, job_id: str) -> WorkerRunResult | None:
        task = self._tasks.get(job_id)
        if task is None:
            return None
        return await task

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel every running worker and wait for them to release their leases."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return

        logger.info("Stopping workers", count=len(tasks))
        for task in tasks:
            task.cancel()
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("Workers did not stop in time", count=len(pending))
        self._tasks.clear()
