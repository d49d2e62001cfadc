"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate scheduler.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from crm_enricher.features.enrichment.jobs.recovery_supervisor import start_recovery_scheduler
from crm_enricher.infrastructure.observability.logging import get_logger
from crm_enricher.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_recovery_supervisor() -> None:
    """Standalone recovery process: owns its Redis connection and worker pool."""
    await fast_redis.initialize()
    try:
        await start_recovery_scheduler()
    finally:
        await fast_redis.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "recovery_supervisor": run_recovery_supervisor,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "recovery_supervisor").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    from crm_enricher.config import settings
    from crm_enricher.infrastructure.observability.logging import setup_logging

    setup_logging(settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
