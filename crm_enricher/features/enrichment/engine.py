"""
Wiring for the enrichment engine.

`build_engine` assembles the store, services, worker, pool and supervisor
around one Redis client. The API and the worker process share the lazily
built process-wide instance returned by `get_engine`; tests build their
own with fakes.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from crm_enricher.config import settings
from crm_enricher.features.enrichment.jobs import BatchWorker, RecoverySupervisor, WorkerPool
from crm_enricher.features.enrichment.repository import EnrichmentStore
from crm_enricher.features.enrichment.services import (
    CooldownManager,
    CrmReader,
    CrmWriter,
    HumanPatternTable,
    JobLifecycleManager,
    ProfileFetcher,
    ProfileTransformer,
    RateLimiter,
    SessionService,
    get_pattern_table,
)
from crm_enricher.infrastructure.observability.logging import get_logger
from crm_enricher.services.infrastructure.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


@dataclass(slots=True)
class EnrichmentEngine:
    store: EnrichmentStore
    patterns: HumanPatternTable
    sessions: SessionService
    rate_limiter: RateLimiter
    cooldown: CooldownManager
    lifecycle: JobLifecycleManager
    crm_reader: CrmReader
    worker: BatchWorker
    pool: WorkerPool
    supervisor: RecoverySupervisor

    async def close(self) -> None:
        await self.pool.shutdown()
        closed: set[int] = set()
        for collaborator in (self.crm_reader, self.worker.fetcher, self.worker.writer):
            close = getattr(collaborator, "close", None)
            if close is None or id(collaborator) in closed:
                continue
            closed.add(id(collaborator))
            await close()


def build_engine(
    redis: FastRedisClient | None = None,
    patterns: HumanPatternTable | None = None,
    fetcher: ProfileFetcher | None = None,
    transformer: ProfileTransformer | None = None,
    crm: CrmReader | None = None,
    writer: CrmWriter | None = None,
    now_fn: Callable[[], datetime] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> EnrichmentEngine:
    """Assemble an engine. Omitted collaborators get their HTTP implementations."""
    store = EnrichmentStore(redis or fast_redis)
    patterns = patterns or get_pattern_table()
    sessions = SessionService(store, now_fn=now_fn)
    rate_limiter = RateLimiter(store, patterns, rng=rng, now_fn=now_fn)
    cooldown = CooldownManager(store, now_fn=now_fn)
    lifecycle = JobLifecycleManager(store, cooldown, zone=patterns.zone, now_fn=now_fn)

    if crm is None or fetcher is None or transformer is None:
        from crm_enricher.services.crm_token_service import CrmTokenService
        from crm_enricher.services.dataverse_client import DataverseClient
        from crm_enricher.services.profile_client import ProfileApiClient
        from crm_enricher.services.profile_transform import ProfileTransform

        crm = crm or DataverseClient(sessions, CrmTokenService())
        fetcher = fetcher or ProfileApiClient()
        transformer = transformer or ProfileTransform()
    writer = writer or crm

    worker = BatchWorker(
        lifecycle,
        rate_limiter,
        sessions,
        store,
        fetcher=fetcher,
        transformer=transformer,
        writer=writer,
        sleep=sleep,
        now_fn=now_fn,
    )
    pool = WorkerPool(worker)
    supervisor = RecoverySupervisor(lifecycle, store, pool, now_fn=now_fn)

    return EnrichmentEngine(
        store=store,
        patterns=patterns,
        sessions=sessions,
        rate_limiter=rate_limiter,
        cooldown=cooldown,
        lifecycle=lifecycle,
        crm_reader=crm,
        worker=worker,
        pool=pool,
        supervisor=supervisor,
    )


_engine: EnrichmentEngine | None = None


def get_engine() -> EnrichmentEngine:
    """Process-wide engine; also the FastAPI dependency for the router."""
    global _engine
    if _engine is None:
        _engine = build_engine()
        logger.info(
            "Enrichment engine ready",
            pattern_timezone=settings.PATTERN_TIMEZONE,
            patterns=[pattern.name for pattern in _engine.patterns.all_patterns()],
        )
    return _engine
