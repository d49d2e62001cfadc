"""
Contact enrichment feature package.

This vertical slice keeps every layer of the enrichment engine co-located
(domain models, the Redis store, services, background jobs, engine wiring
and the API router) so contributors can navigate the feature without
hunting through global folders.
"""

# Re-export the primary building blocks for easy access.
from .domain.models import Job, JobItem, JobStatus, HumanPattern  # noqa: F401
from .repository.enrichment_store import EnrichmentStore  # noqa: F401
from .services.job_lifecycle import JobLifecycleManager  # noqa: F401
from .services.rate_limiter import RateLimiter  # noqa: F401
from .jobs.recovery_supervisor import start_recovery_scheduler  # noqa: F401
from .engine import EnrichmentEngine, build_engine, get_engine  # noqa: F401
from .api.router import router as enrichment_router  # noqa: F401
