"""
FastAPI application for the CRM enrichment engine.

The API process owns the Redis connection, the in-process worker pool and
(unless RECOVERY_ENABLED is off) the recovery scheduler task.
"""

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from crm_enricher.config import settings
from crm_enricher.features.enrichment import enrichment_router, get_engine, start_recovery_scheduler
from crm_enricher.infrastructure.observability.logging import get_logger, log_request, setup_logging
from crm_enricher.middleware import CORSMiddleware, RequestContextMiddleware
from crm_enricher.routes import health
from crm_enricher.services.infrastructure.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    recovery_task: asyncio.Task | None = None

    try:
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        startup_tasks.append("redis")

        engine = get_engine()
        startup_tasks.append("engine")

        if settings.RECOVERY_ENABLED:
            recovery_task = asyncio.create_task(start_recovery_scheduler(engine.supervisor))
            startup_tasks.append("recovery_scheduler")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "redis" in startup_tasks:
            try:
                await fast_redis.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        raise

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    if recovery_task is not None:
        recovery_task.cancel()
        try:
            await recovery_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Error stopping recovery scheduler", error=str(e))
            shutdown_errors.append(f"Recovery: {e}")

    # Workers first, they still write job state through Redis
    try:
        logger.info("Stopping enrichment workers")
        await get_engine().close()
    except Exception as e:
        logger.error("Error stopping enrichment engine", error=str(e))
        shutdown_errors.append(f"Engine: {e}")

    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="CRM Enricher",
    description="Rate-limited, human-paced enrichment of CRM contacts",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)
app.add_middleware(CORSMiddleware, allowed_origins=settings.CORS_ALLOW_ORIGINS)

# Include routers
app.include_router(health.router)
app.include_router(enrichment_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
