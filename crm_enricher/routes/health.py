"""
Health check endpoints: liveness, and readiness with Redis and worker state.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from crm_enricher.services.infrastructure.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "crm-enricher"}


@router.get("/readyz")
async def readyz():
    """Readiness check covering Redis and the in-process worker pool."""
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        checks["redis"] = {
            "ok": bool(redis_ok),
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = overall_ok and bool(redis_ok)
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    try:
        from crm_enricher.features.enrichment.engine import get_engine

        supervisor = get_engine().supervisor
        checks["workers"] = {"ok": True, **supervisor.get_status()}
    except Exception as e:
        checks["workers"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    body = {"status": "ready" if overall_ok else "not_ready", "checks": checks}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
