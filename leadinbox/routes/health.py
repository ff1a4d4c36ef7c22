# leadinbox/routes/health.py
"""
Health check endpoints for the service and its dependencies.
"""

import time

from fastapi import APIRouter, Request

from leadinbox.config import settings
from leadinbox.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "lead-inbox"}


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness check across the record store and the Redis cache."""
    checks = {}
    overall_ok = True

    # 1) Record store reachability
    t0 = time.time()
    try:
        store_ok = await request.app.state.record_store.health_check()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["record_store"] = {"ok": store_ok, "latency_ms": latency_ms}
        log_health_check("record_store", store_ok, latency_ms)
        overall_ok = overall_ok and store_ok
    except Exception as e:
        checks["record_store"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        log_health_check("record_store", False, error=str(e))
        overall_ok = False

    # 2) Redis cache
    t0 = time.time()
    try:
        redis_health = await request.app.state.conversation_cache.health_check()
        latency_ms = round((time.time() - t0) * 1000, 1)
        redis_ok = bool(redis_health.get("healthy"))
        checks["redis"] = {"ok": redis_ok, "latency_ms": latency_ms}
        if not redis_ok:
            checks["redis"]["error"] = redis_health.get("error", "Redis unhealthy")
        log_health_check("redis", redis_ok, latency_ms, redis_health.get("error"))
        overall_ok = overall_ok and redis_ok
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        log_health_check("redis", False, error=str(e))
        overall_ok = False

    # 3) Configuration checks
    config_issues = []
    if not settings.RECORD_STORE_URL:
        config_issues.append("RECORD_STORE_URL not set")
    if not settings.AUTH_JWKS_URL:
        config_issues.append("AUTH_JWKS_URL not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
