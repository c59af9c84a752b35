"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Depends

from eventsync.context import AppContext, get_context
from eventsync.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "eventsync"}


@router.get("/readyz")
async def readyz(ctx: AppContext = Depends(get_context)):
    """
    Readiness check for the cache and, with the postgres backend, the database pool.
    """
    checks = {}
    overall_ok = True

    # 1) Result cache
    t0 = time.time()
    try:
        cache_ok = await ctx.cache.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["cache"] = {
            "ok": bool(cache_ok),
            "latency_ms": latency_ms,
            "backend": type(ctx.cache).__name__,
        }
        log_health_check("cache", bool(cache_ok), latency_ms)
        overall_ok = overall_ok and bool(cache_ok)
    except Exception as e:
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["cache"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        log_health_check("cache", False, latency_ms, error=str(e))
        overall_ok = False

    # 2) Database pool
    if ctx.db_pool is not None:
        t0 = time.time()
        db_health = await ctx.db_pool.health_check()
        is_healthy = db_health.get("healthy", False)
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        log_health_check("database", is_healthy, latency_ms, error=db_health.get("error"))
        overall_ok = overall_ok and is_healthy

    # 3) Configuration
    config_issues = []
    if not ctx.settings.MANIFEST_URL:
        config_issues.append("MANIFEST_URL not set")
    if not ctx.settings.FIREBASE_SHARDS:
        config_issues.append("FIREBASE_SHARDS not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": ctx.settings.environment,
        "storage_backend": ctx.settings.STORAGE_BACKEND,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
