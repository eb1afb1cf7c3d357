"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter, Request

from identity_cache.config import settings
from identity_cache.db.pool import db_health_check
from identity_cache.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "identity-cache"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check covering the database pool, the directory store and
    configuration.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                }
            )
        if db_health.get("warnings"):
            checks["database"]["warnings"] = db_health["warnings"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy
        log_health_check(
            "database", is_healthy, checks["database"]["latency_ms"], checks["database"].get("error")
        )

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False
        log_health_check(
            "database", False, checks["database"]["latency_ms"], checks["database"]["error"]
        )

    # 2) Directory store
    engine = getattr(request.app.state, "engine", None)
    store_ready = engine is not None and engine.store.is_ready
    checks["directory_store"] = {"ok": store_ready}
    overall_ok = overall_ok and store_ready

    # 3) Configuration; a missing remote authority only disables verification
    config_ok = True
    config_issues = []
    if not settings.DIRECTORY_DB_URL:
        config_issues.append("DIRECTORY_DB_URL not set")
        config_ok = False

    checks["configuration"] = {
        "ok": config_ok,
        "issues": config_issues or None,
        "environment": settings.environment,
        "remote_authority_configured": settings.remote_authority_configured(),
        "remote_authority_host": settings.remote_authority_host(),
    }
    overall_ok = overall_ok and config_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
