"""
Health check endpoints: liveness, and readiness covering Postgres, Redis and
bot configuration.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.pool import db_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "icebreaker"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check with all dependencies.
    """
    checks = {}
    overall_ok = True

    # 1) Redis
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

    # 2) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"].update(db_health["pool_stats"])
            checks["database"]["connection_time_ms"] = db_health.get("connection_time_ms", 0)

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 3) Configuration
    config_issues = []
    if not settings.MICROSOFT_APP_ID:
        config_issues.append("MICROSOFT_APP_ID not set")
    if settings.MICROSOFT_APP_ID and not settings.MICROSOFT_APP_PASSWORD:
        config_issues.append("MICROSOFT_APP_PASSWORD not set")
    if not settings.PROCESS_NOW_KEY:
        config_issues.append("PROCESS_NOW_KEY not set")

    # Missing bot credentials only matter outside development
    config_ok = not config_issues or settings.environment == "development"
    checks["configuration"] = {
        "ok": config_ok,
        "issues": config_issues or None,
        "environment": settings.environment,
        "testing_mode": settings.TESTING,
    }
    overall_ok = overall_ok and config_ok

    body = {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
