# daily_calls/routes/health.py
"""
Health check endpoints covering Redis, the database pool and the job queue.
"""

import time

from fastapi import APIRouter, Depends

from daily_calls.config import settings
from daily_calls.db.pool import db_health_check
from daily_calls.providers.factory import validate_call_provider_config
from daily_calls.queue.client import JobQueue
from daily_calls.routes.deps import get_job_queue

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "daily-calls"}


@router.get("/readyz")
async def readyz(queue: JobQueue = Depends(get_job_queue)):
    """
    Readiness check with every dependency the queue and webhooks need.
    """
    checks = {}
    overall_ok = True

    # 1) Redis and queue
    t0 = time.time()
    queue_health = await queue.check_health()
    checks["queue"] = {
        "ok": bool(queue_health.get("healthy")),
        "latency_ms": round((time.time() - t0) * 1000, 1),
        "counts": queue_health.get("counts"),
    }
    if not queue_health.get("healthy"):
        checks["queue"]["error"] = queue_health.get("error", "Redis unreachable")
    overall_ok = overall_ok and checks["queue"]["ok"]

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

    # 3) Call provider configuration
    provider_config = validate_call_provider_config()
    checks["call_provider"] = {
        "ok": provider_config["valid"],
        "provider": provider_config["provider"],
        "missing": provider_config["missing"] or None,
    }
    overall_ok = overall_ok and provider_config["valid"]

    checks["configuration"] = {"ok": True, "environment": settings.environment}

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
