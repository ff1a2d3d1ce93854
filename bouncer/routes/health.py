# bouncer/routes/health.py
"""
Health, readiness and queue depth endpoints.
"""

import time

from fastapi import APIRouter, Depends

from bouncer.config import settings
from bouncer.db.pool import db_pool
from bouncer.queues.orchestrator import QueueOrchestrator
from bouncer.routes.dependencies import get_orchestrator
from bouncer.services.infrastructure.redis_client import redis_client

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "bouncer"}


@router.get("/readyz")
async def readyz(orchestrator: QueueOrchestrator = Depends(get_orchestrator)):
    """Readiness: Redis, database (when configured) and queue stats."""
    checks = {}
    overall_ok = True

    if settings.QUEUE_BACKEND == "redis" or settings.RATE_LIMIT_ENABLED:
        t0 = time.time()
        redis_ok = await redis_client.ping()
        checks["redis"] = {"ok": redis_ok, "latency_ms": round((time.time() - t0) * 1000, 1)}
        overall_ok = overall_ok and redis_ok

    if settings.DATABASE_URL:
        t0 = time.time()
        db_health = await db_pool.health_check()
        checks["database"] = {
            "ok": db_health.get("healthy", False),
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if not db_health.get("healthy", False):
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and checks["database"]["ok"]

    stats = await orchestrator.cached_stats(max_age=settings.QUEUE_METRICS_INTERVAL_SECONDS)
    queue_errors = {name: s["error"] for name, s in stats.items() if "error" in s}
    checks["queues"] = {"ok": not queue_errors, "errors": queue_errors or None}
    overall_ok = overall_ok and not queue_errors

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/queues/stats")
async def queue_stats(orchestrator: QueueOrchestrator = Depends(get_orchestrator)):
    return {
        "queues": await orchestrator.get_all_stats(),
        "metrics": orchestrator.metrics.to_dict(),
    }
