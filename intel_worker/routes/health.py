"""Health check endpoints."""

from fastapi import APIRouter, Depends
import asyncio
import logging

import httpx
import redis.asyncio as redis

from intel_worker.config import Settings
from intel_worker.queue import QueueManager
from intel_worker.routes.deps import get_app_settings, get_manager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def health_check(manager: QueueManager = Depends(get_manager)):
    """Basic health check - always returns ok if service is running."""
    return {
        "status": "ok",
        "timestamp": manager.clock().isoformat(),
        "service": "intel-worker",
        "version": "0.1.0",
    }


@router.get("/ready")
async def readiness_check(
    check_backend: bool = False,
    manager: QueueManager = Depends(get_manager),
    settings: Settings = Depends(get_app_settings),
):
    """
    Readiness check: worker pools, queue state and (optionally) the backend.
    """
    checks = {}
    overall_status = "ok"

    pools = manager.pools
    checks["workers"] = {
        name.value: {
            "running": pool.is_running,
            "active": pool.active_count,
            "concurrency": pool.concurrency,
            "processed": pool.processed,
            "failed": pool.failed,
        }
        for name, pool in pools.items()
    }
    if settings.start_workers and not all(pool.is_running for pool in pools.values()):
        overall_status = "degraded"

    redis_status = await _check_redis(manager)
    checks["redis"] = redis_status
    if redis_status["status"] != "ok":
        overall_status = "degraded"
        checks["queues"] = {"paused": None}
    else:
        checks["queues"] = {
            "paused": [name for name in manager.queue_names if await manager.get_queue(name).is_paused()]
        }

    if check_backend:
        backend_status = await _check_backend(settings.intel_service_url)
        checks["backend"] = backend_status
        if backend_status["status"] != "ok":
            overall_status = "degraded"
    else:
        checks["backend"] = {"status": "not_checked"}

    return {
        "status": overall_status,
        "timestamp": manager.clock().isoformat(),
        "checks": checks,
        "config": {
            "intel_service_url": settings.intel_service_url,
            "redis_url": settings.redis_url.split("@")[-1] if "@" in settings.redis_url else settings.redis_url,
        },
    }


async def _check_redis(manager: QueueManager) -> dict:
    """Check the queue store connection."""
    try:
        await asyncio.wait_for(manager.ping(), timeout=5.0)
        return {"status": "ok"}
    except asyncio.TimeoutError:
        return {"status": "timeout", "error": "Connection timed out"}
    except redis.RedisError as e:
        logger.warning(f"Redis health check failed: {e}")
        return {"status": "error", "error": str(e)}


async def _check_backend(url: str) -> dict:
    """Check intelligence backend connectivity."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{url.rstrip('/')}/health")
            if response.status_code == 200:
                return {"status": "ok", "url": url}
            return {"status": "error", "http_status": response.status_code}
    except httpx.TimeoutException:
        return {"status": "timeout", "error": "Connection timed out"}
    except httpx.HTTPError as e:
        logger.warning(f"Backend health check failed: {e}")
        return {"status": "error", "error": str(e)}
