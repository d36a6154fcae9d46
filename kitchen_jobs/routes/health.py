"""Health check endpoints."""

import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from kitchen_jobs import __version__
from kitchen_jobs.config import get_settings
from kitchen_jobs.services import KitchenJobs
from .deps import get_jobs

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/")
async def health_check():
    """Basic health check - always returns ok if service is running."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "kitchen-jobs",
        "version": __version__,
    }


@router.get("/ready")
async def readiness_check(jobs: KitchenJobs = Depends(get_jobs)):
    """
    Readiness check including Redis.
    Returns detailed status of each dependency and the worker pools.
    """
    settings = get_settings()
    checks = {"redis": await _check_redis(jobs)}
    overall_status = "ok" if checks["redis"]["status"] == "ok" else "degraded"

    checks["workers"] = {
        "status": "ok" if jobs.pools and all(pool.running for pool in jobs.pools) else "stopped",
        "pools": len(jobs.pools),
    }

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "config": {
            "redis_url": settings.redis_url.split("@")[-1] if "@" in settings.redis_url else settings.redis_url,
            "visibility_policy": (await jobs.policy_provider.current()).value,
        },
    }


async def _check_redis(jobs: KitchenJobs) -> dict:
    """Check Redis connection."""
    try:
        await asyncio.wait_for(jobs.ping(), timeout=5.0)
        return {"status": "ok"}
    except asyncio.TimeoutError:
        return {"status": "timeout", "error": "Connection timed out"}
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return {"status": "error", "error": str(e)}
