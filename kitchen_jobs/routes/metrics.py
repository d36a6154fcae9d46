"""Metrics endpoint for monitoring and observability."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError

from kitchen_jobs.services import KitchenJobs
from .deps import get_jobs

router = APIRouter(prefix="/metrics", tags=["metrics"])
logger = logging.getLogger(__name__)


@router.get("")
async def get_metrics(jobs: KitchenJobs = Depends(get_jobs)):
    """
    Get current metrics for monitoring.

    Returns:
        Queue depths per state, in-flight jobs per pool, open subscriptions
    """
    try:
        counts = await jobs.queue_counts()
        redis_connected = True
    except RedisError as e:
        logger.warning(f"Could not read queue counts: {e}")
        counts = {}
        redis_connected = False

    return {
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "redis_connected": redis_connected,
        "queues": {
            "depths": counts,
            "total_pending": sum(c.get("waiting", 0) + c.get("delayed", 0) for c in counts.values()),
        },
        "workers": {
            pool.queue.name: {"running": pool.running, "in_flight": pool.in_flight, "concurrency": pool.concurrency}
            for pool in jobs.pools
        },
        "subscriptions": {
            "active": jobs.bus.active_subscriptions,
        },
    }
