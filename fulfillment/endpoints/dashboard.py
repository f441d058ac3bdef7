from fastapi import APIRouter, Depends
from datetime import datetime, timezone
from redis.asyncio import Redis
from ..core.dependencies import get_queue_service, get_redis_client
from ..services.queue import JobQueueService
from ..utils.redis_keys import RedisKeyManager
from ..core.config import settings
import logging

logger = logging.getLogger(__name__)

dashboard_router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


@dashboard_router.get("/metrics/queue")
async def get_queue_metrics(service: JobQueueService = Depends(get_queue_service)):
    return await service.queue_metrics()


@dashboard_router.get("/metrics/workers")
async def get_worker_metrics(redis: Redis = Depends(get_redis_client)):
    keys = RedisKeyManager(system_prefix=settings.QUEUE_NAME)
    return {
        "active_workers": await redis.scard(keys.active_workers_key()),
        "stale_workers": await redis.zcount(
            keys.worker_heartbeats(),
            "-inf",
            datetime.now(timezone.utc).timestamp() - settings.WORKER_HEARTBEAT_TIMEOUT
        )
    }


@dashboard_router.get("/metrics/jobs")
async def get_jobs_metrics(service: JobQueueService = Depends(get_queue_service)):
    """
    Jobs that are still queued, scheduled or running, grouped by status.
    """
    try:
        jobs = await service.get_all_jobs()
    except Exception as e:
        logger.error(f"Error getting jobs: {e}")
        return {"total": 0, "by_status": {}, "jobs": []}

    by_status = {}
    for job in jobs:
        by_status[job.status.value] = by_status.get(job.status.value, 0) + 1
    return {
        "total": len(jobs),
        "by_status": by_status,
        "jobs": [job.model_dump(mode="json") for job in jobs],
    }


@dashboard_router.get("/dead-letters")
async def get_dead_letters(service: JobQueueService = Depends(get_queue_service)):
    jobs = await service.get_dead_letters()
    return {
        "total": len(jobs),
        "jobs": [job.model_dump(mode="json") for job in jobs],
    }
