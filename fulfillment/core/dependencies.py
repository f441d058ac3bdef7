from fastapi import Depends
from redis.asyncio import Redis
from .config import settings
from ..services.orders import OrderRepository, OrderService
from ..services.producer import TaskProducer
from ..services.queue import JobQueueService

redis_client = None

async def get_redis_client():
    """
    Get a Redis client instance.
    """
    global redis_client
    if not redis_client:
        redis_client = Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            decode_responses=True
        )
    return redis_client


async def close_redis_client() -> None:
    """
    Close the Redis client connection.
    """
    global redis_client
    if redis_client:
        await redis_client.close()
        redis_client = None


def get_queue_service(redis: Redis = Depends(get_redis_client)) -> JobQueueService:
    return JobQueueService(client=redis, queue_name=settings.QUEUE_NAME)


def get_order_repository(redis: Redis = Depends(get_redis_client)) -> OrderRepository:
    return OrderRepository(redis, queue_name=settings.QUEUE_NAME)


def get_order_service(repository: OrderRepository = Depends(get_order_repository)) -> OrderService:
    return OrderService(repository)


def get_task_producer(queue_service: JobQueueService = Depends(get_queue_service)) -> TaskProducer:
    return TaskProducer(queue_service)
