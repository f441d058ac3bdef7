from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .core.dependencies import close_redis_client, get_redis_client
from .core.logging import configure_logging
from .endpoints.dashboard import dashboard_router
from .endpoints.orders import order_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Order fulfillment API starting")
    yield
    await close_redis_client()


app = FastAPI(
    title="Order Fulfillment API",
    description="Order intake and background fulfillment jobs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(order_router)
app.include_router(dashboard_router)


@app.get("/health")
async def health(redis: Redis = Depends(get_redis_client)):
    try:
        await redis.ping()
        redis_status = "ok"
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        redis_status = "unavailable"
    return {
        "status": "healthy" if redis_status == "ok" else "degraded",
        "redis": redis_status,
        "time": datetime.now(timezone.utc).isoformat(),
    }
