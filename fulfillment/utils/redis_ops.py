from redis.asyncio import Redis
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

async def execute_pipeline(
    redis_client: Redis,
    pipeline_function
) -> Optional[Any]:
    pipe = redis_client.pipeline()
    try:
        result = pipeline_function(pipe)  # Define operations inside this function
        await pipe.execute()
        return result
    except Exception as e:
        logger.error(f"Pipeline failed: {e}")
        raise


def decode(value: Any) -> Any:
    """Handle both bytes and string replies."""
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value
