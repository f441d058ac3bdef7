import random
from typing import Optional

from ..core.config import settings
from ..models.schemas import JobModel


class RetryPolicy:
    """
    Exponential backoff with upward jitter, capped at `max_delay`.

    The n-th retry waits base * 2^(n-1) stretched by up to `jitter`. Because
    jitter stays below 1 the stretched window never reaches the next
    doubling, so delays never shrink as attempts grow.

    `max_retries` counts re-runs after the first attempt, so a job runs at
    most `max_retries + 1` times and its last failure is never rescheduled.
    """

    def __init__(
        self,
        base_delay: float = settings.RETRY_BASE_DELAY,
        max_delay: float = settings.RETRY_MAX_DELAY,
        jitter: float = settings.RETRY_JITTER,
        rng: Optional[random.Random] = None,
    ):
        if base_delay <= 0 or max_delay <= 0:
            raise ValueError("base_delay and max_delay must be positive")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.rng = rng or random.Random()

    def backoff(self, retry_number: int) -> float:
        """Delay in seconds before the given (1-based) retry."""
        if retry_number < 1:
            raise ValueError("retry_number starts at 1")
        # cap the exponent so huge retry counts cannot overflow
        delay = self.base_delay * (2 ** min(retry_number - 1, 62))
        delay *= 1 + self.jitter * self.rng.random()
        return min(self.max_delay, delay)

    def should_retry(self, job: JobModel) -> bool:
        return job.retry_count < job.max_retries

    def next_delay(self, job: JobModel) -> Optional[float]:
        """Delay before re-running a failed job, or None once its retries are used up."""
        if not self.should_retry(job):
            return None
        return self.backoff(job.retry_count + 1)
