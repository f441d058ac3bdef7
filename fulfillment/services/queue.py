import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError, WatchError
from ..models.schemas import JobModel, JobOptions, utcnow
from ..models.enums import JobStatus, PriorityLevel
from ..core.config import settings
from ..core.exceptions import JobSubmissionError
from ..utils.redis_ops import decode, execute_pipeline
from ..utils.redis_keys import RedisKeyManager
from .priority import build_selector
import logging

logger = logging.getLogger(__name__)


class JobQueueService:
    """
    Redis-backed broker with four priority classes.

    Each class keeps a sorted set of scheduled jobs scored by the time they
    become eligible, and a ready list that workers pop from. Scheduled
    members are prefixed with a zero-padded submission sequence so jobs that
    become eligible at the same instant are released in submission order.
    A dequeue is an atomic LMOVE into the processing list, so a job is
    handed to exactly one worker.
    """

    promote_batch = 500

    def __init__(
        self,
        client,
        queue_name: str = settings.QUEUE_NAME,
        selector=None,
        clock: Callable[[], float] = time.time,
        poll_interval: float = settings.POLL_INTERVAL,
    ):
        self.redis_client = client
        self.queue_name = queue_name
        self.keys = RedisKeyManager(system_prefix=queue_name)
        self.selector = selector or build_selector()
        self.clock = clock
        self.poll_interval = poll_interval
        self._wakeup = asyncio.Event()

    @staticmethod
    def _serialize(payload: Any) -> str:
        if isinstance(payload, BaseModel):
            return payload.model_dump_json()
        if isinstance(payload, str):
            return payload
        return json.dumps(payload, default=str)

    @staticmethod
    def _job_id_from_member(member) -> str:
        return decode(member).split(":", 1)[1]

    async def submit(self, task_type: str, payload: Any, options: Optional[JobOptions] = None) -> JobModel:
        """
        Store a job and make it visible to workers once its delay has passed.
        """
        task_type = getattr(task_type, "value", task_type)
        options = options or JobOptions()
        try:
            job = JobModel.from_submission(task_type, self._serialize(payload), options, self.clock())
            await self._schedule(job)
        except (RedisError, TypeError, ValueError) as e:
            logger.error(f"Error submitting {task_type} job: {e}")
            raise JobSubmissionError(f"Failed to submit {task_type} job: {e}") from e

        logger.debug(
            f"Submitted job {job.job_id} ({job.task_type}) to {job.priority.value}, "
            f"eligible in {options.delay:.1f}s"
        )
        return job

    async def _schedule(self, job: JobModel, release_from_processing: bool = False) -> JobModel:
        sequence = await self.redis_client.incr(self.keys.job_sequence_key())
        member = f"{sequence:015d}:{job.job_id}"

        def pipeline_operations(pipe):
            pipe.hset(self.keys.jobs_key(), job.job_id, job.model_dump_json())
            pipe.zadd(self.keys.scheduled_queue(job.priority.value), {member: job.eligible_at})
            if release_from_processing:
                pipe.lrem(self.keys.processing_queue_key(), 0, job.job_id)
            return job

        await execute_pipeline(self.redis_client, pipeline_operations)
        # Takers in this process recompute how long to sleep
        self._wakeup.set()
        return job

    async def _promote_due(self, priority: PriorityLevel, now: float) -> int:
        """Move jobs whose eligible time has passed onto the ready list, oldest first."""
        scheduled = self.keys.scheduled_queue(priority.value)
        ready = self.keys.priority_queue(priority.value)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(scheduled)
                    due = await pipe.zrangebyscore(scheduled, "-inf", now, start=0, num=self.promote_batch)
                    if not due:
                        return 0
                    pipe.multi()
                    pipe.zrem(scheduled, *due)
                    # LPUSH + RIGHT-side pop keeps the list FIFO
                    pipe.lpush(ready, *[self._job_id_from_member(member) for member in due])
                    await pipe.execute()
                    return len(due)
                except WatchError:
                    continue

    async def _ready_levels(self) -> List[PriorityLevel]:
        levels = PriorityLevel.ranked()
        pipe = self.redis_client.pipeline(transaction=False)
        for level in levels:
            pipe.llen(self.keys.priority_queue(level.value))
        lengths = await pipe.execute()
        return [level for level, length in zip(levels, lengths) if length]

    async def _claim(self, job_id: str) -> Optional[JobModel]:
        job_json = await self.redis_client.hget(self.keys.jobs_key(), job_id)
        if job_json is None:
            logger.warning(f"Dequeued job {job_id} has no stored record, dropping it")
            await self.redis_client.lrem(self.keys.processing_queue_key(), 0, job_id)
            return None

        try:
            job = JobModel.model_validate_json(decode(job_json))
        except ValidationError as e:
            logger.error(f"Job {job_id} record is unreadable, moving to dead letter queue: {e}")

            def pipeline_operations(pipe):
                pipe.hset(self.keys.dead_letter_queue_key(), job_id, decode(job_json))
                pipe.hdel(self.keys.jobs_key(), job_id)
                pipe.lrem(self.keys.processing_queue_key(), 0, job_id)

            await execute_pipeline(self.redis_client, pipeline_operations)
            return None

        job.status = JobStatus.processing
        job.updated_at = utcnow()
        await self.redis_client.hset(self.keys.jobs_key(), job_id, job.model_dump_json())
        return job

    async def try_take(self) -> Optional[JobModel]:
        """
        Dequeue one eligible job without waiting, or return None.
        """
        now = self.clock()
        for level in PriorityLevel.ranked():
            await self._promote_due(level, now)

        levels = await self._ready_levels()
        while levels:
            level = self.selector.select(levels)
            job_id = await self.redis_client.lmove(
                self.keys.priority_queue(level.value),
                self.keys.processing_queue_key(),
                "RIGHT",
                "LEFT",
            )
            if job_id is None:
                # Another worker emptied this class first
                levels.remove(level)
                continue
            job = await self._claim(decode(job_id))
            if job is not None:
                return job
        return None

    async def take(self) -> JobModel:
        """
        Block until an eligible job is available and return it.
        """
        while True:
            self._wakeup.clear()
            try:
                job = await self.try_take()
            except RedisError as e:
                logger.error(f"Error dequeuing job: {e}")
                job = None
            if job is not None:
                return job
            await self._wait_for_work()

    async def _next_eligible_at(self) -> Optional[float]:
        pipe = self.redis_client.pipeline(transaction=False)
        for level in PriorityLevel.ranked():
            pipe.zrange(self.keys.scheduled_queue(level.value), 0, 0, withscores=True)
        heads = await pipe.execute()
        scores = [float(head[0][1]) for head in heads if head]
        return min(scores) if scores else None

    async def _wait_for_work(self):
        timeout = self.poll_interval
        try:
            next_at = await self._next_eligible_at()
        except RedisError as e:
            logger.error(f"Error reading schedule: {e}")
            next_at = None
        if next_at is not None:
            timeout = max(0.01, min(timeout, next_at - self.clock()))
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def complete(self, job: JobModel, result: Optional[Dict[str, Any]] = None) -> None:
        """
        Discard a job that finished successfully and keep its result.
        """
        record = {
            "job_id": job.job_id,
            "task_type": job.task_type,
            "status": JobStatus.completed.value,
            "attempts": job.attempt,
            "result": result or {},
            "completed_at": utcnow().isoformat(),
        }

        def pipeline_operations(pipe):
            pipe.hdel(self.keys.jobs_key(), job.job_id)
            pipe.lrem(self.keys.processing_queue_key(), 0, job.job_id)
            pipe.hset(self.keys.job_results_key(), job.job_id, json.dumps(record, default=str))

        await execute_pipeline(self.redis_client, pipeline_operations)

    async def retry(self, job: JobModel, delay: float, error: str) -> JobModel:
        """
        Reschedule a failed job after `delay` seconds.
        """
        job.retry_count += 1
        job.status = JobStatus.retrying
        job.error_message = error
        job.eligible_at = self.clock() + delay
        job.updated_at = utcnow()
        return await self._schedule(job, release_from_processing=True)

    async def release(self, job: JobModel) -> JobModel:
        """
        Hand an in-flight job back without counting it as a failure.
        """
        job.status = JobStatus.pending
        job.eligible_at = self.clock()
        job.updated_at = utcnow()
        return await self._schedule(job, release_from_processing=True)

    async def defer(self, job: JobModel, delay: float, reason: str) -> JobModel:
        """
        Put a job that cannot run yet back on the schedule, leaving its retries untouched.
        """
        job.deferred_count += 1
        job.status = JobStatus.scheduled
        job.error_message = reason
        job.eligible_at = self.clock() + delay
        job.updated_at = utcnow()
        return await self._schedule(job, release_from_processing=True)

    async def move_to_dlq(self, job: JobModel, error: Optional[str] = None) -> bool:
        job.status = JobStatus.failed
        if error:
            job.error_message = error
        job.updated_at = utcnow()

        def pipeline_operations(pipe):
            pipe.hset(self.keys.dead_letter_queue_key(), job.job_id, job.model_dump_json())
            pipe.hdel(self.keys.jobs_key(), job.job_id)
            pipe.lrem(self.keys.processing_queue_key(), 0, job.job_id)
            return True

        return await execute_pipeline(self.redis_client, pipeline_operations)

    async def get_job(self, job_id: str) -> Optional[JobModel]:
        """
        Get a queued or in-flight job by its ID.
        """
        job_json = await self.redis_client.hget(self.keys.jobs_key(), job_id)
        if not job_json:
            return None
        return JobModel.model_validate_json(decode(job_json))

    async def get_all_jobs(self) -> List[JobModel]:
        """
        Get every job that has not finished yet.
        """
        jobs = []
        for job_json in await self.redis_client.hvals(self.keys.jobs_key()):
            try:
                jobs.append(JobModel.model_validate_json(decode(job_json)))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable job record: {e}")
        return jobs

    async def get_dead_letters(self) -> List[JobModel]:
        jobs = []
        for job_json in await self.redis_client.hvals(self.keys.dead_letter_queue_key()):
            try:
                jobs.append(JobModel.model_validate_json(decode(job_json)))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable dead letter: {e}")
        return jobs

    async def get_job_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis_client.hget(self.keys.job_results_key(), job_id)
        return json.loads(decode(raw)) if raw else None

    async def queue_metrics(self) -> Dict[str, int]:
        levels = PriorityLevel.ranked()
        pipe = self.redis_client.pipeline(transaction=False)
        for level in levels:
            pipe.llen(self.keys.priority_queue(level.value))
            pipe.zcard(self.keys.scheduled_queue(level.value))
        pipe.llen(self.keys.processing_queue_key())
        pipe.hlen(self.keys.dead_letter_queue_key())
        pipe.hlen(self.keys.job_results_key())
        counts = await pipe.execute()

        metrics = {}
        for index, level in enumerate(levels):
            metrics[f"pending_{level.value}"] = counts[2 * index]
            metrics[f"scheduled_{level.value}"] = counts[2 * index + 1]
        metrics["processing"], metrics["dead_letters"], metrics["completed"] = counts[-3:]
        return metrics
