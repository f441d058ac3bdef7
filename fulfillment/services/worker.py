import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional
import uuid
import logging
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..core.config import settings
from ..core.exceptions import DeferredJobError, FulfillmentError, OrderNotFoundError, PermanentJobError
from ..models.schemas import JobModel, JobResult, Worker
from ..models.enums import JobStatus
from ..utils.redis_keys import RedisKeyManager
from ..utils.redis_ops import decode, execute_pipeline
from .handlers import HandlerRegistry
from .orders import OrderAccess
from .queue import JobQueueService
from .retry import RetryPolicy


class WorkerService:
    """
    A pool of `concurrency` executors sharing one broker connection.

    Each executor takes a job, runs its handler under the job's timeout and
    records the outcome: success completes the job, a retryable failure is
    rescheduled by the retry policy, a job that is not ready yet is deferred
    without spending a retry, anything permanent goes to the dead letter
    queue. Failures of best-effort jobs are logged and the job completes.
    The pool registers itself and sends heartbeats so the dashboard can tell
    live workers from stale ones.
    """

    def __init__(
        self,
        client: Redis,
        registry: HandlerRegistry,
        orders: OrderAccess,
        queue_name: str = settings.QUEUE_NAME,
        queue_service: Optional[JobQueueService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = settings.WORKER_CONCURRENCY,
        heartbeat_interval: float = settings.WORKER_HEARTBEAT_INTERVAL,
        max_deferrals: int = settings.MAX_JOB_DEFERRALS,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.redis_client = client
        self.queue_name = queue_name
        self.keys = RedisKeyManager(system_prefix=queue_name)
        self.job_queue_service = queue_service or JobQueueService(client=self.redis_client, queue_name=self.queue_name)
        self.registry = registry
        self.orders = orders
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.worker_heartbeat_interval = heartbeat_interval
        self.max_deferrals = max_deferrals
        self.logger = logging.getLogger(__name__)
        self.worker = None
        self.worker_id = None

        self.processed_jobs = 0
        self.failed_jobs = 0
        self.in_flight: Dict[str, JobModel] = {}
        self._stop_event = asyncio.Event()

    async def register_worker(self) -> Optional[dict]:
        self.worker_id = str(uuid.uuid4())
        self.worker = Worker(
            worker_id=self.worker_id,
            concurrency=self.concurrency,
            status='active',
            last_heartbeat=datetime.now(timezone.utc).isoformat(),
        )

        def pipeline_operations(pipe):
            pipe.zadd(
                self.keys.worker_heartbeats(),
                {self.worker_id: datetime.now(timezone.utc).timestamp()}
            )
            pipe.sadd(self.keys.active_workers_key(), self.worker_id)
            return {
                "message": "Worker registered",
                "worker_id": self.worker_id,
            }

        registered = await execute_pipeline(self.redis_client, pipeline_operations)
        self.logger.info(f"Worker {self.worker_id} registered with {self.concurrency} executors")
        return registered

    async def deregister_worker(self):
        """
        Deregister the worker from the system.
        """
        if not self.worker_id:
            raise FulfillmentError("Worker not registered", status_code=400)

        worker_id = self.worker_id

        def pipeline_operations(pipe):
            pipe.srem(self.keys.active_workers_key(), worker_id)
            pipe.zrem(self.keys.worker_heartbeats(), worker_id)

        await execute_pipeline(self.redis_client, pipeline_operations)
        self.logger.info(
            f"Worker {worker_id} deregistered. Processed: {self.processed_jobs} | Failed: {self.failed_jobs}"
        )
        self.worker = None
        self.worker_id = None

    async def send_heartbeat(self):
        if not self.worker_id:
            raise FulfillmentError("Worker not registered", status_code=400)

        now = datetime.now(timezone.utc)
        await self.redis_client.zadd(
            self.keys.worker_heartbeats(),
            {self.worker_id: now.timestamp()}
        )
        self.worker.last_heartbeat = now.isoformat()
        self.worker.current_jobs = list(self.in_flight)
        self.worker.processed_jobs = self.processed_jobs
        self.worker.failed_jobs = self.failed_jobs

    async def check_stale_workers(self, timeout: float = settings.WORKER_HEARTBEAT_TIMEOUT) -> List[str]:
        current_time = datetime.now(timezone.utc).timestamp()
        stale_workers = await self.redis_client.zrangebyscore(
            self.keys.worker_heartbeats(),
            min=0,
            max=current_time - timeout
        )
        return [decode(worker_id) for worker_id in stale_workers]

    async def mark_worker_as_dead(self, stale_workers: List[str]):
        def pipeline_operations(pipe):
            for worker_id in stale_workers:
                pipe.srem(self.keys.active_workers_key(), worker_id)
                pipe.zrem(self.keys.worker_heartbeats(), worker_id)
                self.logger.info(f"Worker {worker_id} marked as dead.")

        await execute_pipeline(self.redis_client, pipeline_operations)

    async def _heartbeat_task(self):
        while True:
            try:
                await self.send_heartbeat()
                stale_workers = await self.check_stale_workers()
                if stale_workers:
                    await self.mark_worker_as_dead(stale_workers)
            except RedisError as e:
                self.logger.warning(f"Heartbeat failed: {e}")
            await asyncio.sleep(self.worker_heartbeat_interval)

    async def _execute(self, job: JobModel) -> JobResult:
        handler = self.registry.get(job.task_type)
        payload = handler.parse(job.payload)
        return await asyncio.wait_for(handler.execute(payload, self.orders), timeout=job.timeout)

    async def _dead_letter(self, job: JobModel, error: str) -> JobResult:
        self.logger.error(f"Job {job.job_id} ({job.task_type}) dropped to dead letter queue: {error}")
        await self.job_queue_service.move_to_dlq(job, error)
        self.failed_jobs += 1
        return JobResult(job_id=job.job_id, status=JobStatus.failed, error_message=error)

    async def _complete(self, job: JobModel, result: dict) -> JobResult:
        await self.job_queue_service.complete(job, result)
        self.processed_jobs += 1
        self.logger.info(f"Job {job.job_id} ({job.task_type}) completed")
        return JobResult(job_id=job.job_id, status=JobStatus.completed, result=result)

    def _is_best_effort(self, job: JobModel) -> bool:
        return getattr(self.registry.get(job.task_type), "best_effort", False)

    async def _defer(self, job: JobModel, error: DeferredJobError) -> JobResult:
        if job.deferred_count >= self.max_deferrals:
            return await self._handle_failure(
                job, f"Gave up waiting after {job.deferred_count} deferrals: {error.message}"
            )
        self.logger.info(f"Job {job.job_id} ({job.task_type}) deferred {error.delay:.1f}s: {error.message}")
        await self.job_queue_service.defer(job, error.delay, error.message)
        return JobResult(job_id=job.job_id, status=JobStatus.scheduled, error_message=error.message)

    async def _handle_failure(self, job: JobModel, error: str) -> JobResult:
        if self._is_best_effort(job):
            self.logger.warning(f"Job {job.job_id} ({job.task_type}) failed, ignoring: {error}")
            return await self._complete(job, {"tracked": False, "error": error})

        delay = self.retry_policy.next_delay(job)
        if delay is None:
            return await self._dead_letter(
                job, f"Max retries exceeded after {job.attempt} attempts: {error}"
            )

        self.logger.warning(
            f"Job {job.job_id} ({job.task_type}) failed on attempt {job.attempt}: {error}. "
            f"Retrying in {delay:.2f}s"
        )
        await self.job_queue_service.retry(job, delay, error)
        return JobResult(job_id=job.job_id, status=JobStatus.retrying, error_message=error)

    async def process_job(self, job: JobModel) -> JobResult:
        """
        Run one dequeued job to an outcome and record it with the broker.
        """
        self.in_flight[job.job_id] = job
        self.logger.info(f"Processing job {job.job_id} ({job.task_type}), attempt {job.attempt}")
        try:
            try:
                result = await self._execute(job)
            except asyncio.CancelledError:
                self.logger.warning(f"Job {job.job_id} interrupted, releasing it back to the queue")
                await self.job_queue_service.release(job)
                raise
            except ValidationError as e:
                return await self._dead_letter(job, f"Invalid payload: {e}")
            except (PermanentJobError, OrderNotFoundError) as e:
                return await self._dead_letter(job, e.message)
            except DeferredJobError as e:
                return await self._defer(job, e)
            except asyncio.TimeoutError:
                return await self._handle_failure(job, f"Timed out after {job.timeout}s")
            except FulfillmentError as e:
                return await self._handle_failure(job, e.message)
            except Exception as e:
                return await self._handle_failure(job, f"{type(e).__name__}: {e}")

            return await self._complete(job, result.result)
        finally:
            self.in_flight.pop(job.job_id, None)

    async def process_next_job(self) -> tuple[bool, Optional[JobResult]]:
        job = await self.job_queue_service.try_take()
        if not job:
            return False, JobResult(status=JobStatus.failed, error_message="No jobs available to process")
        result = await self.process_job(job)
        return result.status == JobStatus.completed, result

    async def _executor(self, index: int):
        while not self._stop_event.is_set():
            job = await self.job_queue_service.take()
            try:
                await self.process_job(job)
            except RedisError as e:
                # The job stays on the processing list until it is recovered
                self.logger.error(f"Executor {index} could not record outcome of job {job.job_id}: {e}")
                await asyncio.sleep(1)

    def stop(self):
        self._stop_event.set()

    async def run(self):
        """
        Run the worker pool until `stop()` is called or the task is cancelled.
        """
        await self.register_worker()
        heartbeat_task = asyncio.create_task(self._heartbeat_task())
        executors = [asyncio.create_task(self._executor(i)) for i in range(self.concurrency)]
        self.logger.info(f"Worker {self.worker_id} listening on {self.queue_name}")

        try:
            await self._stop_event.wait()
            self.logger.info("Worker received stop signal")
        except asyncio.CancelledError:
            self.logger.info("Worker received cancellation signal")
        finally:
            heartbeat_task.cancel()
            for task in executors:
                task.cancel()
            await asyncio.gather(heartbeat_task, *executors, return_exceptions=True)
            if self.worker_id:
                await self.deregister_worker()


if __name__ == "__main__":
    import signal

    from ..core.dependencies import get_redis_client, close_redis_client
    from ..core.logging import configure_logging
    from .handlers import build_handler_registry
    from .integrations import build_integrations
    from .orders import OrderRepository

    configure_logging()

    async def main():
        redis_client = await get_redis_client()
        registry = build_handler_registry(build_integrations(redis_client))
        worker = WorkerService(
            client=redis_client,
            registry=registry,
            orders=OrderAccess(OrderRepository(redis_client)),
            queue_name=settings.QUEUE_NAME,
        )
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, worker.stop)
        try:
            await worker.run()
        finally:
            await close_redis_client()

    asyncio.run(main())
