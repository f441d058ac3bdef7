import pytest
import asyncio
from fakeredis import FakeServer, aioredis
from pydantic import BaseModel
from fulfillment.core.exceptions import DeferredJobError, FulfillmentError, PermanentJobError, RetryableJobError
from fulfillment.models.enums import JobStatus, PriorityLevel
from fulfillment.models.schemas import JobOptions
from fulfillment.services.handlers import HandlerRegistry, JobHandler
from fulfillment.services.orders import OrderAccess, OrderRepository
from fulfillment.services.priority import StrictPrioritySelector
from fulfillment.services.queue import JobQueueService
from fulfillment.services.retry import RetryPolicy
from fulfillment.services.worker import WorkerService


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StubPayload(BaseModel):
    order_id: str
    behaviour: str = "ok"
    sleep: float = 0.0


class StubHandler(JobHandler[StubPayload]):
    task_type = "stub:run"
    payload_model = StubPayload

    def __init__(self):
        self.calls = 0

    async def execute(self, payload: StubPayload, orders: OrderAccess):
        self.calls += 1
        if payload.behaviour == "retry":
            raise RetryableJobError("downstream unavailable")
        if payload.behaviour == "permanent":
            raise PermanentJobError("order cannot be fulfilled")
        if payload.behaviour == "crash":
            raise RuntimeError("boom")
        if payload.behaviour == "defer":
            raise DeferredJobError("upstream not ready", delay=10.0)
        if payload.behaviour == "sleep":
            await asyncio.sleep(payload.sleep)
        return self.done(payload, echoed=payload.order_id)


class TrackingHandler(StubHandler):
    task_type = "tracking:run"
    best_effort = True


@pytest.fixture
async def fake_redis():
    return aioredis.FakeRedis(server=FakeServer(), decode_responses=True)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
async def queue_service(fake_redis: aioredis.FakeRedis, clock: FakeClock):
    return JobQueueService(client=fake_redis, selector=StrictPrioritySelector(), clock=clock)

@pytest.fixture
def handler():
    return StubHandler()

@pytest.fixture
def registry(handler: StubHandler):
    registry = HandlerRegistry()
    registry.register("stub:run", handler)
    registry.register("tracking:run", TrackingHandler())
    registry.freeze()
    return registry

@pytest.fixture
async def worker_service(fake_redis: aioredis.FakeRedis, queue_service: JobQueueService, registry: HandlerRegistry):
    return WorkerService(
        client=fake_redis,
        registry=registry,
        orders=OrderAccess(OrderRepository(fake_redis)),
        queue_service=queue_service,
        retry_policy=RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.0),
        concurrency=2,
    )


async def submit_stub(queue_service: JobQueueService, behaviour="ok", **options):
    payload = {"order_id": "ORD-0000abcd", "behaviour": behaviour}
    if "sleep" in options:
        payload["sleep"] = options.pop("sleep")
    return await queue_service.submit("stub:run", payload, JobOptions(**options))


@pytest.mark.asyncio
async def test_register_worker(worker_service: WorkerService, fake_redis: aioredis.FakeRedis):
    result = await worker_service.register_worker()
    assert result["message"] == "Worker registered"
    assert worker_service.worker_id is not None
    assert await fake_redis.sismember(worker_service.keys.active_workers_key(), worker_service.worker_id)

@pytest.mark.asyncio
async def test_deregister_worker(worker_service: WorkerService, fake_redis: aioredis.FakeRedis):
    await worker_service.register_worker()
    await worker_service.deregister_worker()
    assert worker_service.worker_id is None
    assert await fake_redis.scard(worker_service.keys.active_workers_key()) == 0

@pytest.mark.asyncio
async def test_deregister_unregistered_worker(worker_service: WorkerService):
    with pytest.raises(FulfillmentError):
        await worker_service.deregister_worker()

@pytest.mark.asyncio
async def test_send_heartbeat(worker_service: WorkerService, fake_redis: aioredis.FakeRedis):
    await worker_service.register_worker()
    await worker_service.send_heartbeat()
    heartbeat = await fake_redis.zscore(worker_service.keys.worker_heartbeats(), worker_service.worker_id)
    assert heartbeat is not None

@pytest.mark.asyncio
async def test_stale_workers_are_pruned(worker_service: WorkerService, fake_redis: aioredis.FakeRedis):
    await fake_redis.sadd(worker_service.keys.active_workers_key(), "ghost")
    await fake_redis.zadd(worker_service.keys.worker_heartbeats(), {"ghost": 0})

    stale = await worker_service.check_stale_workers()
    await worker_service.mark_worker_as_dead(stale)

    assert stale == ["ghost"]
    assert await fake_redis.scard(worker_service.keys.active_workers_key()) == 0

@pytest.mark.asyncio
async def test_process_next_job_empty_queue(worker_service: WorkerService):
    success, result = await worker_service.process_next_job()

    assert success is False
    assert "No jobs available to process" in result.error_message

@pytest.mark.asyncio
async def test_process_next_job(worker_service: WorkerService, queue_service: JobQueueService):
    job = await submit_stub(queue_service)

    success, result = await worker_service.process_next_job()

    assert success is True
    assert result.status == JobStatus.completed
    assert result.result == {"order_id": "ORD-0000abcd", "echoed": "ORD-0000abcd"}
    assert await queue_service.get_job(job.job_id) is None
    assert (await queue_service.get_job_result(job.job_id))["status"] == "completed"
    assert worker_service.processed_jobs == 1

@pytest.mark.asyncio
async def test_retryable_failure_is_rescheduled(worker_service: WorkerService, queue_service: JobQueueService, clock: FakeClock):
    job = await submit_stub(queue_service, "retry", max_retries=3)

    success, result = await worker_service.process_next_job()

    assert success is False
    assert result.status == JobStatus.retrying
    stored = await queue_service.get_job(job.job_id)
    assert stored.retry_count == 1
    assert stored.error_message == "downstream unavailable"
    assert stored.eligible_at == clock.now + 1.0

@pytest.mark.asyncio
async def test_unexpected_error_is_retried(worker_service: WorkerService, queue_service: JobQueueService):
    job = await submit_stub(queue_service, "crash")

    _, result = await worker_service.process_next_job()

    assert result.status == JobStatus.retrying
    assert (await queue_service.get_job(job.job_id)).error_message == "RuntimeError: boom"

@pytest.mark.asyncio
async def test_attempts_are_bounded_by_max_retries(worker_service: WorkerService, queue_service: JobQueueService,
                                                   clock: FakeClock, handler: StubHandler):
    job = await submit_stub(queue_service, "retry", max_retries=3)

    for _ in range(10):
        success, result = await worker_service.process_next_job()
        clock.advance(60)

    assert handler.calls == 4
    dead = await queue_service.get_dead_letters()
    assert [letter.job_id for letter in dead] == [job.job_id]
    assert dead[0].retry_count == 3
    assert "Max retries exceeded after 4 attempts" in dead[0].error_message
    assert worker_service.failed_jobs == 1

@pytest.mark.asyncio
async def test_backoff_grows_between_attempts(worker_service: WorkerService, queue_service: JobQueueService, clock: FakeClock):
    job = await submit_stub(queue_service, "retry", max_retries=4)
    waits = []
    for _ in range(3):
        await worker_service.process_next_job()
        stored = await queue_service.get_job(job.job_id)
        if stored is None:
            break
        waits.append(stored.eligible_at - clock.now)
        clock.advance(stored.eligible_at - clock.now)

    assert waits == [1.0, 2.0, 4.0]

@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries, expected_calls", [(0, 1), (1, 2), (2, 3)])
async def test_job_runs_once_plus_its_retries(worker_service: WorkerService, queue_service: JobQueueService,
                                             clock: FakeClock, handler: StubHandler, max_retries, expected_calls):
    await submit_stub(queue_service, "retry", max_retries=max_retries)

    for _ in range(10):
        await worker_service.process_next_job()
        clock.advance(60)

    assert handler.calls == expected_calls
    assert len(await queue_service.get_dead_letters()) == 1

@pytest.mark.asyncio
async def test_deferral_does_not_spend_retries(worker_service: WorkerService, queue_service: JobQueueService,
                                               clock: FakeClock):
    job = await submit_stub(queue_service, "defer", max_retries=0)

    for _ in range(3):
        success, result = await worker_service.process_next_job()
        assert success is False
        assert result.status == JobStatus.scheduled
        stored = await queue_service.get_job(job.job_id)
        assert stored.eligible_at == clock.now + 10.0
        clock.advance(10)

    assert stored.retry_count == 0
    assert stored.deferred_count == 3
    assert await queue_service.get_dead_letters() == []

@pytest.mark.asyncio
async def test_deferral_budget_falls_back_to_retries(fake_redis: aioredis.FakeRedis, queue_service: JobQueueService,
                                                     registry: HandlerRegistry, clock: FakeClock):
    worker = WorkerService(
        client=fake_redis,
        registry=registry,
        orders=OrderAccess(OrderRepository(fake_redis)),
        queue_service=queue_service,
        max_deferrals=1,
    )
    job = await submit_stub(queue_service, "defer", max_retries=0)

    await worker.process_next_job()
    clock.advance(10)
    _, result = await worker.process_next_job()

    assert result.status == JobStatus.failed
    dead = await queue_service.get_dead_letters()
    assert [letter.job_id for letter in dead] == [job.job_id]
    assert "Gave up waiting after 1 deferrals" in dead[0].error_message

@pytest.mark.asyncio
async def test_best_effort_timeout_completes(worker_service: WorkerService, queue_service: JobQueueService):
    job = await queue_service.submit(
        "tracking:run", {"order_id": "ORD-0000abcd", "behaviour": "sleep", "sleep": 5.0}, JobOptions(timeout=0.05)
    )

    success, result = await worker_service.process_next_job()

    assert success is True
    assert result.result["tracked"] is False
    assert "Timed out" in result.result["error"]
    assert await queue_service.get_dead_letters() == []
    assert await queue_service.get_job(job.job_id) is None

@pytest.mark.asyncio
async def test_best_effort_crash_completes(worker_service: WorkerService, queue_service: JobQueueService):
    await queue_service.submit("tracking:run", {"order_id": "ORD-0000abcd", "behaviour": "crash"}, JobOptions(max_retries=5))

    success, result = await worker_service.process_next_job()

    assert success is True
    assert result.result["error"] == "RuntimeError: boom"
    assert worker_service.failed_jobs == 0

@pytest.mark.asyncio
async def test_permanent_failure_goes_straight_to_dlq(worker_service: WorkerService, queue_service: JobQueueService,
                                                      handler: StubHandler):
    job = await submit_stub(queue_service, "permanent", max_retries=5)

    success, result = await worker_service.process_next_job()

    assert success is False
    assert result.status == JobStatus.failed
    assert handler.calls == 1
    assert [letter.job_id for letter in await queue_service.get_dead_letters()] == [job.job_id]

@pytest.mark.asyncio
async def test_unknown_task_type_goes_to_dlq(worker_service: WorkerService, queue_service: JobQueueService):
    job = await queue_service.submit("refund:process", {"order_id": "ORD-0000abcd"})

    success, result = await worker_service.process_next_job()

    assert success is False
    assert "No handler registered" in result.error_message
    assert [letter.job_id for letter in await queue_service.get_dead_letters()] == [job.job_id]

@pytest.mark.asyncio
async def test_invalid_payload_goes_to_dlq(worker_service: WorkerService, queue_service: JobQueueService,
                                           handler: StubHandler):
    job = await queue_service.submit("stub:run", {"behaviour": "ok"})

    _, result = await worker_service.process_next_job()

    assert result.status == JobStatus.failed
    assert result.error_message.startswith("Invalid payload")
    assert handler.calls == 0
    assert await queue_service.get_job(job.job_id) is None

@pytest.mark.asyncio
async def test_timeout_is_a_retryable_failure(worker_service: WorkerService, queue_service: JobQueueService):
    job = await submit_stub(queue_service, "sleep", sleep=5.0, timeout=0.05)

    _, result = await worker_service.process_next_job()

    assert result.status == JobStatus.retrying
    assert "Timed out" in (await queue_service.get_job(job.job_id)).error_message

@pytest.mark.asyncio
async def test_timeout_only_cancels_its_own_job(worker_service: WorkerService, queue_service: JobQueueService):
    await submit_stub(queue_service, "sleep", sleep=5.0, timeout=0.05, priority=PriorityLevel.critical)
    await submit_stub(queue_service, "sleep", sleep=0.2, timeout=5.0)
    slow = await queue_service.try_take()
    fast = await queue_service.try_take()

    slow_result, fast_result = await asyncio.gather(
        worker_service.process_job(slow), worker_service.process_job(fast)
    )

    assert slow_result.status == JobStatus.retrying
    assert fast_result.status == JobStatus.completed

@pytest.mark.asyncio
async def test_interrupted_job_is_released(worker_service: WorkerService, queue_service: JobQueueService):
    await submit_stub(queue_service, "sleep", sleep=60.0, timeout=120.0)
    job = await queue_service.try_take()

    task = asyncio.create_task(worker_service.process_job(job))
    await asyncio.sleep(0.05)
    assert job.job_id in worker_service.in_flight
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    again = await queue_service.try_take()
    assert again.job_id == job.job_id
    assert again.retry_count == 0
    assert worker_service.in_flight == {}

@pytest.mark.asyncio
async def test_run_processes_jobs_until_stopped(fake_redis: aioredis.FakeRedis, registry: HandlerRegistry):
    queue_service = JobQueueService(client=fake_redis, selector=StrictPrioritySelector(), poll_interval=0.05)
    worker = WorkerService(
        client=fake_redis,
        registry=registry,
        orders=OrderAccess(OrderRepository(fake_redis)),
        queue_service=queue_service,
        concurrency=3,
    )
    for _ in range(5):
        await submit_stub(queue_service)

    runner = asyncio.create_task(worker.run())
    for _ in range(100):
        if worker.processed_jobs == 5:
            break
        await asyncio.sleep(0.02)
    worker.stop()
    await asyncio.wait_for(runner, timeout=2)

    assert worker.processed_jobs == 5
    assert worker.worker_id is None
    assert await fake_redis.scard(worker.keys.active_workers_key()) == 0
