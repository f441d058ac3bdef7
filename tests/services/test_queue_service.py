import pytest
import asyncio
import json
from fakeredis import FakeServer, aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from fulfillment.core.exceptions import JobSubmissionError
from fulfillment.services.priority import StrictPrioritySelector, WeightedPrioritySelector
from fulfillment.services.queue import JobQueueService
from fulfillment.models.schemas import JobOptions
from fulfillment.models.enums import PriorityLevel, JobStatus, TaskType


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
async def fake_redis():
    return aioredis.FakeRedis(server=FakeServer(), decode_responses=True)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
async def queue_service(fake_redis: aioredis.FakeRedis, clock: FakeClock):
    return JobQueueService(client=fake_redis, selector=StrictPrioritySelector(), clock=clock, poll_interval=5.0)


@pytest.mark.asyncio
async def test_submit_job_successfully(queue_service: JobQueueService):
    job = await queue_service.submit(TaskType.email_confirmation, {"order_id": "ORD-1"})

    assert job.job_id is not None
    assert job.task_type == "email:confirmation"
    assert job.status == JobStatus.pending
    assert job.priority == PriorityLevel.default
    assert json.loads(job.payload) == {"order_id": "ORD-1"}

    stored = await queue_service.get_job(job.job_id)
    assert stored is not None
    assert stored.job_id == job.job_id

@pytest.mark.asyncio
async def test_get_nonexistent_job(queue_service: JobQueueService):
    assert await queue_service.get_job("nonexistent_id") is None

@pytest.mark.asyncio
async def test_try_take_from_empty_queue(queue_service: JobQueueService):
    assert await queue_service.try_take() is None

@pytest.mark.asyncio
async def test_take_marks_job_processing(queue_service: JobQueueService, fake_redis: aioredis.FakeRedis):
    job = await queue_service.submit("analytics:track", "{}", JobOptions(priority=PriorityLevel.low))

    taken = await queue_service.try_take()

    assert taken.job_id == job.job_id
    assert taken.status == JobStatus.processing
    assert await fake_redis.lrange(queue_service.keys.processing_queue_key(), 0, -1) == [job.job_id]
    assert (await queue_service.get_job(job.job_id)).status == JobStatus.processing

@pytest.mark.asyncio
async def test_delayed_job_is_not_eligible_early(queue_service: JobQueueService, clock: FakeClock):
    job = await queue_service.submit("payment:process", "{}", JobOptions(priority=PriorityLevel.critical, delay=2))
    assert job.status == JobStatus.scheduled

    assert await queue_service.try_take() is None
    clock.advance(1.9)
    assert await queue_service.try_take() is None
    clock.advance(0.1)
    taken = await queue_service.try_take()
    assert taken is not None
    assert taken.job_id == job.job_id

@pytest.mark.asyncio
async def test_fifo_within_class(queue_service: JobQueueService):
    submitted = [await queue_service.submit("email:confirmation", {"n": i}) for i in range(5)]

    taken = [await queue_service.try_take() for _ in range(5)]

    assert [job.job_id for job in taken] == [job.job_id for job in submitted]

@pytest.mark.asyncio
async def test_fifo_by_eligible_time(queue_service: JobQueueService, clock: FakeClock):
    later = await queue_service.submit("invoice:generate", "{}", JobOptions(delay=5))
    sooner = await queue_service.submit("email:confirmation", "{}", JobOptions(delay=3))
    clock.advance(10)

    first = await queue_service.try_take()
    second = await queue_service.try_take()

    assert first.job_id == sooner.job_id
    assert second.job_id == later.job_id

@pytest.mark.asyncio
async def test_strict_priority_prefers_higher_class(queue_service: JobQueueService):
    low = await queue_service.submit("analytics:track", "{}", JobOptions(priority=PriorityLevel.low))
    default = await queue_service.submit("email:confirmation", "{}", JobOptions(priority=PriorityLevel.default))
    critical = await queue_service.submit("payment:process", "{}", JobOptions(priority=PriorityLevel.critical))

    order = [(await queue_service.try_take()).job_id for _ in range(3)]

    assert order == [critical.job_id, default.job_id, low.job_id]

@pytest.mark.asyncio
async def test_weighted_selection_serves_classes_by_weight(fake_redis: aioredis.FakeRedis, clock: FakeClock):
    service = JobQueueService(
        client=fake_redis,
        selector=WeightedPrioritySelector({"critical": 6, "high": 4, "default": 2, "low": 1}),
        clock=clock,
    )
    for level, count in ((PriorityLevel.critical, 12), (PriorityLevel.high, 8),
                         (PriorityLevel.default, 4), (PriorityLevel.low, 2)):
        for _ in range(count):
            await service.submit("email:confirmation", "{}", JobOptions(priority=level))

    served = {level: 0 for level in PriorityLevel.ranked()}
    for _ in range(13):
        served[(await service.try_take()).priority] += 1

    assert served == {
        PriorityLevel.critical: 6,
        PriorityLevel.high: 4,
        PriorityLevel.default: 2,
        PriorityLevel.low: 1,
    }

@pytest.mark.asyncio
async def test_job_is_handed_to_exactly_one_taker(queue_service: JobQueueService):
    job = await queue_service.submit("payment:process", "{}")

    results = await asyncio.gather(*(queue_service.try_take() for _ in range(5)))

    taken = [result for result in results if result is not None]
    assert len(taken) == 1
    assert taken[0].job_id == job.job_id

@pytest.mark.asyncio
async def test_take_wakes_up_on_submit(queue_service: JobQueueService):
    taker = asyncio.create_task(queue_service.take())
    await asyncio.sleep(0.05)
    assert not taker.done()

    job = await queue_service.submit("email:confirmation", "{}")

    taken = await asyncio.wait_for(taker, timeout=2)
    assert taken.job_id == job.job_id

@pytest.mark.asyncio
async def test_complete_discards_job_and_keeps_result(queue_service: JobQueueService, fake_redis: aioredis.FakeRedis):
    await queue_service.submit("email:confirmation", "{}")
    job = await queue_service.try_take()

    await queue_service.complete(job, {"message_id": "msg_1"})

    assert await queue_service.get_job(job.job_id) is None
    assert await fake_redis.llen(queue_service.keys.processing_queue_key()) == 0
    result = await queue_service.get_job_result(job.job_id)
    assert result["status"] == "completed"
    assert result["result"] == {"message_id": "msg_1"}
    assert result["attempts"] == 1

@pytest.mark.asyncio
async def test_retry_reschedules_with_delay(queue_service: JobQueueService, clock: FakeClock, fake_redis: aioredis.FakeRedis):
    await queue_service.submit("payment:process", "{}", JobOptions(priority=PriorityLevel.critical))
    job = await queue_service.try_take()

    await queue_service.retry(job, 4.0, "gateway down")

    stored = await queue_service.get_job(job.job_id)
    assert stored.retry_count == 1
    assert stored.status == JobStatus.retrying
    assert stored.error_message == "gateway down"
    assert await fake_redis.llen(queue_service.keys.processing_queue_key()) == 0
    assert await queue_service.try_take() is None

    clock.advance(4.0)
    again = await queue_service.try_take()
    assert again.job_id == job.job_id
    assert again.retry_count == 1

@pytest.mark.asyncio
async def test_release_returns_job_without_counting_a_retry(queue_service: JobQueueService):
    await queue_service.submit("inventory:update", "{}", JobOptions(priority=PriorityLevel.high))
    job = await queue_service.try_take()

    await queue_service.release(job)

    again = await queue_service.try_take()
    assert again.job_id == job.job_id
    assert again.retry_count == 0

@pytest.mark.asyncio
async def test_defer_reschedules_without_counting_a_retry(queue_service: JobQueueService, clock: FakeClock,
                                                          fake_redis: aioredis.FakeRedis):
    await queue_service.submit("warehouse:notify", "{}", JobOptions(priority=PriorityLevel.low))
    job = await queue_service.try_take()

    await queue_service.defer(job, 10.0, "awaiting payment")

    assert await queue_service.try_take() is None
    assert await fake_redis.llen(queue_service.keys.processing_queue_key()) == 0
    clock.advance(10)
    again = await queue_service.try_take()
    assert again.job_id == job.job_id
    assert again.retry_count == 0
    assert again.deferred_count == 1
    assert again.error_message == "awaiting payment"

@pytest.mark.asyncio
async def test_move_to_dlq(queue_service: JobQueueService, fake_redis: aioredis.FakeRedis):
    await queue_service.submit("warehouse:notify", "{}", JobOptions(priority=PriorityLevel.low))
    job = await queue_service.try_take()

    assert await queue_service.move_to_dlq(job, "order cancelled") is True

    assert await queue_service.get_job(job.job_id) is None
    dead = await queue_service.get_dead_letters()
    assert [letter.job_id for letter in dead] == [job.job_id]
    assert dead[0].status == JobStatus.failed
    assert dead[0].error_message == "order cancelled"
    assert await fake_redis.llen(queue_service.keys.processing_queue_key()) == 0

@pytest.mark.asyncio
async def test_unreadable_job_record_goes_to_dlq(queue_service: JobQueueService, fake_redis: aioredis.FakeRedis):
    job = await queue_service.submit("email:confirmation", "{}")
    await fake_redis.hset(queue_service.keys.jobs_key(), job.job_id, "not json")

    assert await queue_service.try_take() is None
    assert await fake_redis.hexists(queue_service.keys.dead_letter_queue_key(), job.job_id)

@pytest.mark.asyncio
async def test_queue_metrics(queue_service: JobQueueService, clock: FakeClock):
    await queue_service.submit("payment:process", "{}", JobOptions(priority=PriorityLevel.critical, delay=2))
    await queue_service.submit("email:confirmation", "{}")
    await queue_service.submit("analytics:track", "{}", JobOptions(priority=PriorityLevel.low))
    await queue_service.try_take()

    metrics = await queue_service.queue_metrics()

    assert metrics["scheduled_critical"] == 1
    assert metrics["pending_default"] == 0
    assert metrics["pending_low"] == 1
    assert metrics["processing"] == 1
    assert metrics["dead_letters"] == 0

@pytest.mark.asyncio
async def test_submit_failure_raises_submission_error(queue_service: JobQueueService, fake_redis: aioredis.FakeRedis, monkeypatch):
    async def broken_incr(*args, **kwargs):
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr(fake_redis, "incr", broken_incr)

    with pytest.raises(JobSubmissionError):
        await queue_service.submit("payment:process", "{}")

@pytest.mark.asyncio
async def test_broker_does_not_publish_notifications(queue_service: JobQueueService, fake_redis: aioredis.FakeRedis):
    pubsub = fake_redis.pubsub()
    await pubsub.psubscribe(f"{queue_service.queue_name}:*")
    await pubsub.get_message(timeout=0.1)

    await queue_service.submit("email:confirmation", "{}")
    await queue_service.complete(await queue_service.try_take(), {"sent": True})
    await queue_service.submit("email:confirmation", "{}")
    await queue_service.move_to_dlq(await queue_service.try_take(), "bounced")

    assert await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1) is None
    await pubsub.aclose()
