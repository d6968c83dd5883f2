"""Test QueueManager: dedup by job id, delayed retries, ack."""

from datetime import UTC, datetime, timedelta

import pytest
from fakeredis import aioredis

from tonaudit.queue.manager import QueueManager

pytestmark = pytest.mark.unit

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
async def redis_client():
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def queue(redis_client):
    return QueueManager(redis_client, "audit")


@pytest.mark.asyncio
async def test_enqueue_then_dequeue_returns_payload(queue):
    assert await queue.enqueue("audit:1", {"auditRunId": "1"}, now=T0) is True

    job = await queue.dequeue(now=T0)

    assert job is not None
    assert job.job_id == "audit:1"
    assert job.queue == "audit"
    assert job.payload == {"auditRunId": "1"}
    assert job.attempts == 1
    assert job.enqueued_at == T0.isoformat()


@pytest.mark.asyncio
async def test_second_enqueue_of_pending_id_is_deduplicated(queue):
    assert await queue.enqueue("audit:1", {"n": 1}, now=T0) is True
    assert await queue.enqueue("audit:1", {"n": 2}, now=T0) is False

    assert await queue.get_length() == 1
    job = await queue.dequeue(now=T0)
    assert job.payload == {"n": 1}


@pytest.mark.asyncio
async def test_dequeue_empty_queue_returns_none(queue):
    assert await queue.dequeue(now=T0) is None


@pytest.mark.asyncio
async def test_dequeue_is_fifo_by_enqueue_time(queue):
    await queue.enqueue("audit:b", {}, now=T0 + timedelta(seconds=1))
    await queue.enqueue("audit:a", {}, now=T0)

    first = await queue.dequeue(now=T0 + timedelta(seconds=2))
    second = await queue.dequeue(now=T0 + timedelta(seconds=2))

    assert [first.job_id, second.job_id] == ["audit:a", "audit:b"]


@pytest.mark.asyncio
async def test_claimed_job_is_not_delivered_twice(queue):
    await queue.enqueue("audit:1", {}, now=T0)

    assert await queue.dequeue(now=T0) is not None
    assert await queue.dequeue(now=T0) is None


@pytest.mark.asyncio
async def test_retry_later_delays_and_counts_attempts(queue):
    await queue.enqueue("audit:1", {}, now=T0)
    job = await queue.dequeue(now=T0)

    await queue.retry_later(job.job_id, 10, now=T0)

    assert await queue.is_pending("audit:1")
    assert await queue.dequeue(now=T0 + timedelta(seconds=5)) is None
    retried = await queue.dequeue(now=T0 + timedelta(seconds=10))
    assert retried.attempts == 2


@pytest.mark.asyncio
async def test_claimed_job_id_stays_reserved_until_ack(queue):
    await queue.enqueue("audit:1", {}, now=T0)
    await queue.dequeue(now=T0)

    assert await queue.enqueue("audit:1", {}, now=T0) is False


@pytest.mark.asyncio
async def test_ack_releases_job_id(queue):
    await queue.enqueue("audit:1", {"n": 1}, now=T0)
    await queue.dequeue(now=T0)

    await queue.ack("audit:1")

    assert await queue.get_job("audit:1") is None
    assert await queue.enqueue("audit:1", {"n": 2}, now=T0) is True


@pytest.mark.asyncio
async def test_queues_are_isolated(redis_client):
    audit = QueueManager(redis_client, "audit")
    pdf = QueueManager(redis_client, "pdf")
    await audit.enqueue("job-1", {}, now=T0)

    assert await pdf.dequeue(now=T0) is None
    assert await pdf.enqueue("job-1", {}, now=T0) is True
