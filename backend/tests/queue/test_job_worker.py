"""Test the worker loop: ack on success, backoff retries, terminal failures."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from fakeredis import aioredis

from tonaudit.core.exceptions import ConflictingActiveRun, StorageUnavailable
from tonaudit.domain.enums import JobEventType
from tonaudit.queue.manager import QueueManager
from tonaudit.queue.schemas import AuditJobPayload, PipelineStep
from tonaudit.queue.worker import backoff_seconds, process_next_job, run_worker

pytestmark = pytest.mark.unit

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
JOB_ID = "audit:job-1"


@pytest.fixture
async def redis_client():
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def queue(redis_client):
    return QueueManager(redis_client, "audit")


@pytest.fixture
def payload():
    return AuditJobPayload(project_id=uuid.uuid4(), revision_id=uuid.uuid4(), audit_run_id=uuid.uuid4())


@pytest.fixture
async def queued(queue, payload):
    await queue.enqueue(JOB_ID, payload.to_wire(), now=T0)
    return payload


def _events_of(events: AsyncMock) -> list[JobEventType]:
    return [call.kwargs["event"] for call in events.record.await_args_list]


def test_backoff_is_exponential():
    assert [backoff_seconds(attempt, 5.0) for attempt in (1, 2, 3)] == [5.0, 10.0, 20.0]


@pytest.mark.asyncio
async def test_nothing_due_returns_false(redis_client):
    handler = AsyncMock()

    processed = await process_next_job(PipelineStep.AUDIT, handler, redis=redis_client, now=T0)

    assert processed is False
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_success_runs_handler_with_typed_payload_and_acks(redis_client, queue, queued):
    handler = AsyncMock()
    events = AsyncMock()

    processed = await process_next_job(PipelineStep.AUDIT, handler, redis=redis_client, events=events, now=T0)

    assert processed is True
    received = handler.await_args.args[0]
    assert isinstance(received, AuditJobPayload)
    assert received.audit_run_id == queued.audit_run_id
    assert await queue.get_job(JOB_ID) is None
    assert _events_of(events) == [JobEventType.STARTED, JobEventType.COMPLETED]
    assert events.record.await_args.kwargs["project_id"] == queued.project_id


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff(redis_client, queue, queued):
    handler = AsyncMock(side_effect=[StorageUnavailable("down"), None])

    await process_next_job(
        PipelineStep.AUDIT, handler, redis=redis_client, max_attempts=3, backoff_base=5.0, now=T0
    )

    assert await queue.is_pending(JOB_ID)
    assert await process_next_job(PipelineStep.AUDIT, handler, redis=redis_client, now=T0) is False

    later = T0 + timedelta(seconds=5)
    assert await process_next_job(PipelineStep.AUDIT, handler, redis=redis_client, now=later) is True
    assert handler.await_count == 2
    assert await queue.get_job(JOB_ID) is None


@pytest.mark.asyncio
async def test_exhausted_attempts_ack_and_record_failure(redis_client, queue, queued):
    handler = AsyncMock(side_effect=RuntimeError("engine crashed"))
    events = AsyncMock()

    now = T0
    for _ in range(2):
        await process_next_job(
            PipelineStep.AUDIT, handler, redis=redis_client, events=events, max_attempts=2, backoff_base=1.0, now=now
        )
        now = now + timedelta(seconds=10)

    assert handler.await_count == 2
    assert await queue.get_job(JOB_ID) is None
    assert _events_of(events)[-1] == JobEventType.FAILED
    assert events.record.await_args.kwargs["payload"]["error_type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately(redis_client, queue, queued):
    handler = AsyncMock(side_effect=ConflictingActiveRun(queued.project_id, uuid.uuid4()))

    await process_next_job(PipelineStep.AUDIT, handler, redis=redis_client, max_attempts=5, now=T0)

    assert handler.await_count == 1
    assert not await queue.is_pending(JOB_ID)
    assert await queue.get_job(JOB_ID) is None


@pytest.mark.asyncio
async def test_invalid_payload_is_not_retried(redis_client, queue):
    await queue.enqueue("audit:broken", {"projectId": "not-a-uuid"}, now=T0)
    handler = AsyncMock()
    events = AsyncMock()

    await process_next_job(PipelineStep.AUDIT, handler, redis=redis_client, events=events, max_attempts=5, now=T0)

    handler.assert_not_awaited()
    assert await queue.get_job("audit:broken") is None
    assert _events_of(events) == [JobEventType.STARTED, JobEventType.FAILED]
    assert events.record.await_args.kwargs["project_id"] is None


@pytest.mark.asyncio
async def test_run_worker_stops_when_event_is_set(redis_client, queue, payload):
    await queue.enqueue(JOB_ID, payload.to_wire())
    stop = asyncio.Event()

    async def handler(received):
        stop.set()

    await asyncio.wait_for(
        run_worker(PipelineStep.AUDIT, handler, stop, poll_interval=0.01, redis=redis_client),
        timeout=5,
    )

    assert await queue.get_job(JOB_ID) is None


@pytest.mark.asyncio
async def test_failure_handler_runs_only_when_job_gives_up(redis_client, queue, queued):
    handler = AsyncMock(side_effect=StorageUnavailable("bucket unreachable"))
    on_failure = AsyncMock()

    await process_next_job(
        PipelineStep.AUDIT, handler, redis=redis_client, max_attempts=2, backoff_base=1.0, now=T0, on_failure=on_failure
    )
    on_failure.assert_not_awaited()

    await process_next_job(
        PipelineStep.AUDIT,
        handler,
        redis=redis_client,
        max_attempts=2,
        backoff_base=1.0,
        now=T0 + timedelta(seconds=10),
        on_failure=on_failure,
    )

    on_failure.assert_awaited_once()
    failed_payload, error = on_failure.await_args.args
    assert failed_payload.audit_run_id == queued.audit_run_id
    assert isinstance(error, StorageUnavailable)


@pytest.mark.asyncio
async def test_broken_failure_handler_still_acks(redis_client, queue, queued):
    handler = AsyncMock(side_effect=ConflictingActiveRun(queued.project_id))
    on_failure = AsyncMock(side_effect=RuntimeError("db down"))
    events = AsyncMock()

    await process_next_job(PipelineStep.AUDIT, handler, redis=redis_client, events=events, now=T0, on_failure=on_failure)

    on_failure.assert_awaited_once()
    assert await queue.get_job(JOB_ID) is None
    assert _events_of(events)[-1] == JobEventType.FAILED


@pytest.mark.asyncio
async def test_failure_handler_skipped_for_invalid_payload(redis_client, queue):
    await queue.enqueue("audit:broken", {"projectId": "not-a-uuid"}, now=T0)
    on_failure = AsyncMock()

    await process_next_job(PipelineStep.AUDIT, AsyncMock(), redis=redis_client, now=T0, on_failure=on_failure)

    on_failure.assert_not_awaited()
