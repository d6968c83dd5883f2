"""Test JobDispatcher: step -> queue routing, payload validation, broker errors."""

import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from fakeredis import aioredis
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from tonaudit.core.exceptions import BrokerUnavailable
from tonaudit.domain.enums import JobEventType
from tonaudit.queue.dispatcher import JobDispatcher
from tonaudit.queue.job_ids import audit_job_id, pdf_job_id
from tonaudit.queue.manager import QueueManager
from tonaudit.queue.schemas import STEP_QUEUES, AuditJobPayload, PipelineStep

pytestmark = pytest.mark.unit


@pytest.fixture
async def redis_client():
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


def _audit_payload() -> AuditJobPayload:
    return AuditJobPayload(project_id=uuid.uuid4(), revision_id=uuid.uuid4(), audit_run_id=uuid.uuid4())


def test_every_step_has_its_own_queue():
    assert set(STEP_QUEUES) == set(PipelineStep)
    assert len(set(STEP_QUEUES.values())) == len(PipelineStep)


def test_job_ids_are_deterministic():
    run_id = uuid.uuid4()

    assert audit_job_id(run_id) == f"audit:{run_id}"
    assert pdf_job_id(run_id, "client") == f"pdf:{run_id}:client"


@pytest.mark.asyncio
async def test_enqueue_writes_camel_case_payload_to_step_queue(redis_client):
    dispatcher = JobDispatcher(redis_client)
    payload = _audit_payload()
    job_id = audit_job_id(payload.audit_run_id)

    handle = await dispatcher.enqueue(PipelineStep.AUDIT, payload, job_id=job_id)

    assert handle.queue == "audit"
    assert handle.deduplicated is False
    stored = await QueueManager(redis_client, "audit").get_job(job_id)
    wire = json.loads(stored["payload"])
    assert wire["auditRunId"] == str(payload.audit_run_id)
    assert wire["includeDocsFallbackFetch"] is True


@pytest.mark.asyncio
async def test_enqueue_accepts_wire_dict(redis_client):
    dispatcher = JobDispatcher(redis_client)
    payload = _audit_payload()

    handle = await dispatcher.enqueue("audit", payload.to_wire(), job_id="audit:wire")

    assert handle.step == PipelineStep.AUDIT


@pytest.mark.asyncio
async def test_duplicate_enqueue_is_deduplicated(redis_client):
    events = AsyncMock()
    dispatcher = JobDispatcher(redis_client, events=events)
    payload = _audit_payload()
    job_id = audit_job_id(payload.audit_run_id)

    await dispatcher.enqueue(PipelineStep.AUDIT, payload, job_id=job_id)
    handle = await dispatcher.enqueue(PipelineStep.AUDIT, payload, job_id=job_id)

    assert handle.deduplicated is True
    assert await dispatcher.queue_for(PipelineStep.AUDIT).get_length() == 1
    events.record.assert_awaited_once()
    kwargs = events.record.await_args.kwargs
    assert kwargs["event"] == JobEventType.QUEUED
    assert kwargs["project_id"] == payload.project_id


@pytest.mark.asyncio
async def test_payload_not_matching_step_is_rejected(redis_client):
    dispatcher = JobDispatcher(redis_client)

    with pytest.raises(ValidationError):
        await dispatcher.enqueue(PipelineStep.AUDIT, {"projectId": str(uuid.uuid4())}, job_id="audit:bad")

    assert await dispatcher.queue_for(PipelineStep.AUDIT).get_length() == 0


@pytest.mark.asyncio
async def test_redis_failure_raises_broker_unavailable(redis_client):
    dispatcher = JobDispatcher(redis_client)

    with patch.object(QueueManager, "enqueue", AsyncMock(side_effect=RedisConnectionError("refused"))):
        with pytest.raises(BrokerUnavailable):
            await dispatcher.enqueue(PipelineStep.AUDIT, _audit_payload(), job_id="audit:down")
