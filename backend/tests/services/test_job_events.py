"""Test JobEventService."""

import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from tonaudit.domain.enums import JobEventType
from tonaudit.services.job_events import JobEventService

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_events_are_listed_oldest_first(services, project):
    for event in (JobEventType.QUEUED, JobEventType.STARTED, JobEventType.COMPLETED):
        await services.events.record("audit", "audit:run-1", event, project_id=project.id, payload={"attempt": 1})
    await services.events.record("audit", "audit:run-2", JobEventType.QUEUED, project_id=project.id)

    events = await services.events.list_for_job("audit:run-1")

    assert [event.event for event in events] == ["queued", "started", "completed"]
    assert events[0].payload == {"attempt": 1}
    assert len(await services.events.list_for_project(project.id)) == 4


@pytest.mark.asyncio
async def test_events_without_project(services):
    await services.events.record("cleanup", "cleanup:daily", "queued")

    [event] = await services.events.list_for_job("cleanup:daily")
    assert event.project_id is None
    assert event.payload == {}


@pytest.mark.asyncio
async def test_unknown_event_type_is_rejected(services):
    with pytest.raises(ValueError):
        await services.events.record("audit", "audit:x", "exploded")


@pytest.mark.asyncio
async def test_database_errors_are_swallowed():
    session = MagicMock()
    session.__aenter__.side_effect = OperationalError("INSERT", {}, Exception("db down"))
    service = JobEventService(MagicMock(return_value=session))

    await service.record("audit", f"audit:{uuid.uuid4()}", JobEventType.FAILED)
