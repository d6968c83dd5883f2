"""Test AuditRunService: admission, the status machine, and completion."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import delete, func, select

from tonaudit.core.exceptions import (
    BrokerUnavailable,
    ConflictingActiveRun,
    ModelNotAllowed,
    ProjectNotFound,
    RevisionMissing,
    RevisionNotFound,
)
from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.revision import Revision
from tonaudit.domain.enums import AuditProfile, AuditRunStatus
from tonaudit.queue.job_ids import audit_job_id
from tonaudit.queue.schemas import PipelineStep
from tonaudit.schemas.audits import AuditOptions

pytestmark = pytest.mark.unit


@pytest.fixture
async def revision_id(project, make_revision):
    return await make_revision(project.id, {"contracts/wallet.tolk": "fun main() {}"})


async def _run_count(session_factory, project_id) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(AuditRun).where(AuditRun.project_id == project_id)
        )


@pytest.mark.asyncio
async def test_request_audit_creates_queued_run_and_dispatches(services, project, revision_id, settings):
    audit_run = await services.audit_runs.request_audit(project.id, revision_id, "user-1")

    assert audit_run.status == AuditRunStatus.QUEUED
    assert audit_run.profile == AuditProfile.DEEP
    assert audit_run.engine_version == settings.engine_version
    assert audit_run.report_schema_version == settings.report_schema_version

    job = await services.dispatcher.queue_for(PipelineStep.AUDIT).get_job(audit_job_id(audit_run.id))
    payload = json.loads(job["payload"])
    assert payload["auditRunId"] == str(audit_run.id)
    assert payload["revisionId"] == str(revision_id)


@pytest.mark.asyncio
async def test_second_request_while_running_conflicts(services, project, revision_id, session_factory):
    first = await services.audit_runs.request_audit(project.id, revision_id, "user-1")
    await services.audit_runs.mark_running(first.id)

    with pytest.raises(ConflictingActiveRun) as exc_info:
        await services.audit_runs.request_audit(project.id, revision_id, "user-1")

    assert exc_info.value.active_run_id == first.id
    assert await _run_count(session_factory, project.id) == 1


@pytest.mark.asyncio
async def test_concurrent_requests_admit_exactly_one(services, project, revision_id, session_factory):
    results = await asyncio.gather(
        services.audit_runs.request_audit(project.id, revision_id, "user-1"),
        services.audit_runs.request_audit(project.id, revision_id, "user-2"),
        return_exceptions=True,
    )

    admitted = [result for result in results if isinstance(result, AuditRun)]
    conflicts = [result for result in results if isinstance(result, ConflictingActiveRun)]
    assert len(admitted) == 1
    assert len(conflicts) == 1
    assert await _run_count(session_factory, project.id) == 1


@pytest.mark.asyncio
async def test_new_request_allowed_after_terminal_state(services, project, revision_id):
    first = await services.audit_runs.request_audit(project.id, revision_id, "user-1")
    await services.audit_runs.cancel(first.id)

    second = await services.audit_runs.request_audit(project.id, revision_id, "user-1")

    assert second.id != first.id
    assert (await services.audit_runs.get_active_run(project.id)).id == second.id


@pytest.mark.asyncio
async def test_model_outside_allowlist_is_rejected(services, project, revision_id, session_factory):
    options = AuditOptions(primary_model_id="someone/unknown-model")

    with pytest.raises(ModelNotAllowed):
        await services.audit_runs.request_audit(project.id, revision_id, "user-1", options=options)

    assert await _run_count(session_factory, project.id) == 0


@pytest.mark.asyncio
async def test_request_for_foreign_revision_is_rejected(services, project, make_revision):
    other = await services.projects.create_project("user-2", "Other", "other")
    foreign = await make_revision(other.id, {"a.fc": "x"})

    with pytest.raises(RevisionNotFound):
        await services.audit_runs.request_audit(project.id, foreign, "user-1")


@pytest.mark.asyncio
async def test_request_for_deleted_project_is_rejected(services, project, revision_id):
    await services.projects.soft_delete_project(project.id)

    with pytest.raises(ProjectNotFound):
        await services.audit_runs.request_audit(project.id, revision_id, "user-1")


@pytest.mark.asyncio
async def test_broker_failure_fails_the_run_and_frees_the_slot(services, project, revision_id, monkeypatch):
    monkeypatch.setattr(services.dispatcher, "enqueue", AsyncMock(side_effect=BrokerUnavailable("redis down")))

    with pytest.raises(BrokerUnavailable):
        await services.audit_runs.request_audit(project.id, revision_id, "user-1")

    runs = await services.audit_runs.list_runs(project.id)
    assert [run.status for run in runs] == [AuditRunStatus.FAILED]
    assert runs[0].failure_reason
    assert await services.audit_runs.get_active_run(project.id) is None


@pytest.mark.asyncio
async def test_duplicate_transitions_are_no_ops(services, project, revision_id):
    audit_run = await services.audit_runs.request_audit(project.id, revision_id, "user-1")

    assert (await services.audit_runs.mark_running(audit_run.id)).applied is True
    again = await services.audit_runs.mark_running(audit_run.id)
    assert again.applied is False
    assert again.status == AuditRunStatus.RUNNING.value

    assert (await services.audit_runs.complete(audit_run.id, {"findings": []})).applied is True
    repeated = await services.audit_runs.complete(audit_run.id, {"findings": []})
    assert repeated.applied is False
    assert repeated.status == AuditRunStatus.COMPLETED.value

    assert (await services.audit_runs.fail(audit_run.id, "late failure")).applied is False
    assert (await services.audit_runs.cancel(audit_run.id)).applied is False
    assert (await services.audit_runs.get(audit_run.id)).status == AuditRunStatus.COMPLETED


@pytest.mark.asyncio
async def test_complete_requires_running(services, project, revision_id):
    audit_run = await services.audit_runs.request_audit(project.id, revision_id, "user-1")

    result = await services.audit_runs.complete(audit_run.id, {"findings": []})

    assert result.applied is False
    assert result.status == AuditRunStatus.QUEUED.value


@pytest.mark.asyncio
async def test_cancelled_run_ignores_late_completion(services, project, revision_id):
    audit_run = await services.audit_runs.request_audit(project.id, revision_id, "user-1")
    await services.audit_runs.mark_running(audit_run.id)
    await services.audit_runs.cancel(audit_run.id)

    result = await services.audit_runs.complete(audit_run.id, {"findings": [{"findingId": "F", "severity": "low"}]})

    assert result.applied is False
    assert result.status == AuditRunStatus.CANCELLED.value
    assert await services.lifecycle.list_findings(project.id) == []


@pytest.mark.asyncio
async def test_completion_stamps_timestamps_and_report(services, project, revision_id):
    audit_run = await services.audit_runs.request_audit(project.id, revision_id, "user-1")
    await services.audit_runs.mark_running(audit_run.id)
    report = {"summary": "ok", "findings": []}

    await services.audit_runs.complete(audit_run.id, report)

    stored = await services.audit_runs.get(audit_run.id)
    assert stored.started_at is not None
    assert stored.finished_at is not None
    assert stored.report_json == report


@pytest.mark.asyncio
async def test_missing_revision_fails_completion(services, project, revision_id, session_factory, db_engine):
    if db_engine.dialect.name != "sqlite":
        pytest.skip("revision rows cannot be removed under enforced foreign keys")
    audit_run = await services.audit_runs.request_audit(project.id, revision_id, "user-1")
    await services.audit_runs.mark_running(audit_run.id)
    async with session_factory() as session:
        await session.execute(delete(Revision).where(Revision.id == revision_id))
        await session.commit()

    with pytest.raises(RevisionMissing):
        await services.audit_runs.complete(audit_run.id, {"findings": [{"findingId": "F", "severity": "high"}]})

    stored = await services.audit_runs.get(audit_run.id)
    assert stored.status == AuditRunStatus.FAILED
    assert str(revision_id) in stored.failure_reason
    assert await services.lifecycle.list_findings(project.id) == []


@pytest.mark.asyncio
async def test_previous_completed_run(services, project, revision_id, complete_run):
    first = await complete_run(project.id, revision_id, [])
    second = await complete_run(project.id, revision_id, [])

    previous = await services.audit_runs.previous_completed_run(second)

    assert previous.id == first
    assert await services.audit_runs.previous_completed_run(first) is None


@pytest.mark.asyncio
async def test_failed_runs_are_not_previous_runs(services, project, revision_id, complete_run):
    first = await complete_run(project.id, revision_id, [])
    failed = await services.audit_runs.request_audit(project.id, revision_id, "user-1")
    await services.audit_runs.fail(failed.id, "engine crashed")
    third = await complete_run(project.id, revision_id, [])

    assert (await services.audit_runs.previous_completed_run(third)).id == first
