"""Test AuditDiffService."""

import pytest

from tonaudit.domain.enums import LifecycleTransition

pytestmark = pytest.mark.unit


def _finding(finding_id):
    return {"findingId": finding_id, "severity": "medium", "title": finding_id}


@pytest.mark.asyncio
async def test_first_run_reports_every_file_as_added(services, project, make_revision, complete_run):
    revision_id = await make_revision(project.id, {"b.tolk": "b", "a.tolk": "a"})
    audit_run_id = await complete_run(project.id, revision_id, [_finding("F-1")])

    diff = await services.diffs.get_audit_diff(audit_run_id)

    assert diff.previous_audit_run_id is None
    assert diff.added == ["a.tolk", "b.tolk"]
    assert diff.removed == [] and diff.changed == [] and diff.unchanged == []
    assert diff.transitions == []


@pytest.mark.asyncio
async def test_diff_against_previous_completed_run(services, project, make_revision, complete_run):
    first = await make_revision(project.id, {"keep.tolk": "same", "edit.tolk": "v1", "gone.tolk": "x"})
    first_run = await complete_run(project.id, first, [_finding("F-1"), _finding("F-2")])
    second = await make_revision(
        project.id,
        {"keep.tolk": "same", "edit.tolk": "v2", "new.tolk": "y"},
        parent_revision_id=first,
    )
    second_run = await complete_run(project.id, second, [_finding("F-2"), _finding("F-3")])

    diff = await services.diffs.get_audit_diff(second_run)

    assert diff.previous_audit_run_id == first_run
    assert diff.added == ["new.tolk"]
    assert diff.removed == ["gone.tolk"]
    assert diff.changed == ["edit.tolk"]
    assert diff.unchanged == ["keep.tolk"]
    assert sorted(edge["transition"] for edge in diff.transitions) == sorted(
        [
            LifecycleTransition.RESOLVED.value,
            LifecycleTransition.UNCHANGED.value,
            LifecycleTransition.OPENED.value,
        ]
    )
    assert {edge["from_audit_run_id"] for edge in diff.transitions} == {first_run}


@pytest.mark.asyncio
async def test_in_flight_run_diffs_against_latest_completed(services, project, make_revision, complete_run):
    first = await make_revision(project.id, {"a.tolk": "a"})
    first_run = await complete_run(project.id, first, [])
    second = await make_revision(project.id, {"a.tolk": "a", "b.tolk": "b"})
    queued = await services.audit_runs.request_audit(project.id, second, "user-1")

    diff = await services.diffs.get_audit_diff(queued.id)

    assert diff.previous_audit_run_id == first_run
    assert diff.added == ["b.tolk"]
    assert diff.unchanged == ["a.tolk"]
