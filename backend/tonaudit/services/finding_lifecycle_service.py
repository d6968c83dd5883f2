"""FindingLifecycleService: cross-revision dedup and classification of findings.

Runs inside the transaction that completes an AuditRun, so completion and the
lifecycle diff commit together. Every write is keyed by a unique constraint and
issued as INSERT ... ON CONFLICT DO NOTHING, so re-running the diff for the
same run (duplicate delivery, replay tooling) changes nothing.
"""

from collections import Counter
from dataclasses import dataclass, field
from uuid import UUID

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from tonaudit.core.exceptions import AuditRunNotFound
from tonaudit.db.base import insert_for
from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.finding import Finding, FindingInstance, FindingTransition
from tonaudit.domain.enums import AuditRunStatus, LifecycleTransition
from tonaudit.domain.finding_lifecycle import TransitionDecision, compute_transitions, replay_status
from tonaudit.schemas.audits import FindingInput, findings_from_report

logger = structlog.get_logger(__name__)


@dataclass
class LifecycleSummary:
    """Outcome of one lifecycle diff."""

    audit_run_id: UUID
    previous_audit_run_id: UUID | None
    finding_count: int
    transitions: dict[str, int] = field(default_factory=dict)
    status_updated: bool = True


def _sorts_before(candidate, current):
    """(finished_at, created_at, id) of candidate < that of current."""
    return or_(
        candidate.finished_at < current.finished_at,
        and_(
            candidate.finished_at == current.finished_at,
            or_(
                candidate.created_at < current.created_at,
                and_(candidate.created_at == current.created_at, candidate.id < current.id),
            ),
        ),
    )


async def previous_completed_run_id(session: AsyncSession, audit_run_id: UUID) -> UUID | None:
    """Most recent completed run of the same project ordered before this one.

    Order is (finished_at, created_at, id). Evaluated in SQL against the
    current row, so it sees the caller's uncommitted finished_at.
    """
    current = aliased(AuditRun)
    candidate = aliased(AuditRun)
    result = await session.execute(
        select(candidate.id)
        .join(current, current.id == audit_run_id)
        .where(
            candidate.project_id == current.project_id,
            candidate.id != current.id,
            candidate.status == AuditRunStatus.COMPLETED,
            candidate.finished_at.is_not(None),
            _sorts_before(candidate, current),
        )
        .order_by(candidate.finished_at.desc(), candidate.created_at.desc(), candidate.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def is_latest_completed_run(session: AsyncSession, audit_run_id: UUID) -> bool:
    """True when no completed run of the project sorts after this one."""
    current = aliased(AuditRun)
    later = aliased(AuditRun)
    result = await session.execute(
        select(later.id)
        .join(current, current.id == audit_run_id)
        .where(
            later.project_id == current.project_id,
            later.id != current.id,
            later.status == AuditRunStatus.COMPLETED,
            later.finished_at.is_not(None),
            _sorts_before(current, later),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is None


class FindingLifecycleService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def apply_completion(
        self,
        session: AsyncSession,
        audit_run: AuditRun,
        findings: list[FindingInput],
        previous_audit_run_id: UUID | None,
        update_status: bool = True,
    ) -> LifecycleSummary:
        """Merge a completed run's findings into the project's finding set.

        Must be called inside the caller's transaction; the caller commits.

        Steps:
        1. Upsert one Finding per fingerprint (first/last seen revision)
        2. Insert one FindingInstance per (finding, run)
        3. Classify against the previous completed run
        4. Record one FindingTransition per classified finding and move
           current_status (only when update_status)
        """
        finding_ids = await self.record_instances(session, audit_run, findings, update_last_seen=update_status)
        decisions = await self.apply_transitions(
            session,
            audit_run,
            current_finding_ids=list(finding_ids.values()),
            previous_audit_run_id=previous_audit_run_id,
            update_status=update_status,
        )

        counts = Counter(decision.transition.value for decision in decisions)
        if previous_audit_run_id is None:
            counts = Counter({LifecycleTransition.OPENED.value: len(finding_ids)})

        summary = LifecycleSummary(
            audit_run_id=audit_run.id,
            previous_audit_run_id=previous_audit_run_id,
            finding_count=len(finding_ids),
            transitions=dict(counts),
            status_updated=update_status,
        )
        logger.info(
            "finding_lifecycle_applied",
            audit_run_id=str(audit_run.id),
            previous_audit_run_id=str(previous_audit_run_id) if previous_audit_run_id else None,
            finding_count=summary.finding_count,
            transitions=summary.transitions,
        )
        return summary

    async def record_instances(
        self,
        session: AsyncSession,
        audit_run: AuditRun,
        findings: list[FindingInput],
        update_last_seen: bool = True,
    ) -> dict[str, UUID]:
        """Upsert Findings and insert FindingInstances. Returns fingerprint -> finding id.

        Repeated fingerprints within one run collapse to the first occurrence.
        """
        unique: dict[str, FindingInput] = {}
        for finding in findings:
            unique.setdefault(finding.fingerprint, finding)
        if not unique:
            return {}

        for fingerprint in unique:
            await session.execute(
                insert_for(session, Finding)
                .values(
                    project_id=audit_run.project_id,
                    stable_fingerprint=fingerprint,
                    first_seen_revision_id=audit_run.revision_id,
                    last_seen_revision_id=audit_run.revision_id,
                    current_status=LifecycleTransition.OPENED,
                )
                .on_conflict_do_nothing(index_elements=["project_id", "stable_fingerprint"])
            )

        if update_last_seen:
            await session.execute(
                update(Finding)
                .where(
                    Finding.project_id == audit_run.project_id,
                    Finding.stable_fingerprint.in_(list(unique)),
                )
                .values(last_seen_revision_id=audit_run.revision_id)
                .execution_options(synchronize_session=False)
            )

        result = await session.execute(
            select(Finding.stable_fingerprint, Finding.id).where(
                Finding.project_id == audit_run.project_id,
                Finding.stable_fingerprint.in_(list(unique)),
            )
        )
        finding_ids = {fingerprint: finding_id for fingerprint, finding_id in result.all()}

        for fingerprint, finding in unique.items():
            await session.execute(
                insert_for(session, FindingInstance)
                .values(
                    finding_id=finding_ids[fingerprint],
                    audit_run_id=audit_run.id,
                    revision_id=audit_run.revision_id,
                    severity=finding.severity.value,
                    payload_json=finding.payload,
                )
                .on_conflict_do_nothing(index_elements=["finding_id", "audit_run_id"])
            )

        # Order matches the report
        return {fingerprint: finding_ids[fingerprint] for fingerprint in unique}

    async def apply_transitions(
        self,
        session: AsyncSession,
        audit_run: AuditRun,
        current_finding_ids: list[UUID],
        previous_audit_run_id: UUID | None,
        update_status: bool = True,
    ) -> list[TransitionDecision]:
        """Classify findings against the previous run and record the edges.

        The first completed run of a project has no predecessor: everything it
        reports is opened and no edges are recorded.
        """
        if previous_audit_run_id is None:
            if update_status and current_finding_ids:
                await session.execute(
                    update(Finding)
                    .where(Finding.id.in_(current_finding_ids))
                    .values(current_status=LifecycleTransition.OPENED)
                    .execution_options(synchronize_session=False)
                )
            return []

        result = await session.execute(
            select(FindingInstance.finding_id).where(FindingInstance.audit_run_id == previous_audit_run_id)
        )
        previous_ids = [row[0] for row in result.all()]

        previous_set = set(previous_ids)
        newly_present = [finding_id for finding_id in current_finding_ids if finding_id not in previous_set]
        ever_resolved = await self._ever_resolved(session, audit_run.id, newly_present)

        decisions = compute_transitions(previous_ids, current_finding_ids, ever_resolved)

        for decision in decisions:
            await session.execute(
                insert_for(session, FindingTransition)
                .values(
                    finding_id=decision.finding_id,
                    from_audit_run_id=previous_audit_run_id,
                    to_audit_run_id=audit_run.id,
                    transition=decision.transition,
                )
                .on_conflict_do_nothing(index_elements=["finding_id", "from_audit_run_id", "to_audit_run_id"])
            )
            if update_status:
                await session.execute(
                    update(Finding)
                    .where(Finding.id == decision.finding_id)
                    .values(current_status=decision.transition)
                    .execution_options(synchronize_session=False)
                )
        return decisions

    async def recompute(
        self,
        audit_run_id: UUID,
        previous_audit_run_id: UUID | None = None,
    ) -> LifecycleSummary | None:
        """Re-derive a completed run's lifecycle edges (backfill / replay tooling).

        current_status is only rewritten when the run is still the project's
        latest completed run, so replaying history never moves a finding back
        in time. Returns None when the run is not completed.
        """
        async with self.session_factory() as session:
            audit_run = await session.get(AuditRun, audit_run_id)
            if audit_run is None:
                raise AuditRunNotFound(audit_run_id)
            if audit_run.status != AuditRunStatus.COMPLETED:
                logger.info(
                    "finding_lifecycle_recompute_skipped",
                    audit_run_id=str(audit_run_id),
                    status=audit_run.status.value,
                )
                return None

            if previous_audit_run_id is None:
                previous_audit_run_id = await previous_completed_run_id(session, audit_run_id)
            latest = await is_latest_completed_run(session, audit_run_id)

            findings = findings_from_report(audit_run.report_json)
            summary = await self.apply_completion(
                session,
                audit_run,
                findings,
                previous_audit_run_id=previous_audit_run_id,
                update_status=latest,
            )
            await session.commit()
            return summary

    async def list_findings(
        self,
        project_id: UUID,
        status: LifecycleTransition | None = None,
    ) -> list[Finding]:
        async with self.session_factory() as session:
            stmt = select(Finding).where(Finding.project_id == project_id)
            if status is not None:
                stmt = stmt.where(Finding.current_status == status)
            result = await session.execute(stmt.order_by(Finding.created_at, Finding.id))
            return list(result.scalars().all())

    async def get_by_fingerprint(self, project_id: UUID, fingerprint: str) -> Finding | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Finding).where(Finding.project_id == project_id, Finding.stable_fingerprint == fingerprint)
            )
            return result.scalar_one_or_none()

    async def run_instances(self, audit_run_id: UUID) -> list[FindingInstance]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FindingInstance)
                .where(FindingInstance.audit_run_id == audit_run_id)
                .order_by(FindingInstance.created_at, FindingInstance.id)
            )
            return list(result.scalars().all())

    async def finding_history(self, finding_id: UUID) -> list[FindingTransition]:
        """Transition edges of one finding in completion order of their target run."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(FindingTransition)
                .join(AuditRun, AuditRun.id == FindingTransition.to_audit_run_id)
                .where(FindingTransition.finding_id == finding_id)
                .order_by(AuditRun.finished_at, AuditRun.created_at, AuditRun.id)
            )
            return list(result.scalars().all())

    async def replayed_status(self, finding_id: UUID) -> LifecycleTransition:
        """current_status as reconstructed purely from the transition edges."""
        history = await self.finding_history(finding_id)
        return replay_status(edge.transition for edge in history)

    async def run_transitions(self, audit_run_id: UUID) -> list[FindingTransition]:
        """Edges that landed on one run."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(FindingTransition).where(FindingTransition.to_audit_run_id == audit_run_id)
            )
            return list(result.scalars().all())

    @staticmethod
    async def _ever_resolved(session: AsyncSession, audit_run_id: UUID, finding_ids: list[UUID]) -> set[UUID]:
        """Findings resolved by an edge landing on a run ordered before this one."""
        if not finding_ids:
            return set()
        current = aliased(AuditRun)
        target = aliased(AuditRun)
        result = await session.execute(
            select(FindingTransition.finding_id)
            .join(target, target.id == FindingTransition.to_audit_run_id)
            .join(current, current.id == audit_run_id)
            .where(
                FindingTransition.finding_id.in_(finding_ids),
                FindingTransition.transition == LifecycleTransition.RESOLVED,
                _sorts_before(target, current),
            )
        )
        return {row[0] for row in result.all()}
