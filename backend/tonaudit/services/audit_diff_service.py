"""Audit diff: what changed between a run and the previous completed run."""

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.exceptions import AuditRunNotFound
from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.finding import Finding, FindingTransition
from tonaudit.db.models.revision import RevisionFile
from tonaudit.domain.enums import AuditRunStatus
from tonaudit.services.finding_lifecycle_service import previous_completed_run_id


@dataclass
class AuditDiff:
    audit_run_id: UUID
    previous_audit_run_id: UUID | None
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    transitions: list[dict] = field(default_factory=list)


class AuditDiffService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_audit_diff(self, audit_run_id: UUID) -> AuditDiff:
        """File-level diff against the previous completed run plus the lifecycle
        edges that landed on this run.

        A run with no predecessor reports every file as added.
        """
        async with self.session_factory() as session:
            audit_run = await session.get(AuditRun, audit_run_id)
            if audit_run is None:
                raise AuditRunNotFound(audit_run_id)

            if audit_run.finished_at is not None:
                previous_id = await previous_completed_run_id(session, audit_run_id)
            else:
                previous_id = await self._latest_completed(session, audit_run.project_id)

            current_files = await self._files(session, audit_run.revision_id)
            previous_files: dict[str, UUID] = {}
            if previous_id is not None:
                previous_run = await session.get(AuditRun, previous_id)
                previous_files = await self._files(session, previous_run.revision_id)

            result = await session.execute(
                select(FindingTransition, Finding.stable_fingerprint)
                .join(Finding, Finding.id == FindingTransition.finding_id)
                .where(FindingTransition.to_audit_run_id == audit_run_id)
                .order_by(Finding.stable_fingerprint)
            )
            transitions = [
                {
                    "finding_id": edge.finding_id,
                    "stable_fingerprint": fingerprint,
                    "from_audit_run_id": edge.from_audit_run_id,
                    "transition": edge.transition.value,
                }
                for edge, fingerprint in result.all()
            ]

        diff = AuditDiff(audit_run_id=audit_run_id, previous_audit_run_id=previous_id, transitions=transitions)
        for path, blob_id in sorted(current_files.items()):
            if path not in previous_files:
                diff.added.append(path)
            elif previous_files[path] != blob_id:
                diff.changed.append(path)
            else:
                diff.unchanged.append(path)
        diff.removed = sorted(path for path in previous_files if path not in current_files)
        return diff

    @staticmethod
    async def _files(session: AsyncSession, revision_id: UUID) -> dict[str, UUID]:
        result = await session.execute(
            select(RevisionFile.path, RevisionFile.blob_id).where(RevisionFile.revision_id == revision_id)
        )
        return {path: blob_id for path, blob_id in result.all()}

    @staticmethod
    async def _latest_completed(session: AsyncSession, project_id: UUID) -> UUID | None:
        result = await session.execute(
            select(AuditRun.id)
            .where(AuditRun.project_id == project_id, AuditRun.status == AuditRunStatus.COMPLETED)
            .order_by(AuditRun.finished_at.desc(), AuditRun.created_at.desc(), AuditRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
