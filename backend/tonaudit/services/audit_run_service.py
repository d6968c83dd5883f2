"""AuditRunService: lifecycle of one audit execution against one revision.

queued -> running -> {completed, failed, cancelled}. Terminal states have no
outgoing edges; a retry is a new AuditRun on the same revision.

Every transition is a conditional UPDATE guarded by the allowed source
states, so duplicate job deliveries become no-ops (TransitionResult.applied is
False) instead of errors. "One active run per project" is enforced only by the
partial unique index audit_runs_active_project_unique.
"""

from datetime import UTC, datetime
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.config import Settings, get_settings
from tonaudit.core.exceptions import (
    AuditRunNotFound,
    BrokerUnavailable,
    ConflictingActiveRun,
    ModelNotAllowed,
    ProjectNotFound,
    RevisionMissing,
    RevisionNotFound,
)
from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.project import Project
from tonaudit.db.models.revision import Revision
from tonaudit.domain.enums import ACTIVE_AUDIT_RUN_STATUSES, AuditRunStatus
from tonaudit.domain.transitions import AUDIT_RUN_TRANSITIONS, TransitionResult, sources_for
from tonaudit.queue.job_ids import audit_job_id
from tonaudit.queue.schemas import AuditJobPayload, PipelineStep
from tonaudit.schemas.audits import AuditOptions, FindingInput, findings_from_report
from tonaudit.services.finding_lifecycle_service import (
    FindingLifecycleService,
    LifecycleSummary,
    previous_completed_run_id,
)

logger = structlog.get_logger(__name__)


class AuditRunService:
    """State machine for AuditRun rows."""

    TRANSITIONS = AUDIT_RUN_TRANSITIONS

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher,
        lifecycle: FindingLifecycleService | None = None,
        settings: Settings | None = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy async session factory
            dispatcher: JobDispatcher used to hand new runs to the audit queue
            lifecycle: Finding lifecycle engine run inside complete()
            settings: Defaults to get_settings()
        """
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle or FindingLifecycleService(session_factory)
        self.settings = settings or get_settings()

    async def request_audit(
        self,
        project_id: UUID,
        revision_id: UUID,
        requested_by: str,
        options: AuditOptions | None = None,
    ) -> AuditRun:
        """Admit a new queued AuditRun and dispatch its audit job.

        Raises:
            ConflictingActiveRun: the project already has a queued/running run;
                no row is created
            ModelNotAllowed: a model id is outside the configured allowlist
            ProjectNotFound / RevisionNotFound
            BrokerUnavailable: the run was created but could not be queued; it
                is marked failed before this is raised
        """
        options = options or AuditOptions(profile=self.settings.default_audit_profile)
        self._check_models(options)

        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None or project.deleted_at is not None:
                raise ProjectNotFound(project_id)
            revision = await session.get(Revision, revision_id)
            if revision is None or revision.project_id != project_id:
                raise RevisionNotFound(revision_id)

            active = await self._active_run(session, project_id)
            if active is not None:
                raise ConflictingActiveRun(project_id, active.id)

            audit_run = AuditRun(
                project_id=project_id,
                revision_id=revision_id,
                status=AuditRunStatus.QUEUED,
                requested_by_user_id=requested_by,
                primary_model_id=options.primary_model_id,
                fallback_model_id=options.fallback_model_id,
                profile=options.profile,
                engine_version=self.settings.engine_version,
                report_schema_version=self.settings.report_schema_version,
            )
            session.add(audit_run)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent request won the partial unique index
                await session.rollback()
                active = await self._active_run(session, project_id)
                raise ConflictingActiveRun(project_id, active.id if active else None)

        logger.info(
            "audit_run_requested",
            audit_run_id=str(audit_run.id),
            project_id=str(project_id),
            revision_id=str(revision_id),
            profile=audit_run.profile.value,
        )

        try:
            await self.dispatcher.enqueue(
                PipelineStep.AUDIT,
                AuditJobPayload(
                    project_id=project_id,
                    revision_id=revision_id,
                    audit_run_id=audit_run.id,
                    include_docs_fallback_fetch=options.include_docs_fallback_fetch,
                ),
                job_id=audit_job_id(audit_run.id),
            )
        except BrokerUnavailable:
            # Free the project's active slot so the caller can retry the request
            await self.fail(audit_run.id, "Audit job could not be queued")
            raise

        return audit_run

    async def mark_running(self, audit_run_id: UUID) -> TransitionResult:
        """queued -> running, stamping started_at. No-op for any other state."""
        async with self.session_factory() as session:
            result = await self._transition(
                session,
                audit_run_id,
                AuditRunStatus.RUNNING,
                started_at=datetime.now(UTC),
            )
            await session.commit()
        self._log_transition(audit_run_id, result)
        return result

    async def complete(
        self,
        audit_run_id: UUID,
        report_json: dict,
        findings: list[FindingInput] | None = None,
    ) -> TransitionResult:
        """running -> completed, persisting the report and the lifecycle diff.

        The status change, the report, and every Finding/FindingInstance/
        FindingTransition row commit in one transaction. findings defaults to
        the report's "findings" array.

        Raises:
            RevisionMissing: the run's revision no longer exists; the run is
                marked failed with that reason before raising
        """
        if findings is None:
            findings = findings_from_report(report_json)

        summary: LifecycleSummary | None = None
        async with self.session_factory() as session:
            result = await self._transition(
                session,
                audit_run_id,
                AuditRunStatus.COMPLETED,
                finished_at=datetime.now(UTC),
                report_json=report_json,
            )
            if result.applied:
                audit_run = await session.get(AuditRun, audit_run_id)
                revision = await session.get(Revision, audit_run.revision_id)
                if revision is None:
                    await session.rollback()
                    missing = RevisionMissing(audit_run.revision_id)
                    await self.fail(audit_run_id, str(missing))
                    logger.error(
                        "audit_run_revision_missing",
                        audit_run_id=str(audit_run_id),
                        revision_id=str(audit_run.revision_id),
                    )
                    raise missing

                previous_id = await previous_completed_run_id(session, audit_run_id)
                summary = await self.lifecycle.apply_completion(
                    session,
                    audit_run,
                    findings,
                    previous_audit_run_id=previous_id,
                )
            await session.commit()

        self._log_transition(audit_run_id, result, findings=summary.finding_count if summary else None)
        return result

    async def fail(self, audit_run_id: UUID, reason: str) -> TransitionResult:
        """-> failed with a reason. No lifecycle diff."""
        async with self.session_factory() as session:
            result = await self._transition(
                session,
                audit_run_id,
                AuditRunStatus.FAILED,
                finished_at=datetime.now(UTC),
                failure_reason=reason,
            )
            await session.commit()
        self._log_transition(audit_run_id, result, reason=reason)
        return result

    async def cancel(self, audit_run_id: UUID, session: AsyncSession | None = None) -> TransitionResult:
        """queued or running -> cancelled.

        In-flight worker computation is not interrupted; later completion or
        failure deliveries for the run become no-ops.
        """
        if session is not None:
            result = await self._transition(session, audit_run_id, AuditRunStatus.CANCELLED, finished_at=datetime.now(UTC))
        else:
            async with self.session_factory() as own_session:
                result = await self._transition(
                    own_session, audit_run_id, AuditRunStatus.CANCELLED, finished_at=datetime.now(UTC)
                )
                await own_session.commit()
        self._log_transition(audit_run_id, result)
        return result

    async def get(self, audit_run_id: UUID) -> AuditRun:
        async with self.session_factory() as session:
            audit_run = await session.get(AuditRun, audit_run_id)
            if audit_run is None:
                raise AuditRunNotFound(audit_run_id)
            return audit_run

    async def get_active_run(self, project_id: UUID) -> AuditRun | None:
        async with self.session_factory() as session:
            return await self._active_run(session, project_id)

    async def list_runs(self, project_id: UUID, limit: int = 50) -> list[AuditRun]:
        """Newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditRun)
                .where(AuditRun.project_id == project_id)
                .order_by(AuditRun.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def previous_completed_run(self, audit_run_id: UUID) -> AuditRun | None:
        async with self.session_factory() as session:
            previous_id = await previous_completed_run_id(session, audit_run_id)
            if previous_id is None:
                return None
            return await session.get(AuditRun, previous_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        session: AsyncSession,
        audit_run_id: UUID,
        target: AuditRunStatus,
        **values,
    ) -> TransitionResult:
        sources = sources_for(self.TRANSITIONS, target)
        result = await session.execute(
            update(AuditRun)
            .where(AuditRun.id == audit_run_id, AuditRun.status.in_(sources))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return TransitionResult(applied=True, status=target.value)

        current = await session.scalar(select(AuditRun.status).where(AuditRun.id == audit_run_id))
        if current is None:
            raise AuditRunNotFound(audit_run_id)
        current = AuditRunStatus(current)
        return TransitionResult(
            applied=False,
            status=current.value,
            reason=f"audit run is {current.value}, cannot move to {target.value}",
        )

    @staticmethod
    async def _active_run(session: AsyncSession, project_id: UUID) -> AuditRun | None:
        result = await session.execute(
            select(AuditRun).where(
                AuditRun.project_id == project_id,
                AuditRun.status.in_(ACTIVE_AUDIT_RUN_STATUSES),
            )
        )
        return result.scalars().first()

    def _check_models(self, options: AuditOptions) -> None:
        allowed = self.settings.allowed_models
        if not allowed:
            return
        for model_id in (options.primary_model_id, options.fallback_model_id):
            if model_id not in allowed:
                raise ModelNotAllowed(model_id)

    @staticmethod
    def _log_transition(audit_run_id: UUID, result: TransitionResult, **context) -> None:
        if result.applied:
            logger.info("audit_run_transitioned", audit_run_id=str(audit_run_id), status=result.status, **context)
        else:
            logger.info(
                "audit_run_transition_noop",
                audit_run_id=str(audit_run_id),
                status=result.status,
                reason=result.reason,
            )
