"""PdfExportService: one rendered report per (audit run, variant)."""

from datetime import UTC, datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.artifacts.pdf_renderer import AuditReportRenderer
from tonaudit.core.config import Settings, get_settings
from tonaudit.core.exceptions import AuditRunNotFound, PdfExportNotFound, ReportNotReady
from tonaudit.db.base import insert_for
from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.pdf_export import PdfExport
from tonaudit.db.models.project import Project
from tonaudit.db.models.verification_step import VerificationStep
from tonaudit.domain.enums import AuditRunStatus, PdfExportStatus, PdfExportVariant
from tonaudit.domain.transitions import PDF_EXPORT_TRANSITIONS, TransitionResult, sources_for
from tonaudit.queue.job_ids import pdf_job_id
from tonaudit.queue.schemas import PdfJobPayload, PipelineStep

logger = structlog.get_logger(__name__)


def pdf_key(audit_run_id: UUID, variant: PdfExportVariant | str) -> str:
    return f"pdf/{audit_run_id}/{PdfExportVariant(variant).value}.pdf"


class PdfExportService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher,
        storage,
        renderer: AuditReportRenderer | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.storage = storage
        self.renderer = renderer or AuditReportRenderer()
        self.settings = settings or get_settings()

    async def request_export(
        self,
        audit_run_id: UUID,
        variant: PdfExportVariant | str,
        requested_by: str,
    ) -> PdfExport:
        """Ensure an export row exists for (run, variant) and queue its rendering.

        A completed export is returned as is, without queueing anything. A
        failed export is re-queued.

        Raises:
            ReportNotReady: the run has not completed with a report
        """
        variant = PdfExportVariant(variant)
        async with self.session_factory() as session:
            audit_run = await session.get(AuditRun, audit_run_id)
            if audit_run is None:
                raise AuditRunNotFound(audit_run_id)
            if audit_run.status != AuditRunStatus.COMPLETED or not audit_run.report_json:
                raise ReportNotReady(f"Audit run {audit_run_id} has no completed report")

            await session.execute(
                insert_for(session, PdfExport)
                .values(
                    audit_run_id=audit_run_id,
                    variant=variant,
                    status=PdfExportStatus.QUEUED,
                    requested_by_user_id=requested_by,
                )
                .on_conflict_do_nothing(index_elements=["audit_run_id", "variant"])
            )
            export = await self._find(session, audit_run_id, variant)

            if export.status == PdfExportStatus.COMPLETED:
                await session.commit()
                logger.info("pdf_export_already_completed", pdf_export_id=str(export.id), variant=variant.value)
                return export

            if export.status == PdfExportStatus.FAILED:
                await self._transition(session, export.id, PdfExportStatus.QUEUED, failure_reason=None)
                await session.refresh(export)
            project_id = audit_run.project_id
            await session.commit()

        await self.dispatcher.enqueue(
            PipelineStep.PDF,
            PdfJobPayload(
                project_id=project_id,
                audit_run_id=audit_run_id,
                requested_by_user_id=requested_by,
                variant=variant,
            ),
            job_id=pdf_job_id(audit_run_id, variant),
        )
        return export

    async def get_export(self, audit_run_id: UUID, variant: PdfExportVariant | str) -> PdfExport:
        async with self.session_factory() as session:
            export = await self._find(session, audit_run_id, PdfExportVariant(variant))
            if export is None:
                raise PdfExportNotFound(f"{audit_run_id}:{PdfExportVariant(variant).value}")
            return export

    async def mark_running(self, pdf_export_id: UUID) -> TransitionResult:
        return await self._apply(pdf_export_id, PdfExportStatus.RUNNING)

    async def mark_completed(self, pdf_export_id: UUID, storage_key: str) -> TransitionResult:
        now = datetime.now(UTC)
        expires_at = None
        if self.settings.pdf_export_ttl_days > 0:
            expires_at = now + timedelta(days=self.settings.pdf_export_ttl_days)
        return await self._apply(
            pdf_export_id,
            PdfExportStatus.COMPLETED,
            storage_key=storage_key,
            generated_at=now,
            expires_at=expires_at,
        )

    async def mark_failed(self, pdf_export_id: UUID, reason: str) -> TransitionResult:
        return await self._apply(pdf_export_id, PdfExportStatus.FAILED, failure_reason=reason)

    async def generate(self, audit_run_id: UUID, variant: PdfExportVariant | str) -> PdfExport:
        """Render and store the PDF for one export (the pdf job body).

        Duplicate deliveries of a completed export do nothing. Rendering or
        storage errors mark the export failed and propagate.
        """
        variant = PdfExportVariant(variant)
        export = await self.get_export(audit_run_id, variant)
        if export.status == PdfExportStatus.COMPLETED:
            return export
        if export.status == PdfExportStatus.FAILED:
            # Redelivery after a failed attempt
            await self._apply(export.id, PdfExportStatus.QUEUED, failure_reason=None)

        await self.mark_running(export.id)
        try:
            html_content, key = await self._render_html(audit_run_id, variant)
            pdf_bytes = await self.renderer.render_pdf(html_content)
            await self.storage.put_object(key, pdf_bytes, "application/pdf")
        except Exception as exc:
            await self.mark_failed(export.id, str(exc) or exc.__class__.__name__)
            logger.error("pdf_export_failed", pdf_export_id=str(export.id), error=str(exc))
            raise

        await self.mark_completed(export.id, key)
        logger.info("pdf_export_completed", pdf_export_id=str(export.id), storage_key=key, size_bytes=len(pdf_bytes))
        return await self.get_export(audit_run_id, variant)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _render_html(self, audit_run_id: UUID, variant: PdfExportVariant) -> tuple[str, str]:
        async with self.session_factory() as session:
            audit_run = await session.get(AuditRun, audit_run_id)
            project = await session.get(Project, audit_run.project_id)
            result = await session.execute(
                select(VerificationStep)
                .where(VerificationStep.audit_run_id == audit_run_id)
                .order_by(VerificationStep.created_at, VerificationStep.id)
            )
            steps = [
                {
                    "step_type": step.step_type,
                    "toolchain": step.toolchain,
                    "status": step.status.value,
                    "duration_ms": step.duration_ms,
                    "summary": step.summary,
                }
                for step in result.scalars().all()
            ]

        html_content = self.renderer.render_html(
            report=audit_run.report_json or {},
            variant=variant,
            project_name=project.name if project else "Project",
            audit_run={
                "id": str(audit_run.id),
                "engine_version": audit_run.engine_version,
                "profile": audit_run.profile.value,
            },
            verification_steps=steps,
        )
        return html_content, pdf_key(audit_run_id, variant)

    async def _apply(self, pdf_export_id: UUID, target: PdfExportStatus, **values) -> TransitionResult:
        async with self.session_factory() as session:
            result = await self._transition(session, pdf_export_id, target, **values)
            await session.commit()
        return result

    @staticmethod
    async def _transition(
        session: AsyncSession, pdf_export_id: UUID, target: PdfExportStatus, **values
    ) -> TransitionResult:
        sources = sources_for(PDF_EXPORT_TRANSITIONS, target)
        result = await session.execute(
            update(PdfExport)
            .where(PdfExport.id == pdf_export_id, PdfExport.status.in_(sources))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return TransitionResult(applied=True, status=target.value)

        current = await session.scalar(select(PdfExport.status).where(PdfExport.id == pdf_export_id))
        if current is None:
            raise PdfExportNotFound(pdf_export_id)
        return TransitionResult(applied=False, status=PdfExportStatus(current).value)

    @staticmethod
    async def _find(session: AsyncSession, audit_run_id: UUID, variant: PdfExportVariant) -> PdfExport | None:
        result = await session.execute(
            select(PdfExport).where(PdfExport.audit_run_id == audit_run_id, PdfExport.variant == variant)
        )
        return result.scalar_one_or_none()
