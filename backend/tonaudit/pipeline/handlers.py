"""Job handlers for the audit pipeline: ingest -> audit -> pdf.

Each handler is the body of one queue's jobs. Handlers never poll: a step
triggers the next one by enqueueing it. The analysis itself is external and
reached through the AuditEngine and Verifier protocols.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

import structlog

from tonaudit.core.exceptions import (
    ConflictingActiveRun,
    CorruptionError,
    PdfExportNotFound,
    PipelineStepFailed,
    TransientError,
)
from tonaudit.domain.enums import AuditRunStatus, PdfExportVariant, UploadStatus, VerificationStepStatus
from tonaudit.queue.job_ids import audit_job_id
from tonaudit.queue.schemas import (
    AuditJobPayload,
    FindingLifecycleJobPayload,
    IngestJobPayload,
    PdfJobPayload,
    PipelineStep,
    VerifyJobPayload,
)
from tonaudit.schemas.files import StoredFile

logger = structlog.get_logger(__name__)

INTERRUPTED_STEP_REASON = "interrupted before finishing"


@dataclass
class AuditContext:
    """Everything an engine needs to analyse one revision."""

    project_id: UUID
    revision_id: UUID
    audit_run_id: UUID
    profile: str
    primary_model_id: str
    fallback_model_id: str
    include_docs_fallback_fetch: bool
    files: list[StoredFile] = field(default_factory=list)


@dataclass
class VerificationOutcome:
    status: VerificationStepStatus
    summary: str | None = None
    stdout_key: str | None = None
    stderr_key: str | None = None


@dataclass
class StepResult:
    step_type: str
    toolchain: str
    outcome: VerificationOutcome
    duration_ms: int


class Verifier(Protocol):
    def plan(self, context: AuditContext) -> list[tuple[str, str]]:
        """(step_type, toolchain) pairs to run for this revision."""
        ...

    async def run_step(self, context: AuditContext, step_type: str, toolchain: str) -> VerificationOutcome: ...


class AuditEngine(Protocol):
    async def run(self, context: AuditContext, verification: list[StepResult]) -> dict[str, Any]:
        """Return the report_json for the run. Must contain a "findings" array."""
        ...


class PipelineHandlers:
    """Wires the services into one handler per pipeline step."""

    def __init__(
        self,
        *,
        projects,
        uploads,
        revisions,
        audit_runs,
        tracker,
        lifecycle,
        pdf_exports,
        dispatcher,
        engine: AuditEngine | None = None,
        verifier: Verifier | None = None,
    ):
        self.projects = projects
        self.uploads = uploads
        self.revisions = revisions
        self.audit_runs = audit_runs
        self.tracker = tracker
        self.lifecycle = lifecycle
        self.pdf_exports = pdf_exports
        self.dispatcher = dispatcher
        self.engine = engine
        self.verifier = verifier

    def handler_for(self, step: PipelineStep | str):
        handlers = {
            PipelineStep.INGEST: self.ingest,
            PipelineStep.VERIFY: self.verify,
            PipelineStep.AUDIT: self.audit,
            PipelineStep.FINDING_LIFECYCLE: self.finding_lifecycle,
            PipelineStep.PDF: self.pdf,
        }
        step = PipelineStep(step)
        if step not in handlers:
            raise ValueError(f"No handler for step '{step.value}'")
        return handlers[step]

    def failure_handler_for(self, step: PipelineStep | str):
        """Called by the worker once a job of this step has failed for good.

        Audit and verify jobs fail their run, so an exhausted retry budget never
        leaves it running and blocking the project. Other steps return None.
        """
        if PipelineStep(step) in (PipelineStep.AUDIT, PipelineStep.VERIFY):
            return self._fail_run_after_job
        return None

    async def ingest(self, payload: IngestJobPayload) -> None:
        """Finish an upload, mark the project ready, optionally request an audit."""
        if payload.upload_id is not None:
            upload = await self.uploads.get(payload.upload_id)
            if upload.status != UploadStatus.PROCESSED:
                await self.uploads.transition(payload.upload_id, UploadStatus.PROCESSED)

        if await self.projects.mark_ready(payload.project_id):
            logger.info("project_ready", project_id=str(payload.project_id))

        if payload.request_audit:
            try:
                await self.audit_runs.request_audit(
                    payload.project_id,
                    payload.revision_id,
                    payload.requested_by_user_id,
                )
            except ConflictingActiveRun as exc:
                logger.info(
                    "ingest_audit_request_skipped",
                    project_id=str(payload.project_id),
                    active_run_id=str(exc.active_run_id),
                )

    async def verify(self, payload: VerifyJobPayload) -> None:
        """Run the verification toolchains for a run, then hand it to the audit queue."""
        audit_run_id = payload.audit_run_id
        started = await self.audit_runs.mark_running(audit_run_id)
        if started.status != AuditRunStatus.RUNNING.value:
            logger.info("verify_skipped", audit_run_id=str(audit_run_id), status=started.status)
            return

        try:
            context = await self._context(audit_run_id, payload.include_docs_fallback_fetch)
            await self._run_verification(context)
        except CorruptionError as exc:
            await self._fail_run(audit_run_id, str(exc))
            raise

        await self.dispatcher.enqueue(
            PipelineStep.AUDIT,
            AuditJobPayload(
                project_id=payload.project_id,
                revision_id=payload.revision_id,
                audit_run_id=audit_run_id,
                include_docs_fallback_fetch=payload.include_docs_fallback_fetch,
            ),
            job_id=audit_job_id(audit_run_id),
        )

    async def audit(self, payload: AuditJobPayload) -> None:
        """Run the engine and complete (or fail) the run.

        Verification runs first, resuming whatever an earlier delivery or a
        verify job left behind. Transient errors propagate so the worker
        retries with the run still running. Corruption fails the run and
        propagates as is; any other error fails the run as PipelineStepFailed.
        """
        audit_run_id = payload.audit_run_id
        started = await self.audit_runs.mark_running(audit_run_id)
        if started.status != AuditRunStatus.RUNNING.value:
            logger.info("audit_skipped", audit_run_id=str(audit_run_id), status=started.status)
            return

        try:
            context = await self._context(audit_run_id, payload.include_docs_fallback_fetch)
            verification = await self._run_verification(context)
            if self.engine is None:
                raise RuntimeError("No audit engine configured")
            report = await self.engine.run(context, verification)
        except TransientError:
            raise
        except CorruptionError as exc:
            await self._fail_run(audit_run_id, str(exc))
            raise
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            await self._fail_run(audit_run_id, reason)
            raise PipelineStepFailed(PipelineStep.AUDIT.value, audit_run_id, reason) from exc

        result = await self.audit_runs.complete(audit_run_id, report)
        if not result.applied:
            return

        audit_run = await self.audit_runs.get(audit_run_id)
        await self.pdf_exports.request_export(
            audit_run_id,
            PdfExportVariant.INTERNAL,
            audit_run.requested_by_user_id,
        )

    async def finding_lifecycle(self, payload: FindingLifecycleJobPayload) -> None:
        await self.lifecycle.recompute(payload.audit_run_id, payload.previous_audit_run_id)

    async def pdf(self, payload: PdfJobPayload) -> None:
        try:
            await self.pdf_exports.get_export(payload.audit_run_id, payload.variant)
        except PdfExportNotFound:
            await self.pdf_exports.request_export(payload.audit_run_id, payload.variant, payload.requested_by_user_id)
        await self.pdf_exports.generate(payload.audit_run_id, payload.variant)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _context(self, audit_run_id: UUID, include_docs_fallback_fetch: bool) -> AuditContext:
        audit_run = await self.audit_runs.get(audit_run_id)
        files = await self.revisions.read_files(audit_run.revision_id)
        return AuditContext(
            project_id=audit_run.project_id,
            revision_id=audit_run.revision_id,
            audit_run_id=audit_run.id,
            profile=audit_run.profile.value,
            primary_model_id=audit_run.primary_model_id,
            fallback_model_id=audit_run.fallback_model_id,
            include_docs_fallback_fetch=include_docs_fallback_fetch,
            files=files,
        )

    async def _run_verification(self, context: AuditContext) -> list[StepResult]:
        """Record one VerificationStep per planned (step_type, toolchain) task.

        Resumable across deliveries: the latest finished row of a task is
        reused, steps left running by an interrupted delivery are failed and
        run again, and tasks with no row yet are run. A failing step does not
        stop the others.
        """
        if self.verifier is None:
            return []

        interrupted = await self.tracker.fail_unfinished_steps(context.audit_run_id, INTERRUPTED_STEP_REASON)
        rerun = {(step.step_type, step.toolchain) for step in interrupted}
        latest = {
            (step.step_type, step.toolchain): step for step in await self.tracker.list_steps(context.audit_run_id)
        }

        results = []
        for step_type, toolchain in self.verifier.plan(context):
            previous = latest.get((step_type, toolchain))
            if previous is not None and (step_type, toolchain) not in rerun:
                results.append(
                    StepResult(
                        step_type=step_type,
                        toolchain=toolchain,
                        outcome=VerificationOutcome(status=previous.status, summary=previous.summary),
                        duration_ms=previous.duration_ms or 0,
                    )
                )
                continue

            step_id = await self.tracker.start_step(context.audit_run_id, step_type, toolchain)
            started_at = time.monotonic()
            try:
                outcome = await self.verifier.run_step(context, step_type, toolchain)
            except TransientError:
                # Left running; the next delivery fails and re-runs it
                raise
            except Exception as exc:
                outcome = VerificationOutcome(status=VerificationStepStatus.FAILED, summary=str(exc))
            duration_ms = int((time.monotonic() - started_at) * 1000)

            await self.tracker.finish_step(
                step_id,
                outcome.status,
                summary=outcome.summary,
                duration_ms=duration_ms,
                stdout_key=outcome.stdout_key,
                stderr_key=outcome.stderr_key,
            )
            results.append(StepResult(step_type, toolchain, outcome, duration_ms))
        return results

    async def _fail_run(self, audit_run_id: UUID, reason: str) -> None:
        await self.tracker.fail_unfinished_steps(audit_run_id, f"{INTERRUPTED_STEP_REASON}: {reason}")
        await self.audit_runs.fail(audit_run_id, reason)

    async def _fail_run_after_job(self, payload: AuditJobPayload | VerifyJobPayload, exc: Exception) -> None:
        reason = f"{exc.__class__.__name__}: {exc}" if str(exc) else exc.__class__.__name__
        await self._fail_run(payload.audit_run_id, reason)
