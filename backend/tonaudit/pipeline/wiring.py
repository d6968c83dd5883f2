"""Composition root: builds the service graph shared by producers and workers."""

from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.config import Settings, get_settings
from tonaudit.pipeline.handlers import AuditEngine, PipelineHandlers, Verifier
from tonaudit.queue.dispatcher import JobDispatcher
from tonaudit.services.audit_diff_service import AuditDiffService
from tonaudit.services.audit_run_service import AuditRunService
from tonaudit.services.content_store import ContentStore
from tonaudit.services.finding_lifecycle_service import FindingLifecycleService
from tonaudit.services.job_events import JobEventService
from tonaudit.services.pdf_export_service import PdfExportService
from tonaudit.services.project_service import ProjectService
from tonaudit.services.revision_store import RevisionStore
from tonaudit.services.upload_service import UploadService
from tonaudit.services.verification_tracker import VerificationTracker
from tonaudit.services.working_copy_service import WorkingCopyService
from tonaudit.storage.blob_storage import BlobStorage


@dataclass
class Services:
    events: JobEventService
    dispatcher: JobDispatcher
    content_store: ContentStore
    working_copies: WorkingCopyService
    revisions: RevisionStore
    lifecycle: FindingLifecycleService
    audit_runs: AuditRunService
    tracker: VerificationTracker
    projects: ProjectService
    uploads: UploadService
    pdf_exports: PdfExportService
    diffs: AuditDiffService
    handlers: PipelineHandlers


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    redis: Redis,
    storage: BlobStorage,
    engine: AuditEngine | None = None,
    verifier: Verifier | None = None,
    settings: Settings | None = None,
    **content_store_options,
) -> Services:
    settings = settings or get_settings()
    events = JobEventService(session_factory)
    dispatcher = JobDispatcher(redis, events=events)
    content_store = ContentStore(storage, session_factory, **content_store_options)
    working_copies = WorkingCopyService(session_factory, content_store)
    revisions = RevisionStore(session_factory, content_store, working_copies, dispatcher=dispatcher)
    lifecycle = FindingLifecycleService(session_factory)
    audit_runs = AuditRunService(session_factory, dispatcher, lifecycle=lifecycle, settings=settings)
    tracker = VerificationTracker(session_factory)
    projects = ProjectService(session_factory, audit_runs)
    uploads = UploadService(session_factory)
    pdf_exports = PdfExportService(session_factory, dispatcher, storage, settings=settings)

    handlers = PipelineHandlers(
        projects=projects,
        uploads=uploads,
        revisions=revisions,
        audit_runs=audit_runs,
        tracker=tracker,
        lifecycle=lifecycle,
        pdf_exports=pdf_exports,
        dispatcher=dispatcher,
        engine=engine,
        verifier=verifier,
    )
    return Services(
        events=events,
        dispatcher=dispatcher,
        content_store=content_store,
        working_copies=working_copies,
        revisions=revisions,
        lifecycle=lifecycle,
        audit_runs=audit_runs,
        tracker=tracker,
        projects=projects,
        uploads=uploads,
        pdf_exports=pdf_exports,
        diffs=AuditDiffService(session_factory),
        handlers=handlers,
    )
