"""Pipeline steps, their queues, and the typed job payloads.

Payloads travel as camelCase JSON so workers in other runtimes can share the
queues; Python code populates them by field name.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tonaudit.domain.enums import PdfExportVariant


class PipelineStep(str, Enum):
    """Closed set of pipeline stages. Each is bound to exactly one queue."""

    INGEST = "ingest"
    VERIFY = "verify"
    AUDIT = "audit"
    FINDING_LIFECYCLE = "finding-lifecycle"
    PDF = "pdf"
    DOCS_CRAWL = "docs-crawl"
    DOCS_INDEX = "docs-index"
    CLEANUP = "cleanup"


# Step -> durable queue name (1:1)
STEP_QUEUES: dict[PipelineStep, str] = {step: step.value for step in PipelineStep}

# Retry policy applied by the worker
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 5.0


class JobPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class IngestJobPayload(JobPayload):
    project_id: UUID
    revision_id: UUID
    upload_id: UUID | None = None
    requested_by_user_id: str
    request_audit: bool = False


class VerifyJobPayload(JobPayload):
    project_id: UUID
    revision_id: UUID
    audit_run_id: UUID
    include_docs_fallback_fetch: bool = True


class AuditJobPayload(JobPayload):
    project_id: UUID
    revision_id: UUID
    audit_run_id: UUID
    include_docs_fallback_fetch: bool = True


class FindingLifecycleJobPayload(JobPayload):
    project_id: UUID
    audit_run_id: UUID
    previous_audit_run_id: UUID | None = None


class PdfJobPayload(JobPayload):
    project_id: UUID
    audit_run_id: UUID
    requested_by_user_id: str
    variant: PdfExportVariant = PdfExportVariant.INTERNAL


class DocsCrawlJobPayload(JobPayload):
    seed_sitemap_url: str


class DocsIndexJobPayload(JobPayload):
    source_id: UUID


class CleanupJobPayload(JobPayload):
    dry_run: bool = False


PAYLOAD_MODELS: dict[PipelineStep, type[JobPayload]] = {
    PipelineStep.INGEST: IngestJobPayload,
    PipelineStep.VERIFY: VerifyJobPayload,
    PipelineStep.AUDIT: AuditJobPayload,
    PipelineStep.FINDING_LIFECYCLE: FindingLifecycleJobPayload,
    PipelineStep.PDF: PdfJobPayload,
    PipelineStep.DOCS_CRAWL: DocsCrawlJobPayload,
    PipelineStep.DOCS_INDEX: DocsIndexJobPayload,
    PipelineStep.CLEANUP: CleanupJobPayload,
}


class JobHandle(BaseModel):
    """Returned by the dispatcher for every accepted enqueue."""

    job_id: str
    queue: str
    step: PipelineStep
    deduplicated: bool  # True when a job with this id was already pending


class QueuedJob(BaseModel):
    """A job as stored in Redis and handed to a worker."""

    job_id: str
    queue: str
    payload: dict
    attempts: int = 0
    enqueued_at: str  # ISO 8601
