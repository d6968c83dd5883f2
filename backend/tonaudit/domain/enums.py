"""Persisted enum types.

Each enum maps 1:1 to a named Postgres enum (see ``PG_ENUM_NAMES``).
Pure domain definitions with no external dependencies.
"""

from enum import Enum


class ProjectLifecycleState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    DELETED = "deleted"


class UploadType(str, Enum):
    FILE_SET = "file-set"
    ZIP = "zip"


class UploadStatus(str, Enum):
    INITIALIZED = "initialized"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class RevisionSource(str, Enum):
    UPLOAD = "upload"
    WORKING_COPY = "working-copy"


class WorkingCopyStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    DISCARDED = "discarded"


class Language(str, Enum):
    TOLK = "tolk"
    FUNC = "func"
    TACT = "tact"
    FIFT = "fift"
    TLB = "tl-b"
    UNKNOWN = "unknown"


class AuditRunStatus(str, Enum):
    """AuditRun lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_AUDIT_RUN_STATUSES = (AuditRunStatus.QUEUED, AuditRunStatus.RUNNING)
TERMINAL_AUDIT_RUN_STATUSES = (AuditRunStatus.COMPLETED, AuditRunStatus.FAILED, AuditRunStatus.CANCELLED)


class AuditProfile(str, Enum):
    FAST = "fast"
    DEEP = "deep"


class VerificationStepStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = (
    VerificationStepStatus.COMPLETED,
    VerificationStepStatus.FAILED,
    VerificationStepStatus.SKIPPED,
)


class LifecycleTransition(str, Enum):
    """Finding lifecycle classification, also used as Finding.current_status."""

    OPENED = "opened"
    RESOLVED = "resolved"
    REGRESSED = "regressed"
    UNCHANGED = "unchanged"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"


class PdfExportStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PdfExportVariant(str, Enum):
    CLIENT = "client"
    INTERNAL = "internal"


class JobEventType(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


PG_ENUM_NAMES: dict[type[Enum], str] = {
    ProjectLifecycleState: "project_lifecycle_state",
    UploadType: "upload_type",
    UploadStatus: "upload_status",
    RevisionSource: "revision_source",
    WorkingCopyStatus: "working_copy_status",
    Language: "language",
    AuditRunStatus: "audit_run_status",
    AuditProfile: "audit_profile",
    VerificationStepStatus: "verification_step_status",
    LifecycleTransition: "finding_transition",
    PdfExportStatus: "pdf_export_status",
    PdfExportVariant: "pdf_export_variant",
}
