class TonAuditError(Exception):
    """Base exception for the audit core."""

    pass


# ---------------------------------------------------------------------------
# Conflicts: a uniqueness invariant would be violated. Never retried.
# ---------------------------------------------------------------------------


class ConflictError(TonAuditError):
    """Raised when an operation would violate a uniqueness invariant."""

    pass


class ConflictingActiveRun(ConflictError):
    """Raised when a project already has a queued or running audit."""

    def __init__(self, project_id, active_run_id=None):
        self.project_id = project_id
        self.active_run_id = active_run_id
        super().__init__(f"Project {project_id} already has an active audit run ({active_run_id})")


class WorkingCopyLocked(ConflictError):
    """Raised when a working copy is fenced by an in-flight commit."""

    def __init__(self, working_copy_id):
        self.working_copy_id = working_copy_id
        super().__init__(f"Working copy {working_copy_id} is locked")


class WorkingCopyDiscarded(ConflictError):
    """Raised when mutating a working copy that was already discarded."""

    def __init__(self, working_copy_id):
        self.working_copy_id = working_copy_id
        super().__init__(f"Working copy {working_copy_id} is discarded")


class InvalidTransition(ConflictError):
    """Raised when a state transition is not allowed from the current state."""

    def __init__(self, entity: str, entity_id, current: str, target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"{entity} {entity_id} cannot move from '{current}' to '{target}'")


class ReportNotReady(ConflictError):
    """Raised when exporting an audit that has not completed with a report."""

    pass


class ModelNotAllowed(TonAuditError):
    """Raised when an audit requests a model outside the allowlist."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model '{model_id}' is not in the audit model allowlist")


# ---------------------------------------------------------------------------
# Transient infrastructure: safe to retry with backoff at the call site.
# ---------------------------------------------------------------------------


class TransientError(TonAuditError):
    """Raised when infrastructure is temporarily unavailable."""

    pass


class StorageUnavailable(TransientError):
    """Raised when the blob storage backend fails an I/O call."""

    pass


class BrokerUnavailable(TransientError):
    """Raised when a job cannot be handed to the queue."""

    pass


# ---------------------------------------------------------------------------
# Corruption: fatal, never retried silently.
# ---------------------------------------------------------------------------


class CorruptionError(TonAuditError):
    """Raised when stored data contradicts its own identity."""

    pass


class CorruptWrite(CorruptionError):
    """Raised when a blob write does not match its SHA-256."""

    def __init__(self, sha256: str, detail: str = ""):
        self.sha256 = sha256
        super().__init__(f"Corrupt write for blob {sha256}" + (f": {detail}" if detail else ""))


class CorruptBlob(CorruptionError):
    """Raised when a blob read back does not match its recorded SHA-256."""

    def __init__(self, sha256: str, detail: str = ""):
        self.sha256 = sha256
        super().__init__(f"Corrupt blob {sha256}" + (f": {detail}" if detail else ""))


class RevisionMissing(CorruptionError):
    """Raised when an audit completion references a revision that no longer exists."""

    def __init__(self, revision_id):
        self.revision_id = revision_id
        super().__init__(f"Revision {revision_id} no longer exists")


class PipelineStepFailed(TonAuditError):
    """Raised when an external engine fails a step for good. Never retried."""

    def __init__(self, step: str, entity_id, reason: str):
        self.step = step
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{step} failed for {entity_id}: {reason}")


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class NotFoundError(TonAuditError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity_id=None):
        self.entity_id = entity_id
        super().__init__(f"{self.__class__.__name__}: {entity_id}")


class ProjectNotFound(NotFoundError):
    pass


class RevisionNotFound(NotFoundError):
    pass


class WorkingCopyNotFound(NotFoundError):
    pass


class AuditRunNotFound(NotFoundError):
    pass


class VerificationStepNotFound(NotFoundError):
    pass


class PdfExportNotFound(NotFoundError):
    pass


class UploadNotFound(NotFoundError):
    pass
