"""Re-export all models so Base.metadata sees them."""

from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.file_blob import FileBlob
from tonaudit.db.models.finding import Finding, FindingInstance, FindingTransition
from tonaudit.db.models.job_event import JobEvent
from tonaudit.db.models.pdf_export import PdfExport
from tonaudit.db.models.project import Project
from tonaudit.db.models.revision import Revision, RevisionFile
from tonaudit.db.models.upload import Upload
from tonaudit.db.models.verification_step import VerificationStep
from tonaudit.db.models.working_copy import WorkingCopy, WorkingCopyFile

__all__ = [
    "AuditRun",
    "FileBlob",
    "Finding",
    "FindingInstance",
    "FindingTransition",
    "JobEvent",
    "PdfExport",
    "Project",
    "Revision",
    "RevisionFile",
    "Upload",
    "VerificationStep",
    "WorkingCopy",
    "WorkingCopyFile",
]
