"""State transition tables for every status-guarded entity.

Pure domain logic with no external dependencies. Services turn these tables
into conditional UPDATE ... WHERE status IN (sources) statements, so the
database decides whether a transition applies.
"""

from dataclasses import dataclass
from enum import Enum

from tonaudit.domain.enums import (
    AuditRunStatus,
    PdfExportStatus,
    VerificationStepStatus,
    WorkingCopyStatus,
)


@dataclass
class TransitionResult:
    """Result of a transition attempt.

    applied is False for no-op transitions (duplicate delivery, already
    terminal); status is the entity's status after the attempt.
    """

    applied: bool
    status: str
    reason: str = ""


AUDIT_RUN_TRANSITIONS: dict[AuditRunStatus, list[AuditRunStatus]] = {
    AuditRunStatus.QUEUED: [AuditRunStatus.RUNNING, AuditRunStatus.FAILED, AuditRunStatus.CANCELLED],
    AuditRunStatus.RUNNING: [AuditRunStatus.COMPLETED, AuditRunStatus.FAILED, AuditRunStatus.CANCELLED],
    AuditRunStatus.COMPLETED: [],  # Terminal state
    AuditRunStatus.FAILED: [],  # Terminal state
    AuditRunStatus.CANCELLED: [],  # Terminal state
}

WORKING_COPY_TRANSITIONS: dict[WorkingCopyStatus, list[WorkingCopyStatus]] = {
    WorkingCopyStatus.ACTIVE: [WorkingCopyStatus.LOCKED, WorkingCopyStatus.DISCARDED],
    WorkingCopyStatus.LOCKED: [WorkingCopyStatus.ACTIVE, WorkingCopyStatus.DISCARDED],
    WorkingCopyStatus.DISCARDED: [],  # Irreversible
}

VERIFICATION_STEP_TRANSITIONS: dict[VerificationStepStatus, list[VerificationStepStatus]] = {
    VerificationStepStatus.QUEUED: [
        VerificationStepStatus.RUNNING,
        VerificationStepStatus.COMPLETED,
        VerificationStepStatus.FAILED,
        VerificationStepStatus.SKIPPED,
    ],
    VerificationStepStatus.RUNNING: [
        VerificationStepStatus.COMPLETED,
        VerificationStepStatus.FAILED,
        VerificationStepStatus.SKIPPED,
    ],
    VerificationStepStatus.COMPLETED: [],
    VerificationStepStatus.FAILED: [],
    VerificationStepStatus.SKIPPED: [],
}

PDF_EXPORT_TRANSITIONS: dict[PdfExportStatus, list[PdfExportStatus]] = {
    PdfExportStatus.QUEUED: [PdfExportStatus.RUNNING, PdfExportStatus.FAILED],
    PdfExportStatus.RUNNING: [PdfExportStatus.COMPLETED, PdfExportStatus.FAILED],
    PdfExportStatus.COMPLETED: [],
    PdfExportStatus.FAILED: [PdfExportStatus.QUEUED],  # a new request re-queues
}


def sources_for(table: dict, target: Enum) -> list:
    """States from which target is reachable in one step."""
    return [source for source, targets in table.items() if target in targets]


def can_transition(table: dict, current: Enum, target: Enum) -> bool:
    return target in table.get(current, [])


def is_terminal(table: dict, status: Enum) -> bool:
    return not table.get(status)
