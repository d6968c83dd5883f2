"""VerificationStep model: one toolchain sub-task of an AuditRun."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, Uuid

from tonaudit.db.base import Base, enum_column
from tonaudit.domain.enums import VerificationStepStatus


class VerificationStep(Base):
    __tablename__ = "verification_steps"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    audit_run_id = Column(Uuid, ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    step_type = Column(String(100), nullable=False)  # e.g. "build", "simulate"
    toolchain = Column(String(100), nullable=False)  # e.g. "tolk", "func", "tact"
    status = Column(enum_column(VerificationStepStatus), nullable=False, default=VerificationStepStatus.QUEUED)

    stdout_key = Column(Text, nullable=True)
    stderr_key = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
