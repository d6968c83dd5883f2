"""AuditRun model: one execution of the audit pipeline against one revision."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text

from tonaudit.db.base import Base, JSONType, enum_column
from tonaudit.domain.enums import AuditProfile, AuditRunStatus


class AuditRun(Base):
    __tablename__ = "audit_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    revision_id = Column(Uuid, ForeignKey("revisions.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(enum_column(AuditRunStatus), nullable=False, default=AuditRunStatus.QUEUED)
    requested_by_user_id = Column(String(255), nullable=False)

    primary_model_id = Column(String(255), nullable=False)
    fallback_model_id = Column(String(255), nullable=False)
    profile = Column(enum_column(AuditProfile), nullable=False, default=AuditProfile.DEEP)
    engine_version = Column(String(100), nullable=False)
    report_schema_version = Column(Integer, nullable=False)

    report_json = Column(JSONType, nullable=True)
    failure_reason = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        # At most one queued/running run per project
        Index(
            "audit_runs_active_project_unique",
            "project_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'running')"),
            sqlite_where=text("status IN ('queued', 'running')"),
        ),
        Index("audit_runs_project_completion_idx", "project_id", "status", "finished_at"),
    )
