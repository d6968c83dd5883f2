"""Finding models: deduplicated issue identities and their per-run history."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid

from tonaudit.db.base import Base, JSONType, enum_column
from tonaudit.domain.enums import LifecycleTransition


class Finding(Base):
    __tablename__ = "findings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    stable_fingerprint = Column(String(255), nullable=False)
    first_seen_revision_id = Column(Uuid, ForeignKey("revisions.id", ondelete="CASCADE"), nullable=False)
    last_seen_revision_id = Column(Uuid, ForeignKey("revisions.id", ondelete="CASCADE"), nullable=False)
    current_status = Column(enum_column(LifecycleTransition), nullable=False, default=LifecycleTransition.OPENED)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("project_id", "stable_fingerprint", name="findings_project_fingerprint_unique"),
    )


class FindingInstance(Base):
    """One AuditRun's concrete report of a Finding. Never overwritten."""

    __tablename__ = "finding_instances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    finding_id = Column(Uuid, ForeignKey("findings.id", ondelete="CASCADE"), nullable=False)
    audit_run_id = Column(Uuid, ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    revision_id = Column(Uuid, ForeignKey("revisions.id", ondelete="CASCADE"), nullable=False)
    severity = Column(String(32), nullable=False)
    payload_json = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("finding_id", "audit_run_id", name="finding_instances_finding_run_unique"),
    )


class FindingTransition(Base):
    """Lifecycle edge for one Finding between two consecutive completed runs."""

    __tablename__ = "finding_transitions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    finding_id = Column(Uuid, ForeignKey("findings.id", ondelete="CASCADE"), nullable=False, index=True)
    from_audit_run_id = Column(Uuid, ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False)
    to_audit_run_id = Column(Uuid, ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    transition = Column(enum_column(LifecycleTransition), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint(
            "finding_id",
            "from_audit_run_id",
            "to_audit_run_id",
            name="finding_transitions_edge_unique",
        ),
    )
