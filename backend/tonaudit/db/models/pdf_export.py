"""PdfExport model: rendered report attached to an AuditRun."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid

from tonaudit.db.base import Base, enum_column
from tonaudit.domain.enums import PdfExportStatus, PdfExportVariant


class PdfExport(Base):
    __tablename__ = "pdf_exports"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    audit_run_id = Column(Uuid, ForeignKey("audit_runs.id", ondelete="CASCADE"), nullable=False)
    variant = Column(enum_column(PdfExportVariant), nullable=False, default=PdfExportVariant.INTERNAL)
    status = Column(enum_column(PdfExportStatus), nullable=False, default=PdfExportStatus.QUEUED)
    requested_by_user_id = Column(String(255), nullable=True)

    storage_key = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("audit_run_id", "variant", name="pdf_exports_run_variant_unique"),
    )
