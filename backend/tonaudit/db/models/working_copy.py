"""Working copy models: mutable staging area in front of a Revision."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text, Uuid, text

from tonaudit.db.base import Base, enum_column
from tonaudit.domain.enums import Language, WorkingCopyStatus


class WorkingCopy(Base):
    __tablename__ = "working_copies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    base_revision_id = Column(Uuid, ForeignKey("revisions.id", ondelete="CASCADE"), nullable=False)
    owner_user_id = Column(String(255), nullable=False)
    status = Column(enum_column(WorkingCopyStatus), nullable=False, default=WorkingCopyStatus.ACTIVE)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        # At most one active working copy per (project, base revision, owner)
        Index(
            "working_copies_active_unique",
            "project_id",
            "base_revision_id",
            "owner_user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class WorkingCopyFile(Base):
    __tablename__ = "working_copy_files"

    working_copy_id = Column(Uuid, ForeignKey("working_copies.id", ondelete="CASCADE"), primary_key=True)
    path = Column(Text, primary_key=True)
    content = Column(Text, nullable=False)
    language = Column(enum_column(Language), nullable=False, default=Language.UNKNOWN)
    is_test_file = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
