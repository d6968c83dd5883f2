"""Revision models: immutable snapshots of a project's file tree."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, Uuid

from tonaudit.db.base import Base, enum_column
from tonaudit.domain.enums import Language, RevisionSource


class Revision(Base):
    __tablename__ = "revisions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)

    # Weak back-reference: lookup only, never ownership
    parent_revision_id = Column(Uuid, nullable=True, index=True)

    source = Column(enum_column(RevisionSource), nullable=False)
    created_by_user_id = Column(String(255), nullable=False)
    is_immutable = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class RevisionFile(Base):
    __tablename__ = "revision_files"

    revision_id = Column(Uuid, ForeignKey("revisions.id", ondelete="CASCADE"), primary_key=True)
    path = Column(Text, primary_key=True)
    blob_id = Column(Uuid, ForeignKey("file_blobs.id", ondelete="RESTRICT"), nullable=False, index=True)
    language = Column(enum_column(Language), nullable=False, default=Language.UNKNOWN)
    is_test_file = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
