"""Upload model: raw files handed in by a user before they become a Revision."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, Uuid

from tonaudit.db.base import Base, JSONType, enum_column
from tonaudit.domain.enums import UploadStatus, UploadType


class Upload(Base):
    __tablename__ = "uploads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    uploader_user_id = Column(String(255), nullable=False)

    type = Column(enum_column(UploadType), nullable=False)
    status = Column(enum_column(UploadStatus), nullable=False, default=UploadStatus.INITIALIZED)

    storage_key = Column(Text, nullable=True)  # archive key for zip uploads
    size_bytes = Column(Integer, nullable=False, default=0)
    content_type = Column(String(255), nullable=False, default="application/octet-stream")
    original_filename = Column(Text, nullable=False)
    metadata_json = Column("metadata", JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
