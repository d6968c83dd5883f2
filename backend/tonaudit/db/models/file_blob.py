"""FileBlob model: content-addressed, immutable, shared across revisions."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text, Uuid

from tonaudit.db.base import Base


class FileBlob(Base):
    __tablename__ = "file_blobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sha256 = Column(String(64), nullable=False, unique=True)
    size_bytes = Column(Integer, nullable=False)
    storage_key = Column(Text, nullable=False)
    content_type = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
