"""Project model: root of ownership for every other audit entity."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, String, Uuid, text

from tonaudit.db.base import Base, enum_column
from tonaudit.domain.enums import ProjectLifecycleState


class Project(Base):
    __tablename__ = "projects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    slug = Column(String(140), nullable=False)

    lifecycle_state = Column(
        enum_column(ProjectLifecycleState),
        nullable=False,
        default=ProjectLifecycleState.INITIALIZING,
    )

    # Soft delete: rows are never destroyed
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index(
            "projects_owner_slug_live_unique",
            "owner_user_id",
            "slug",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )
