"""JobEvent model: append-only trail of queue activity.

Observability only: never read for control decisions.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Uuid

from tonaudit.db.base import Base, JSONType


class JobEvent(Base):
    __tablename__ = "job_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    queue = Column(String(64), nullable=False)
    job_id = Column(String(255), nullable=False)
    event = Column(String(32), nullable=False)  # JobEventType values
    payload = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("job_events_job_created_idx", "job_id", "created_at"),
    )
