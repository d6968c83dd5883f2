"""JobEventService: append-only trail of queue activity.

Observability only. A failure to record an event is logged and never breaks the
job that produced it.
"""

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.db.models.job_event import JobEvent
from tonaudit.domain.enums import JobEventType

logger = structlog.get_logger(__name__)


class JobEventService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        queue: str,
        job_id: str,
        event: JobEventType | str,
        project_id: UUID | None = None,
        payload: dict | None = None,
    ) -> None:
        event = JobEventType(event)
        try:
            async with self.session_factory() as session:
                session.add(
                    JobEvent(
                        project_id=project_id,
                        queue=queue,
                        job_id=job_id,
                        event=event.value,
                        payload=payload or {},
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("job_event_record_failed", job_id=job_id, job_event=event.value, error=str(exc))

    async def list_for_job(self, job_id: str) -> list[JobEvent]:
        """Events for one job id, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(JobEvent).where(JobEvent.job_id == job_id).order_by(JobEvent.created_at, JobEvent.id)
            )
            return list(result.scalars().all())

    async def list_for_project(self, project_id: UUID, limit: int = 100) -> list[JobEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(JobEvent)
                .where(JobEvent.project_id == project_id)
                .order_by(JobEvent.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
