"""JobDispatcher: typed switch from pipeline step to queue.

No business logic lives here. Callers pick the step, the payload, and a
deterministic job id; the dispatcher validates the payload against the step's
schema and hands it to the queue.
"""

from uuid import UUID

import structlog
from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError

from tonaudit.core.exceptions import BrokerUnavailable
from tonaudit.domain.enums import JobEventType
from tonaudit.queue.manager import QueueManager
from tonaudit.queue.schemas import PAYLOAD_MODELS, STEP_QUEUES, JobHandle, PipelineStep

logger = structlog.get_logger(__name__)


class JobDispatcher:
    def __init__(self, redis: Redis, events=None):
        """
        Args:
            redis: Redis client backing the queues
            events: Optional JobEventService; when given, a "queued" JobEvent is
                recorded for every newly added job
        """
        self.redis = redis
        self.events = events

    def queue_for(self, step: PipelineStep | str) -> QueueManager:
        return QueueManager(self.redis, STEP_QUEUES[PipelineStep(step)])

    async def enqueue(self, step: PipelineStep | str, payload: BaseModel | dict, job_id: str) -> JobHandle:
        """Enqueue one job.

        Raises:
            BrokerUnavailable: Redis rejected or could not receive the job
            pydantic.ValidationError: payload does not match the step's schema
        """
        step = PipelineStep(step)
        model = PAYLOAD_MODELS[step]
        if isinstance(payload, model):
            validated = payload
        elif isinstance(payload, BaseModel):
            validated = model.model_validate(payload.model_dump())
        else:
            validated = model.model_validate(payload)
        wire = validated.to_wire()

        queue = self.queue_for(step)
        try:
            added = await queue.enqueue(job_id, wire)
        except RedisError as exc:
            logger.error("job_enqueue_failed", step=step.value, job_id=job_id, error=str(exc))
            raise BrokerUnavailable(f"Could not enqueue {job_id} on '{queue.queue}': {exc}") from exc

        handle = JobHandle(job_id=job_id, queue=queue.queue, step=step, deduplicated=not added)
        logger.info(
            "job_enqueued",
            step=step.value,
            queue=queue.queue,
            job_id=job_id,
            deduplicated=handle.deduplicated,
        )

        if added and self.events is not None:
            await self.events.record(
                queue=queue.queue,
                job_id=job_id,
                event=JobEventType.QUEUED,
                project_id=_project_id(wire),
                payload=wire,
            )
        return handle


def _project_id(wire: dict) -> UUID | None:
    raw = wire.get("projectId")
    return UUID(raw) if raw else None
