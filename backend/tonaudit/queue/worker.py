"""Worker loop: pulls jobs from one queue and runs the step's handler.

Delivery is at-least-once. Handlers must tolerate duplicates; the services
they call treat repeated transitions as no-ops.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from uuid import UUID

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis

from tonaudit.core.config import get_settings
from tonaudit.core.exceptions import ConflictError, CorruptionError, NotFoundError, PipelineStepFailed
from tonaudit.db.redis import get_redis
from tonaudit.domain.enums import JobEventType
from tonaudit.queue.manager import QueueManager
from tonaudit.queue.schemas import PAYLOAD_MODELS, STEP_QUEUES, JobPayload, PipelineStep, QueuedJob

logger = structlog.get_logger(__name__)

JobHandler = Callable[[JobPayload], Awaitable[None]]
FailureHandler = Callable[[JobPayload, Exception], Awaitable[None]]

# Never retried: retrying cannot change the outcome
NON_RETRYABLE_ERRORS = (ConflictError, CorruptionError, NotFoundError, PipelineStepFailed, ValidationError)


def backoff_seconds(attempt: int, base: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base * (2 ** max(attempt - 1, 0))


async def process_next_job(
    step: PipelineStep | str,
    handler: JobHandler,
    redis: Redis | None = None,
    events=None,
    max_attempts: int | None = None,
    backoff_base: float | None = None,
    now: datetime | None = None,
    on_failure: FailureHandler | None = None,
) -> bool:
    """Pull the next due job for a step and run it.

    Steps:
    1. Dequeue the oldest due job (attempt counter incremented)
    2. Validate its payload against the step's schema
    3. Run the handler
    4. On success: ack (releases the job id)
    5. On failure: retry with exponential backoff until max_attempts, then run
       on_failure and ack

    Args:
        step: Pipeline step whose queue to poll
        handler: Coroutine receiving the validated payload
        redis: Redis client (uses get_redis() if None)
        events: Optional JobEventService for started/completed/failed events
        on_failure: Optional coroutine run with the payload and the error once
            the job has failed for good (not on retries)

    Returns:
        True if a job was processed, False if nothing was due
    """
    settings = get_settings()
    step = PipelineStep(step)
    redis = redis if redis is not None else get_redis()
    max_attempts = max_attempts or settings.queue_max_attempts
    backoff_base = backoff_base if backoff_base is not None else settings.queue_backoff_seconds

    queue = QueueManager(redis, STEP_QUEUES[step])
    job = await queue.dequeue(now=now)
    if job is None:
        return False

    with structlog.contextvars.bound_contextvars(job_id=job.job_id, queue=queue.queue):
        await _record(events, job, JobEventType.STARTED, {"attempt": job.attempts})
        logger.info("job_started", attempt=job.attempts)

        payload = None
        try:
            payload = PAYLOAD_MODELS[step].model_validate(job.payload)
            await handler(payload)
        except Exception as exc:
            retryable = not isinstance(exc, NON_RETRYABLE_ERRORS)
            if retryable and job.attempts < max_attempts:
                delay = backoff_seconds(job.attempts, backoff_base)
                await queue.retry_later(job.job_id, delay, now=now)
                logger.warning(
                    "job_retry_scheduled",
                    attempt=job.attempts,
                    delay_seconds=delay,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return True

            if on_failure is not None and payload is not None:
                await _run_failure_handler(on_failure, payload, exc)
            await queue.ack(job.job_id)
            await _record(
                events,
                job,
                JobEventType.FAILED,
                {"attempt": job.attempts, "error": str(exc), "error_type": type(exc).__name__},
            )
            logger.error(
                "job_failed",
                attempt=job.attempts,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            return True

        await queue.ack(job.job_id)
        await _record(events, job, JobEventType.COMPLETED, {"attempt": job.attempts})
        logger.info("job_completed", attempt=job.attempts)
    return True


async def run_worker(
    step: PipelineStep | str,
    handler: JobHandler,
    stop: asyncio.Event,
    poll_interval: float = 1.0,
    redis: Redis | None = None,
    events=None,
    on_failure: FailureHandler | None = None,
) -> None:
    """Poll one queue until stop is set. Sleeps only when nothing is due."""
    logger.info("worker_started", step=PipelineStep(step).value)
    while not stop.is_set():
        processed = await process_next_job(step, handler, redis=redis, events=events, on_failure=on_failure)
        if not processed:
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except TimeoutError:
                continue
    logger.info("worker_stopped", step=PipelineStep(step).value)


async def _record(events, job: QueuedJob, event: JobEventType, extra: dict) -> None:
    if events is None:
        return
    await events.record(
        queue=job.queue,
        job_id=job.job_id,
        event=event,
        project_id=_project_id(job.payload),
        payload=extra,
    )


def _project_id(payload: dict) -> UUID | None:
    # Malformed payloads still get their events recorded
    try:
        return UUID(payload["projectId"])
    except (KeyError, TypeError, ValueError):
        return None


async def _run_failure_handler(on_failure: FailureHandler, payload: JobPayload, exc: Exception) -> None:
    # The job is acked either way; a broken hook must not leave it pending forever
    try:
        await on_failure(payload, exc)
    except Exception:
        logger.exception("job_failure_handler_failed", original_error=str(exc))
