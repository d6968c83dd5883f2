"""VerificationTracker: records toolchain sub-steps of an AuditRun.

Steps are independent of each other and of the run's outcome; the audit engine
decides whether a failed step is fatal. History is append-only: steps are never
deleted and a terminal status is never overwritten.
"""

from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.exceptions import AuditRunNotFound, InvalidTransition, VerificationStepNotFound
from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.verification_step import VerificationStep
from tonaudit.domain.enums import TERMINAL_STEP_STATUSES, VerificationStepStatus
from tonaudit.domain.transitions import VERIFICATION_STEP_TRANSITIONS, TransitionResult, sources_for

logger = structlog.get_logger(__name__)


class VerificationTracker:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def start_step(self, audit_run_id: UUID, step_type: str, toolchain: str) -> UUID:
        """Append a running step to the run and return its id."""
        async with self.session_factory() as session:
            if await session.get(AuditRun, audit_run_id) is None:
                raise AuditRunNotFound(audit_run_id)
            step = VerificationStep(
                audit_run_id=audit_run_id,
                step_type=step_type,
                toolchain=toolchain,
                status=VerificationStepStatus.RUNNING,
            )
            session.add(step)
            await session.commit()

        logger.info(
            "verification_step_started",
            audit_run_id=str(audit_run_id),
            step_id=str(step.id),
            step_type=step_type,
            toolchain=toolchain,
        )
        return step.id

    async def finish_step(
        self,
        step_id: UUID,
        status: VerificationStepStatus | str,
        summary: str | None = None,
        duration_ms: int | None = None,
        stdout_key: str | None = None,
        stderr_key: str | None = None,
    ) -> TransitionResult:
        """Move a step to a terminal status.

        Finishing an already-finished step is a no-op (applied=False); the first
        terminal status wins.

        Raises:
            InvalidTransition: status is not terminal
            VerificationStepNotFound
        """
        status = VerificationStepStatus(status)
        if status not in TERMINAL_STEP_STATUSES:
            raise InvalidTransition("VerificationStep", step_id, "running", status.value)

        sources = sources_for(VERIFICATION_STEP_TRANSITIONS, status)
        async with self.session_factory() as session:
            result = await session.execute(
                update(VerificationStep)
                .where(VerificationStep.id == step_id, VerificationStep.status.in_(sources))
                .values(
                    status=status,
                    summary=summary,
                    duration_ms=duration_ms,
                    stdout_key=stdout_key,
                    stderr_key=stderr_key,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                await session.commit()
                logger.info(
                    "verification_step_finished",
                    step_id=str(step_id),
                    status=status.value,
                    duration_ms=duration_ms,
                )
                return TransitionResult(applied=True, status=status.value)

            current = await session.scalar(select(VerificationStep.status).where(VerificationStep.id == step_id))
            if current is None:
                raise VerificationStepNotFound(step_id)

        current = VerificationStepStatus(current)
        logger.info("verification_step_finish_noop", step_id=str(step_id), status=current.value)
        return TransitionResult(applied=False, status=current.value, reason=f"step already {current.value}")

    async def record_skipped(self, audit_run_id: UUID, step_type: str, toolchain: str, reason: str) -> UUID:
        """Append a step that never ran (e.g. toolchain unavailable for the language)."""
        step_id = await self.start_step(audit_run_id, step_type, toolchain)
        await self.finish_step(step_id, VerificationStepStatus.SKIPPED, summary=reason, duration_ms=0)
        return step_id

    async def fail_unfinished_steps(self, audit_run_id: UUID, reason: str) -> list[VerificationStep]:
        """Fail every step of the run still marked running and return the ones closed.

        A step stays running when the delivery that started it died or raised
        a transient error mid-step.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(VerificationStep).where(
                    VerificationStep.audit_run_id == audit_run_id,
                    VerificationStep.status.not_in(TERMINAL_STEP_STATUSES),
                )
            )
            unfinished = list(result.scalars().all())

        closed = []
        for step in unfinished:
            outcome = await self.finish_step(step.id, VerificationStepStatus.FAILED, summary=reason)
            if outcome.applied:
                closed.append(step)
        if closed:
            logger.warning("verification_steps_interrupted", audit_run_id=str(audit_run_id), count=len(closed))
        return closed

    async def list_steps(self, audit_run_id: UUID) -> list[VerificationStep]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(VerificationStep)
                .where(VerificationStep.audit_run_id == audit_run_id)
                .order_by(VerificationStep.created_at, VerificationStep.id)
            )
            return list(result.scalars().all())
