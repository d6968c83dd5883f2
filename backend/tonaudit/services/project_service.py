"""ProjectService: project creation, readiness, and soft deletion."""

import re
from datetime import UTC, datetime
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.exceptions import ConflictError, ProjectNotFound
from tonaudit.db.models.audit_run import AuditRun
from tonaudit.db.models.project import Project
from tonaudit.db.models.working_copy import WorkingCopy
from tonaudit.domain.enums import ACTIVE_AUDIT_RUN_STATUSES, ProjectLifecycleState, WorkingCopyStatus

logger = structlog.get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")


class ProjectService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], audit_runs):
        """
        Args:
            session_factory: SQLAlchemy async session factory
            audit_runs: AuditRunService used to cancel the active run on delete
        """
        self.session_factory = session_factory
        self.audit_runs = audit_runs

    async def create_project(self, owner_user_id: str, name: str, slug: str) -> Project:
        """Create a project in the initializing state.

        Raises:
            ValueError: name or slug is malformed
            ConflictError: the owner already has a live project with this slug
        """
        name = name.strip()
        if not name or len(name) > 120:
            raise ValueError("Project name must be 1-120 characters")
        if not SLUG_PATTERN.match(slug) or len(slug) > 140:
            raise ValueError(f"Invalid project slug: {slug!r}")

        async with self.session_factory() as session:
            project = Project(
                owner_user_id=owner_user_id,
                name=name,
                slug=slug,
                lifecycle_state=ProjectLifecycleState.INITIALIZING,
            )
            session.add(project)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Slug '{slug}' is already used by another project") from exc

        logger.info("project_created", project_id=str(project.id), owner_user_id=owner_user_id, slug=slug)
        return project

    async def mark_ready(self, project_id: UUID) -> bool:
        """initializing -> ready. Returns False when the project was not initializing."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Project)
                .where(
                    Project.id == project_id,
                    Project.lifecycle_state == ProjectLifecycleState.INITIALIZING,
                )
                .values(lifecycle_state=ProjectLifecycleState.READY)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def get_project(self, project_id: UUID) -> Project:
        """Raises ProjectNotFound for unknown or soft-deleted projects."""
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None or project.deleted_at is not None:
                raise ProjectNotFound(project_id)
            return project

    async def list_projects(self, owner_user_id: str) -> list[Project]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Project)
                .where(Project.owner_user_id == owner_user_id, Project.deleted_at.is_(None))
                .order_by(Project.created_at.desc())
            )
            return list(result.scalars().all())

    async def soft_delete_project(self, project_id: UUID) -> Project:
        """Soft-delete a project, cascading to its in-flight work.

        In one transaction: stamps deleted_at, cancels the active audit run, and
        discards every active or locked working copy. Rows are kept.
        """
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None or project.deleted_at is not None:
                raise ProjectNotFound(project_id)

            project.deleted_at = datetime.now(UTC)
            project.lifecycle_state = ProjectLifecycleState.DELETED

            active_ids = (
                await session.execute(
                    select(AuditRun.id).where(
                        AuditRun.project_id == project_id,
                        AuditRun.status.in_(ACTIVE_AUDIT_RUN_STATUSES),
                    )
                )
            ).scalars().all()
            for audit_run_id in active_ids:
                await self.audit_runs.cancel(audit_run_id, session=session)

            discarded = await session.execute(
                update(WorkingCopy)
                .where(
                    WorkingCopy.project_id == project_id,
                    WorkingCopy.status.in_([WorkingCopyStatus.ACTIVE, WorkingCopyStatus.LOCKED]),
                )
                .values(status=WorkingCopyStatus.DISCARDED)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(
            "project_soft_deleted",
            project_id=str(project_id),
            cancelled_runs=len(active_ids),
            discarded_working_copies=discarded.rowcount,
        )
        return project
