"""WorkingCopyService: mutable staging area a user edits before committing.

At most one active working copy exists per (project, base revision, owner);
the partial unique index working_copies_active_unique is the only arbiter, so
open() resolves races by catching the violation and re-reading the winner.
"""

import uuid
from uuid import UUID

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.exceptions import (
    RevisionNotFound,
    WorkingCopyDiscarded,
    WorkingCopyLocked,
    WorkingCopyNotFound,
)
from tonaudit.db.models.file_blob import FileBlob
from tonaudit.db.models.revision import Revision, RevisionFile
from tonaudit.db.models.working_copy import WorkingCopy, WorkingCopyFile
from tonaudit.domain.enums import WorkingCopyStatus
from tonaudit.domain.paths import detect_language, is_test_path, safe_relative_path
from tonaudit.domain.transitions import WORKING_COPY_TRANSITIONS, TransitionResult, sources_for
from tonaudit.services.content_store import ContentStore, to_ref

logger = structlog.get_logger(__name__)


class WorkingCopyService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], content_store: ContentStore):
        self.session_factory = session_factory
        self.content_store = content_store

    async def open(self, project_id: UUID, base_revision_id: UUID, owner_user_id: str) -> UUID:
        """Return the active working copy for the triple, creating it if needed.

        A new working copy is seeded with the base revision's files, their blob
        content materialized inline.

        Raises:
            RevisionNotFound: base revision does not exist in this project
            WorkingCopyLocked: the owner's copy of this base is mid-commit
        """
        async with self.session_factory() as session:
            existing = await self._find_for_triple(session, project_id, base_revision_id, owner_user_id)
            if existing is not None:
                if existing.status == WorkingCopyStatus.LOCKED:
                    raise WorkingCopyLocked(existing.id)
                return existing.id

            revision = await session.get(Revision, base_revision_id)
            if revision is None or revision.project_id != project_id:
                raise RevisionNotFound(base_revision_id)

            result = await session.execute(
                select(RevisionFile, FileBlob)
                .join(FileBlob, FileBlob.id == RevisionFile.blob_id)
                .where(RevisionFile.revision_id == base_revision_id)
                .order_by(RevisionFile.path)
            )
            seed = result.all()

        files = []
        for revision_file, blob in seed:
            data = await self.content_store.get_blob(to_ref(blob))
            files.append((revision_file, data.decode("utf-8", errors="replace")))

        working_copy_id = uuid.uuid4()
        async with self.session_factory() as session:
            try:
                session.add(
                    WorkingCopy(
                        id=working_copy_id,
                        project_id=project_id,
                        base_revision_id=base_revision_id,
                        owner_user_id=owner_user_id,
                        status=WorkingCopyStatus.ACTIVE,
                    )
                )
                await session.flush()
                for revision_file, content in files:
                    session.add(
                        WorkingCopyFile(
                            working_copy_id=working_copy_id,
                            path=revision_file.path,
                            content=content,
                            language=revision_file.language,
                            is_test_file=revision_file.is_test_file,
                        )
                    )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("working_copy_open_conflict", project_id=str(project_id), owner_user_id=owner_user_id)
            else:
                logger.info(
                    "working_copy_opened",
                    working_copy_id=str(working_copy_id),
                    project_id=str(project_id),
                    base_revision_id=str(base_revision_id),
                    file_count=len(files),
                )
                return working_copy_id

        # Lost the race: another open() inserted the active row first
        async with self.session_factory() as session:
            winner = await self._find_active(session, project_id, base_revision_id, owner_user_id)
        if winner is None:
            raise WorkingCopyLocked(working_copy_id)
        logger.info("working_copy_open_race_resolved", working_copy_id=str(winner.id))
        return winner.id

    async def get(self, working_copy_id: UUID) -> WorkingCopy:
        async with self.session_factory() as session:
            working_copy = await session.get(WorkingCopy, working_copy_id)
            if working_copy is None:
                raise WorkingCopyNotFound(working_copy_id)
            return working_copy

    async def list_files(self, working_copy_id: UUID) -> list[WorkingCopyFile]:
        async with self.session_factory() as session:
            if await session.get(WorkingCopy, working_copy_id) is None:
                raise WorkingCopyNotFound(working_copy_id)
            result = await session.execute(
                select(WorkingCopyFile)
                .where(WorkingCopyFile.working_copy_id == working_copy_id)
                .order_by(WorkingCopyFile.path)
            )
            return list(result.scalars().all())

    async def read_file(self, working_copy_id: UUID, path: str) -> WorkingCopyFile | None:
        normalized = safe_relative_path(path)
        if normalized is None:
            return None
        async with self.session_factory() as session:
            return await session.get(WorkingCopyFile, (working_copy_id, normalized))

    async def write_file(self, working_copy_id: UUID, path: str, content: str) -> WorkingCopyFile:
        """Create or overwrite one file. No history of intermediate edits is kept.

        Raises:
            ValueError: path is empty or escapes the repository root
            WorkingCopyLocked / WorkingCopyDiscarded: copy is not editable
        """
        normalized = safe_relative_path(path)
        if normalized is None:
            raise ValueError(f"Invalid file path: {path!r}")

        async with self.session_factory() as session:
            await self._lock_editable(session, working_copy_id)

            file = await session.get(WorkingCopyFile, (working_copy_id, normalized))
            if file is None:
                file = WorkingCopyFile(working_copy_id=working_copy_id, path=normalized)
                session.add(file)
            file.content = content
            file.language = detect_language(normalized)
            file.is_test_file = is_test_path(normalized)
            await session.commit()
            return file

    async def delete_file(self, working_copy_id: UUID, path: str) -> bool:
        """Remove one file. Returns False if it did not exist."""
        normalized = safe_relative_path(path)
        if normalized is None:
            raise ValueError(f"Invalid file path: {path!r}")

        async with self.session_factory() as session:
            await self._lock_editable(session, working_copy_id)
            result = await session.execute(
                delete(WorkingCopyFile).where(
                    WorkingCopyFile.working_copy_id == working_copy_id,
                    WorkingCopyFile.path == normalized,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def lock(self, working_copy_id: UUID) -> WorkingCopy:
        """Fence the copy against edits while a commit is in flight (active -> locked)."""
        async with self.session_factory() as session:
            result = await self._transition(session, working_copy_id, WorkingCopyStatus.LOCKED)
            if not result.applied:
                await self._raise_not_editable(session, working_copy_id)
            working_copy = await session.get(WorkingCopy, working_copy_id)
            await session.commit()
            return working_copy

    async def unlock(self, working_copy_id: UUID) -> TransitionResult:
        """locked -> active. No-op for copies that are not locked."""
        async with self.session_factory() as session:
            result = await self._transition(session, working_copy_id, WorkingCopyStatus.ACTIVE)
            await session.commit()
            return result

    async def discard(self, working_copy_id: UUID) -> TransitionResult:
        """Irreversibly discard the copy. Discarding twice is a no-op."""
        async with self.session_factory() as session:
            result = await self._transition(session, working_copy_id, WorkingCopyStatus.DISCARDED)
            await session.commit()
        if result.applied:
            logger.info("working_copy_discarded", working_copy_id=str(working_copy_id))
        return result

    async def discard_in(self, session: AsyncSession, working_copy_id: UUID) -> TransitionResult:
        """Discard inside a caller's transaction (used by commit)."""
        return await self._transition(session, working_copy_id, WorkingCopyStatus.DISCARDED)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _transition(
        self, session: AsyncSession, working_copy_id: UUID, target: WorkingCopyStatus
    ) -> TransitionResult:
        sources = sources_for(WORKING_COPY_TRANSITIONS, target)
        result = await session.execute(
            update(WorkingCopy)
            .where(WorkingCopy.id == working_copy_id, WorkingCopy.status.in_(sources))
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return TransitionResult(applied=True, status=target.value)

        current = await session.scalar(select(WorkingCopy.status).where(WorkingCopy.id == working_copy_id))
        if current is None:
            raise WorkingCopyNotFound(working_copy_id)
        return TransitionResult(
            applied=False,
            status=WorkingCopyStatus(current).value,
            reason=f"working copy is {WorkingCopyStatus(current).value}",
        )

    async def _lock_editable(self, session: AsyncSession, working_copy_id: UUID) -> WorkingCopy:
        result = await session.execute(
            select(WorkingCopy).where(WorkingCopy.id == working_copy_id).with_for_update()
        )
        working_copy = result.scalar_one_or_none()
        if working_copy is None:
            raise WorkingCopyNotFound(working_copy_id)
        if working_copy.status != WorkingCopyStatus.ACTIVE:
            await self._raise_not_editable(session, working_copy_id)
        return working_copy

    @staticmethod
    async def _raise_not_editable(session: AsyncSession, working_copy_id: UUID) -> None:
        status = await session.scalar(select(WorkingCopy.status).where(WorkingCopy.id == working_copy_id))
        if status is None:
            raise WorkingCopyNotFound(working_copy_id)
        if status == WorkingCopyStatus.DISCARDED:
            raise WorkingCopyDiscarded(working_copy_id)
        raise WorkingCopyLocked(working_copy_id)

    @staticmethod
    async def _find_active(
        session: AsyncSession, project_id: UUID, base_revision_id: UUID, owner_user_id: str
    ) -> WorkingCopy | None:
        result = await session.execute(
            select(WorkingCopy).where(
                WorkingCopy.project_id == project_id,
                WorkingCopy.base_revision_id == base_revision_id,
                WorkingCopy.owner_user_id == owner_user_id,
                WorkingCopy.status == WorkingCopyStatus.ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_for_triple(
        session: AsyncSession, project_id: UUID, base_revision_id: UUID, owner_user_id: str
    ) -> WorkingCopy | None:
        """Active copy first, else a locked one."""
        result = await session.execute(
            select(WorkingCopy)
            .where(
                WorkingCopy.project_id == project_id,
                WorkingCopy.base_revision_id == base_revision_id,
                WorkingCopy.owner_user_id == owner_user_id,
                WorkingCopy.status.in_([WorkingCopyStatus.ACTIVE, WorkingCopyStatus.LOCKED]),
            )
            .order_by(WorkingCopy.status)
        )
        return result.scalars().first()
