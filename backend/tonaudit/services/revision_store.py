"""RevisionStore: immutable snapshots of a project's file tree.

A commit is one transaction: either a Revision with all of its RevisionFiles
exists afterwards, or nothing does. Revisions are never updated or deleted.
"""

import uuid
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.exceptions import (
    InvalidTransition,
    ProjectNotFound,
    RevisionNotFound,
    UploadNotFound,
    WorkingCopyNotFound,
)
from tonaudit.db.models.file_blob import FileBlob
from tonaudit.db.models.project import Project
from tonaudit.db.models.revision import Revision, RevisionFile
from tonaudit.db.models.upload import Upload
from tonaudit.db.models.working_copy import WorkingCopyFile
from tonaudit.domain.enums import RevisionSource, UploadStatus
from tonaudit.domain.paths import detect_language, is_test_path, safe_relative_path
from tonaudit.queue.job_ids import ingest_job_id
from tonaudit.queue.schemas import IngestJobPayload, PipelineStep
from tonaudit.schemas.files import StoredFile, UploadedFile
from tonaudit.services.content_store import ContentStore, to_ref
from tonaudit.services.working_copy_service import WorkingCopyService

logger = structlog.get_logger(__name__)

# Upper bound when walking a parent chain
MAX_ANCESTORS = 1000


class RevisionStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        content_store: ContentStore,
        working_copies: WorkingCopyService,
        dispatcher=None,
    ):
        """
        Args:
            session_factory: SQLAlchemy async session factory
            content_store: Blob dedup layer
            working_copies: Used to lock/unlock the copy being committed
            dispatcher: Optional JobDispatcher; when given, every commit enqueues
                an ingest job for the new revision
        """
        self.session_factory = session_factory
        self.content_store = content_store
        self.working_copies = working_copies
        self.dispatcher = dispatcher

    async def commit_working_copy(
        self,
        working_copy_id: UUID,
        description: str | None = None,
        request_audit: bool = False,
    ) -> UUID:
        """Snapshot a working copy into a new Revision and discard the copy.

        The copy is locked first so concurrent edits cannot race the commit; on
        any failure it is unlocked again and no Revision exists.

        Raises:
            WorkingCopyNotFound / WorkingCopyLocked / WorkingCopyDiscarded
            StorageUnavailable / CorruptWrite: from the content store
        """
        working_copy = await self.working_copies.lock(working_copy_id)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WorkingCopyFile)
                    .where(WorkingCopyFile.working_copy_id == working_copy_id)
                    .order_by(WorkingCopyFile.path)
                )
                files = list(result.scalars().all())

                revision_id = uuid.uuid4()
                session.add(
                    Revision(
                        id=revision_id,
                        project_id=working_copy.project_id,
                        parent_revision_id=working_copy.base_revision_id,
                        source=RevisionSource.WORKING_COPY,
                        created_by_user_id=working_copy.owner_user_id,
                        is_immutable=True,
                        description=description,
                    )
                )
                await session.flush()

                for file in files:
                    ref = await self.content_store.put_blob(file.content.encode("utf-8"), session=session)
                    session.add(
                        RevisionFile(
                            revision_id=revision_id,
                            path=file.path,
                            blob_id=ref.id,
                            language=file.language,
                            is_test_file=file.is_test_file,
                        )
                    )

                discarded = await self.working_copies.discard_in(session, working_copy_id)
                if not discarded.applied:
                    raise WorkingCopyNotFound(working_copy_id)
                await session.commit()
        except Exception:
            await self.working_copies.unlock(working_copy_id)
            logger.warning("working_copy_commit_rolled_back", working_copy_id=str(working_copy_id))
            raise

        logger.info(
            "working_copy_committed",
            working_copy_id=str(working_copy_id),
            revision_id=str(revision_id),
            file_count=len(files),
        )
        await self._enqueue_ingest(
            project_id=working_copy.project_id,
            revision_id=revision_id,
            requested_by_user_id=working_copy.owner_user_id,
            request_audit=request_audit,
        )
        return revision_id

    async def commit_upload(
        self,
        project_id: UUID,
        files: list[UploadedFile],
        created_by_user_id: str,
        parent_revision_id: UUID | None = None,
        upload_id: UUID | None = None,
        description: str | None = None,
        request_audit: bool = False,
    ) -> UUID:
        """Create a Revision from freshly uploaded files.

        Paths are normalized; a later duplicate of the same path wins. A linked
        upload moves to processing in the same transaction.

        Raises:
            ValueError: a path is empty or escapes the repository root
            ProjectNotFound / RevisionNotFound / UploadNotFound
        """
        normalized: dict[str, str] = {}
        for file in files:
            path = safe_relative_path(file.path)
            if path is None:
                raise ValueError(f"Invalid file path: {file.path!r}")
            normalized[path] = file.content

        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None or project.deleted_at is not None:
                raise ProjectNotFound(project_id)

            if parent_revision_id is not None:
                parent = await session.get(Revision, parent_revision_id)
                if parent is None or parent.project_id != project_id:
                    raise RevisionNotFound(parent_revision_id)

            if upload_id is not None:
                upload = await session.get(Upload, upload_id)
                if upload is None or upload.project_id != project_id:
                    raise UploadNotFound(upload_id)
                if upload.status in (UploadStatus.INITIALIZED, UploadStatus.UPLOADED):
                    upload.status = UploadStatus.PROCESSING
                elif upload.status != UploadStatus.PROCESSING:
                    raise InvalidTransition("Upload", upload_id, upload.status.value, UploadStatus.PROCESSING.value)

            revision_id = uuid.uuid4()
            session.add(
                Revision(
                    id=revision_id,
                    project_id=project_id,
                    parent_revision_id=parent_revision_id,
                    source=RevisionSource.UPLOAD,
                    created_by_user_id=created_by_user_id,
                    is_immutable=True,
                    description=description,
                )
            )
            await session.flush()

            for path, content in sorted(normalized.items()):
                ref = await self.content_store.put_blob(content.encode("utf-8"), session=session)
                session.add(
                    RevisionFile(
                        revision_id=revision_id,
                        path=path,
                        blob_id=ref.id,
                        language=detect_language(path),
                        is_test_file=is_test_path(path),
                    )
                )
            await session.commit()

        logger.info(
            "upload_committed",
            project_id=str(project_id),
            revision_id=str(revision_id),
            upload_id=str(upload_id) if upload_id else None,
            file_count=len(normalized),
        )
        await self._enqueue_ingest(
            project_id=project_id,
            revision_id=revision_id,
            requested_by_user_id=created_by_user_id,
            upload_id=upload_id,
            request_audit=request_audit,
        )
        return revision_id

    async def get_revision(self, revision_id: UUID) -> Revision:
        async with self.session_factory() as session:
            revision = await session.get(Revision, revision_id)
            if revision is None:
                raise RevisionNotFound(revision_id)
            return revision

    async def list_files(self, revision_id: UUID) -> list[RevisionFile]:
        async with self.session_factory() as session:
            if await session.get(Revision, revision_id) is None:
                raise RevisionNotFound(revision_id)
            result = await session.execute(
                select(RevisionFile).where(RevisionFile.revision_id == revision_id).order_by(RevisionFile.path)
            )
            return list(result.scalars().all())

    async def read_files(self, revision_id: UUID) -> list[StoredFile]:
        """Dereference every file of a revision back to its content, sorted by path."""
        async with self.session_factory() as session:
            if await session.get(Revision, revision_id) is None:
                raise RevisionNotFound(revision_id)
            result = await session.execute(
                select(RevisionFile, FileBlob)
                .join(FileBlob, FileBlob.id == RevisionFile.blob_id)
                .where(RevisionFile.revision_id == revision_id)
                .order_by(RevisionFile.path)
            )
            rows = result.all()

        return [await self._stored(revision_file, blob) for revision_file, blob in rows]

    async def read_file(self, revision_id: UUID, path: str) -> StoredFile | None:
        normalized = safe_relative_path(path)
        if normalized is None:
            return None
        async with self.session_factory() as session:
            result = await session.execute(
                select(RevisionFile, FileBlob)
                .join(FileBlob, FileBlob.id == RevisionFile.blob_id)
                .where(RevisionFile.revision_id == revision_id, RevisionFile.path == normalized)
            )
            row = result.first()
        if row is None:
            return None
        return await self._stored(row[0], row[1])

    async def get_ancestors(self, revision_id: UUID, limit: int = MAX_ANCESTORS) -> list[Revision]:
        """Walk the parent chain, nearest parent first. Stops at cycles or limit."""
        ancestors: list[Revision] = []
        seen = {revision_id}
        async with self.session_factory() as session:
            revision = await session.get(Revision, revision_id)
            if revision is None:
                raise RevisionNotFound(revision_id)

            parent_id = revision.parent_revision_id
            while parent_id is not None and parent_id not in seen and len(ancestors) < limit:
                seen.add(parent_id)
                parent = await session.get(Revision, parent_id)
                if parent is None:
                    break  # weak reference: parent may be gone
                ancestors.append(parent)
                parent_id = parent.parent_revision_id
        return ancestors

    async def latest_revision(self, project_id: UUID) -> Revision | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Revision)
                .where(Revision.project_id == project_id)
                .order_by(Revision.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _stored(self, revision_file: RevisionFile, blob: FileBlob) -> StoredFile:
        data = await self.content_store.get_blob(to_ref(blob))
        return StoredFile(
            path=revision_file.path,
            content=data.decode("utf-8", errors="replace"),
            language=revision_file.language.value,
            is_test_file=revision_file.is_test_file,
            sha256=blob.sha256,
        )

    async def _enqueue_ingest(
        self,
        project_id: UUID,
        revision_id: UUID,
        requested_by_user_id: str,
        upload_id: UUID | None = None,
        request_audit: bool = False,
    ) -> None:
        if self.dispatcher is None:
            return
        await self.dispatcher.enqueue(
            PipelineStep.INGEST,
            IngestJobPayload(
                project_id=project_id,
                revision_id=revision_id,
                upload_id=upload_id,
                requested_by_user_id=requested_by_user_id,
                request_audit=request_audit,
            ),
            job_id=ingest_job_id(revision_id),
        )
