"""UploadService: bookkeeping for files handed in before they become a Revision."""

from uuid import UUID

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tonaudit.core.exceptions import InvalidTransition, ProjectNotFound, UploadNotFound
from tonaudit.db.models.project import Project
from tonaudit.db.models.upload import Upload
from tonaudit.domain.enums import UploadStatus, UploadType

logger = structlog.get_logger(__name__)


class UploadService:
    # Valid state transitions
    TRANSITIONS = {
        UploadStatus.INITIALIZED: [UploadStatus.UPLOADED, UploadStatus.PROCESSING, UploadStatus.FAILED],
        UploadStatus.UPLOADED: [UploadStatus.PROCESSING, UploadStatus.FAILED],
        UploadStatus.PROCESSING: [UploadStatus.PROCESSED, UploadStatus.FAILED],
        UploadStatus.PROCESSED: [],  # Terminal state
        UploadStatus.FAILED: [],  # Terminal state
    }

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def init_upload(
        self,
        project_id: UUID,
        uploader_user_id: str,
        upload_type: UploadType | str,
        original_filename: str,
        size_bytes: int = 0,
        content_type: str = "application/octet-stream",
        storage_key: str | None = None,
    ) -> Upload:
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None or project.deleted_at is not None:
                raise ProjectNotFound(project_id)

            upload = Upload(
                project_id=project_id,
                uploader_user_id=uploader_user_id,
                type=UploadType(upload_type),
                status=UploadStatus.INITIALIZED,
                original_filename=original_filename,
                size_bytes=size_bytes,
                content_type=content_type,
                storage_key=storage_key,
            )
            session.add(upload)
            await session.commit()

        logger.info("upload_initialized", upload_id=str(upload.id), project_id=str(project_id))
        return upload

    async def get(self, upload_id: UUID) -> Upload:
        async with self.session_factory() as session:
            upload = await session.get(Upload, upload_id)
            if upload is None:
                raise UploadNotFound(upload_id)
            return upload

    async def transition(self, upload_id: UUID, target: UploadStatus | str) -> bool:
        """Move an upload along its lifecycle.

        Returns False if the upload is already in the target state.

        Raises:
            InvalidTransition: target is not reachable from the current state
        """
        target = UploadStatus(target)
        sources = [source for source, targets in self.TRANSITIONS.items() if target in targets]

        async with self.session_factory() as session:
            upload = await session.get(Upload, upload_id)
            if upload is None:
                raise UploadNotFound(upload_id)
            if upload.status == target:
                return False
            if upload.status not in sources:
                raise InvalidTransition("Upload", upload_id, upload.status.value, target.value)

            result = await session.execute(
                update(Upload)
                .where(Upload.id == upload_id, Upload.status.in_(sources))
                .values(status=target)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount:
            logger.info("upload_transitioned", upload_id=str(upload_id), status=target.value)
        return result.rowcount > 0
