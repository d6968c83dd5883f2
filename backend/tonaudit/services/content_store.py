"""ContentStore: content-addressed blob storage keyed by SHA-256.

Identical bytes always converge on one FileBlob row and one storage object,
even when several writers race: the row insert is ON CONFLICT DO NOTHING keyed
by sha256, and storage keys are derived from the hash.
"""

import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tonaudit.core.config import get_settings
from tonaudit.core.exceptions import CorruptBlob, CorruptWrite, StorageUnavailable
from tonaudit.db.base import insert_for
from tonaudit.db.models.file_blob import FileBlob
from tonaudit.domain.paths import content_sha256
from tonaudit.schemas.files import BlobRef
from tonaudit.storage.blob_storage import BlobStorage, blob_key

logger = structlog.get_logger(__name__)


def to_ref(blob: FileBlob) -> BlobRef:
    return BlobRef(id=blob.id, sha256=blob.sha256, size_bytes=blob.size_bytes, storage_key=blob.storage_key)


class ContentStore:
    """Dedup layer in front of BlobStorage.

    Storage I/O errors are retried with exponential backoff (tenacity) and
    re-raised as StorageUnavailable once attempts are exhausted. Hash
    mismatches are never retried.
    """

    def __init__(
        self,
        storage: BlobStorage,
        session_factory: async_sessionmaker[AsyncSession],
        content_type: str | None = None,
        retry_attempts: int | None = None,
        retry_wait=None,
    ):
        settings = get_settings()
        self.storage = storage
        self.session_factory = session_factory
        self.content_type = content_type or settings.blob_content_type
        self.retry_attempts = retry_attempts or settings.storage_retry_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(StorageUnavailable),
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "blob_storage_retrying",
                attempt=rs.attempt_number,
                error=str(rs.outcome.exception()),
            ),
        )

    async def put_blob(self, data: bytes, session: AsyncSession | None = None) -> BlobRef:
        """Store bytes once and return their FileBlob reference.

        When a session is given the row is written inside the caller's
        transaction (the caller commits); otherwise a session is opened and
        committed here.

        Raises:
            CorruptWrite: an existing row for this hash disagrees on size, or the
                backend rejected the checksum
            StorageUnavailable: storage stayed unreachable after retries
        """
        if session is None:
            async with self.session_factory() as own_session:
                ref = await self._put_blob(own_session, data)
                await own_session.commit()
                return ref
        return await self._put_blob(session, data)

    async def _put_blob(self, session: AsyncSession, data: bytes) -> BlobRef:
        sha256 = content_sha256(data)
        existing = await self._find(session, sha256)
        if existing is not None:
            if existing.size_bytes != len(data):
                raise CorruptWrite(sha256, f"size {len(data)} does not match stored size {existing.size_bytes}")
            return to_ref(existing)

        key = blob_key(sha256)
        async for attempt in self._retrying():
            with attempt:
                # Link to an object another writer already uploaded, else upload
                if not await self.storage.exists(key):
                    await self.storage.put_object(key, data, self.content_type, sha256=sha256)

        stmt = (
            insert_for(session, FileBlob)
            .values(
                id=uuid.uuid4(),
                sha256=sha256,
                size_bytes=len(data),
                storage_key=key,
                content_type=self.content_type,
            )
            .on_conflict_do_nothing(index_elements=["sha256"])
        )
        await session.execute(stmt)

        blob = await self._find(session, sha256)
        if blob is None:
            raise CorruptWrite(sha256, "row missing after insert")

        logger.debug("blob_stored", sha256=sha256, size_bytes=len(data))
        return to_ref(blob)

    async def get_blob(self, ref: BlobRef) -> bytes:
        """Read a blob back and verify it against its recorded hash.

        Raises:
            CorruptBlob: stored bytes hash to something else
            StorageUnavailable: storage stayed unreachable after retries
        """
        async for attempt in self._retrying():
            with attempt:
                data = await self.storage.get_object(ref.storage_key)

        actual = content_sha256(data)
        if actual != ref.sha256:
            logger.error("blob_checksum_mismatch", sha256=ref.sha256, actual=actual)
            raise CorruptBlob(ref.sha256, f"read back as {actual}")
        return data

    async def find_blob(self, sha256: str) -> BlobRef | None:
        async with self.session_factory() as session:
            blob = await self._find(session, sha256)
            return to_ref(blob) if blob is not None else None

    @staticmethod
    async def _find(session: AsyncSession, sha256: str) -> FileBlob | None:
        result = await session.execute(select(FileBlob).where(FileBlob.sha256 == sha256))
        return result.scalar_one_or_none()
