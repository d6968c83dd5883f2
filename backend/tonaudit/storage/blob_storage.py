"""Object storage backend for content-addressed blobs and rendered reports.

Blocking boto3 calls run in a worker thread via asyncio.to_thread(). Every
client or transport failure is surfaced as StorageUnavailable, except a
checksum rejection on upload which is CorruptWrite.
"""

import asyncio
import base64
from typing import Protocol

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from tonaudit.core.config import Settings, get_settings
from tonaudit.core.exceptions import CorruptWrite, StorageUnavailable

logger = structlog.get_logger(__name__)

# S3 error codes meaning the uploaded bytes did not match the declared checksum
CHECKSUM_ERROR_CODES = {"BadDigest", "InvalidDigest", "XAmzContentSHA256Mismatch"}

# HEAD answers that mean "absent" rather than "backend broken"
MISSING_ERROR_CODES = {"404", "NoSuchKey", "NotFound"}


def blob_key(sha256: str) -> str:
    """Content-addressed key: blobs/ab/abcdef..."""
    return f"blobs/{sha256[:2]}/{sha256}"


class BlobStorage(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def put_object(self, key: str, data: bytes, content_type: str, sha256: str | None = None) -> None: ...

    async def get_object(self, key: str) -> bytes: ...


class S3BlobStorage:
    """S3 / MinIO implementation of BlobStorage.

    Usage:
        storage = S3BlobStorage.from_settings()
        await storage.put_object(blob_key(sha), data, "text/plain", sha256=sha)
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        client=None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url or None
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "S3BlobStorage":
        settings = settings or get_settings()
        return cls(
            bucket=settings.blob_bucket,
            region=settings.blob_region,
            endpoint_url=settings.blob_endpoint_url,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._head, key)
        except ClientError as exc:
            if _error_code(exc) in MISSING_ERROR_CODES:
                return False
            raise StorageUnavailable(f"HEAD {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"HEAD {key} failed: {exc}") from exc
        return True

    async def put_object(self, key: str, data: bytes, content_type: str, sha256: str | None = None) -> None:
        """Upload bytes, letting the backend verify the SHA-256 when one is given."""
        try:
            await asyncio.to_thread(self._put, key, data, content_type, sha256)
        except ClientError as exc:
            if _error_code(exc) in CHECKSUM_ERROR_CODES:
                raise CorruptWrite(sha256 or "", f"backend rejected checksum for {key}") from exc
            raise StorageUnavailable(f"PUT {key} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"PUT {key} failed: {exc}") from exc

        logger.debug("blob_object_written", key=key, size_bytes=len(data))

    async def get_object(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get, key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageUnavailable(f"GET {key} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Private helpers (run inside asyncio.to_thread)
    # ------------------------------------------------------------------

    def _s3(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self._region,
                endpoint_url=self._endpoint_url,
            )
        return self._client

    def _head(self, key: str) -> None:
        self._s3().head_object(Bucket=self._bucket, Key=key)

    def _put(self, key: str, data: bytes, content_type: str, sha256: str | None) -> None:
        params = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if sha256:
            params["ChecksumSHA256"] = base64.b64encode(bytes.fromhex(sha256)).decode("ascii")
        self._s3().put_object(**params)

    def _get(self, key: str) -> bytes:
        response = self._s3().get_object(Bucket=self._bucket, Key=key)
        return response["Body"].read()


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))
