"""Test S3BlobStorage error mapping with a mocked boto3 client."""

import base64
import hashlib
import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from tonaudit.core.exceptions import CorruptWrite, StorageUnavailable
from tonaudit.storage.blob_storage import S3BlobStorage, blob_key

pytestmark = pytest.mark.unit


def _client_error(code: str, operation: str = "PutObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def s3_client():
    return MagicMock()


@pytest.fixture
def storage(s3_client):
    return S3BlobStorage(bucket="ton-audit-test", client=s3_client)


def test_blob_key_is_sharded_by_hash_prefix():
    sha = "ab" + "0" * 62

    assert blob_key(sha) == f"blobs/ab/{sha}"


@pytest.mark.asyncio
async def test_put_sends_base64_sha256_checksum(storage, s3_client):
    data = b"() recv_internal() { }"
    sha = hashlib.sha256(data).hexdigest()

    await storage.put_object(blob_key(sha), data, "text/plain", sha256=sha)

    kwargs = s3_client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "ton-audit-test"
    assert kwargs["Key"] == blob_key(sha)
    assert kwargs["Body"] == data
    assert kwargs["ChecksumSHA256"] == base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


@pytest.mark.asyncio
async def test_put_without_sha_omits_checksum(storage, s3_client):
    await storage.put_object("pdf/run/internal.pdf", b"%PDF", "application/pdf")

    assert "ChecksumSHA256" not in s3_client.put_object.call_args.kwargs


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["BadDigest", "InvalidDigest", "XAmzContentSHA256Mismatch"])
async def test_checksum_rejection_is_corrupt_write(storage, s3_client, code):
    s3_client.put_object.side_effect = _client_error(code)

    with pytest.raises(CorruptWrite):
        await storage.put_object("blobs/ab/abc", b"x", "text/plain", sha256="ab" * 32)


@pytest.mark.asyncio
async def test_other_put_errors_are_storage_unavailable(storage, s3_client):
    s3_client.put_object.side_effect = _client_error("SlowDown")

    with pytest.raises(StorageUnavailable):
        await storage.put_object("blobs/ab/abc", b"x", "text/plain")


@pytest.mark.asyncio
async def test_transport_errors_are_storage_unavailable(storage, s3_client):
    s3_client.get_object.side_effect = EndpointConnectionError(endpoint_url="http://minio:9000")

    with pytest.raises(StorageUnavailable):
        await storage.get_object("blobs/ab/abc")


@pytest.mark.asyncio
async def test_exists_maps_not_found_to_false(storage, s3_client):
    s3_client.head_object.side_effect = _client_error("404", "HeadObject")

    assert await storage.exists("blobs/ab/abc") is False


@pytest.mark.asyncio
async def test_exists_raises_on_access_errors(storage, s3_client):
    s3_client.head_object.side_effect = _client_error("403", "HeadObject")

    with pytest.raises(StorageUnavailable):
        await storage.exists("blobs/ab/abc")


@pytest.mark.asyncio
async def test_exists_true_when_head_succeeds(storage, s3_client):
    s3_client.head_object.return_value = {"ContentLength": 3}

    assert await storage.exists("blobs/ab/abc") is True


@pytest.mark.asyncio
async def test_get_reads_body(storage, s3_client):
    s3_client.get_object.return_value = {"Body": io.BytesIO(b"cell")}

    assert await storage.get_object("blobs/ab/abc") == b"cell"
