"""Tests for the S3 object store error translation and request shapes."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from obitarchive.platform.storage import (
    InvalidObjectKeyError,
    PermanentStoreError,
    S3Backend,
    StorageAuthenticationError,
    StorageConnectionError,
    StorageException,
    StorageNotFoundError,
    StorageQuotaExceededError,
    StorageTimeoutError,
    TransientStoreError,
)

MODIFIED = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "GetObject",
    )


@pytest.fixture
def s3():
    """Mocked aioboto3 S3 client."""
    client = MagicMock()
    client.put_object = AsyncMock()
    client.delete_object = AsyncMock()
    client.copy_object = AsyncMock()
    client.get_object = AsyncMock()
    client.generate_presigned_url = AsyncMock(return_value="https://signed.example/x")
    client.head_object = AsyncMock(
        return_value={
            "ContentLength": 4,
            "LastModified": MODIFIED,
            "ETag": '"abc123"',
            "ContentType": "image/jpeg",
        }
    )
    return client


@pytest.fixture
def backend(s3):
    """S3 backend whose client factory yields the mock."""
    backend = S3Backend("obituary-images", endpoint_url="http://minio:9000")

    @asynccontextmanager
    async def _client():
        yield s3

    backend._client = _client
    return backend


@pytest.mark.parametrize(
    "code, status, expected",
    [
        ("NoSuchKey", 404, StorageNotFoundError),
        ("404", 404, StorageNotFoundError),
        ("AccessDenied", 403, StorageAuthenticationError),
        ("QuotaExceeded", 400, StorageQuotaExceededError),
        ("InvalidObjectName", 400, InvalidObjectKeyError),
        ("RequestTimeout", 400, StorageTimeoutError),
        ("SlowDown", 503, StorageConnectionError),
        ("InternalError", 500, StorageConnectionError),
    ],
)
def test_client_error_mapping(code, status, expected):
    """S3 error codes map onto the storage exception hierarchy."""
    backend = S3Backend("obituary-images")

    error = backend._map_client_error(_client_error(code, status), "AB123456_1.jpg")

    assert type(error) is expected


def test_unknown_client_error_is_neither_transient_nor_permanent():
    """Unrecognised client errors are plain storage errors."""
    backend = S3Backend("obituary-images")

    error = backend._map_client_error(_client_error("Weird", 400), "k")

    assert type(error) is StorageException
    assert not isinstance(error, (TransientStoreError, PermanentStoreError))


@pytest.mark.asyncio
async def test_put_object_returns_head_metadata(backend, s3):
    """Uploads send the content type and report the stored metadata."""
    info = await backend.put_object("AB123456_1.jpg", b"data", "image/jpeg")

    s3.put_object.assert_awaited_once_with(
        Bucket="obituary-images", Key="AB123456_1.jpg", Body=b"data", ContentType="image/jpeg"
    )
    assert info.etag == "abc123"
    assert info.size == 4
    assert info.last_modified == MODIFIED


@pytest.mark.asyncio
async def test_get_object_not_found(backend, s3):
    """A missing key surfaces as StorageNotFoundError."""
    s3.get_object.side_effect = _client_error("NoSuchKey", 404)

    with pytest.raises(StorageNotFoundError):
        await backend.get_object("AB123456_1.jpg")


@pytest.mark.asyncio
async def test_connection_errors_are_transient(backend, s3):
    """Unreachable endpoints are retryable."""
    s3.put_object.side_effect = EndpointConnectionError(endpoint_url="http://minio:9000")

    with pytest.raises(StorageConnectionError) as exc_info:
        await backend.put_object("AB123456_1.jpg", b"data")
    assert isinstance(exc_info.value, TransientStoreError)


@pytest.mark.asyncio
async def test_missing_credentials_are_permanent(backend, s3):
    """Missing credentials are not retried."""
    s3.head_object.side_effect = NoCredentialsError()

    with pytest.raises(StorageAuthenticationError):
        await backend.stat_object("AB123456_1.jpg")


@pytest.mark.asyncio
async def test_copy_object_is_server_side(backend, s3):
    """Copies stay within the bucket."""
    await backend.copy_object("AB123456_1.jpg", "AB123456_2.jpg")

    s3.copy_object.assert_awaited_once_with(
        Bucket="obituary-images",
        CopySource={"Bucket": "obituary-images", "Key": "AB123456_1.jpg"},
        Key="AB123456_2.jpg",
    )
    s3.head_object.assert_awaited_once_with(Bucket="obituary-images", Key="AB123456_2.jpg")


@pytest.mark.asyncio
async def test_presigned_url(backend, s3):
    """Presigned URLs are generated for GET."""
    url = await backend.presigned_url("AB123456_1.jpg", 3600)

    assert url == "https://signed.example/x"
    s3.generate_presigned_url.assert_awaited_once_with(
        "get_object",
        Params={"Bucket": "obituary-images", "Key": "AB123456_1.jpg"},
        ExpiresIn=3600,
    )


@pytest.mark.asyncio
async def test_list_objects_pages(backend, s3):
    """Listing walks every page of list_objects_v2."""
    pages = [
        {"Contents": [{"Key": "AB123456_1.jpg", "Size": 1, "LastModified": MODIFIED, "ETag": '"a"'}]},
        {"Contents": [{"Key": "AB123456_2.jpg", "Size": 2, "LastModified": MODIFIED, "ETag": '"b"'}]},
        {},
    ]

    async def _paginate(**kwargs):
        for page in pages:
            yield page

    paginator = MagicMock()
    paginator.paginate = MagicMock(side_effect=_paginate)
    s3.get_paginator = MagicMock(return_value=paginator)

    infos = [info async for info in backend.list_objects("AB")]

    assert [(i.key, i.etag) for i in infos] == [("AB123456_1.jpg", "a"), ("AB123456_2.jpg", "b")]
    assert paginator.paginate.call_args.kwargs["Prefix"] == "AB"
