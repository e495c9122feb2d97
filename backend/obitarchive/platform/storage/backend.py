"""Object store backends for obituary images.

Provides a single abstract interface with Filesystem and S3 implementations.
All methods are async-first to work well with FastAPI.

Usage:
    from obitarchive.platform.storage import get_storage_backend

    backend = get_storage_backend()  # Resolves from STORAGE_BACKEND
    info = await backend.put_object("AB123456_1.jpg", data, "image/jpeg")
    async for obj in backend.list_objects():
        ...
"""

import asyncio
import errno
import hashlib
import mimetypes
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Iterator, List, Optional, TypeVar, Union

import aioboto3
import aiofiles
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from obitarchive.core.logging import logger
from obitarchive.platform.storage.exceptions import (
    InvalidObjectKeyError,
    StorageAuthenticationError,
    StorageConnectionError,
    StorageException,
    StorageNotFoundError,
    StorageQuotaExceededError,
    StorageTimeoutError,
)
from obitarchive.platform.sync.async_helpers import run_in_thread_pool

MAX_KEY_LENGTH = 1024

T = TypeVar("T")


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata of a stored object as reported by the store."""

    key: str
    size: int
    last_modified: datetime
    etag: str
    content_type: Optional[str] = None


def validate_key(key: str) -> str:
    """Reject keys no backend can store safely.

    Raises:
        InvalidObjectKeyError: For empty, absolute, traversing or oversized keys
    """
    if not isinstance(key, str) or not key:
        raise InvalidObjectKeyError("Object key must be a non-empty string")
    if len(key.encode("utf-8")) > MAX_KEY_LENGTH:
        raise InvalidObjectKeyError(f"Object key exceeds {MAX_KEY_LENGTH} bytes")
    if "\x00" in key or key.startswith("/"):
        raise InvalidObjectKeyError(f"Invalid object key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise InvalidObjectKeyError(f"Invalid object key: {key!r}")
    return key


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Await an object store call but give up after ``seconds``.

    Args:
        awaitable: Object store call to bound
        seconds: Deadline in seconds
        operation: Short description used in the error message

    Returns:
        The awaited result

    Raises:
        StorageTimeoutError: If the deadline passes first
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise StorageTimeoutError(f"{operation} timed out after {seconds}s") from e


class StorageBackend(ABC):
    """Abstract object store interface.

    Keys are flat strings; "/" is allowed but carries no meaning beyond
    prefix listing. Implementations translate their native failures into the
    StorageException hierarchy so callers can tell transient from permanent.
    """

    @abstractmethod
    async def put_object(
        self, key: str, content: bytes, content_type: Optional[str] = None
    ) -> ObjectInfo:
        """Write an object, replacing any existing object with the same key.

        Args:
            key: Object key
            content: Object bytes
            content_type: MIME type stored with the object

        Returns:
            Metadata of the stored object
        """
        pass

    @abstractmethod
    async def get_object(self, key: str) -> bytes:
        """Read an object's bytes.

        Raises:
            StorageNotFoundError: If the key doesn't exist
        """
        pass

    @abstractmethod
    async def stat_object(self, key: str) -> ObjectInfo:
        """Return an object's metadata.

        Raises:
            StorageNotFoundError: If the key doesn't exist
        """
        pass

    @abstractmethod
    def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        """Iterate over every object whose key starts with ``prefix``.

        Pages are fetched lazily; a failure mid-listing raises from the iterator.
        """
        pass

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        pass

    @abstractmethod
    async def copy_object(self, source_key: str, dest_key: str) -> ObjectInfo:
        """Copy an object to a new key.

        Raises:
            StorageNotFoundError: If the source doesn't exist
        """
        pass

    async def presigned_url(self, key: str, expires_in: int) -> Optional[str]:
        """Return a time-limited URL for reading ``key``, or None if unsupported."""
        return None

    async def close(self) -> None:
        """Release any held resources."""
        pass


class FilesystemBackend(StorageBackend):
    """Filesystem-based object store.

    Works with:
    - Local development: ./local_storage
    - Kubernetes: PVC-mounted path

    Writes go to a staging file first and are moved into place, so readers
    never see partial objects. The etag is the hex MD5 of the content.
    """

    STAGING_DIR = ".staging"

    def __init__(self, base_path: Union[str, Path]):
        """Initialize filesystem backend.

        Args:
            base_path: Root directory for all objects
        """
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        (self.base_path / self.STAGING_DIR).mkdir(exist_ok=True)
        logger.debug(f"FilesystemBackend initialized at {self.base_path}")

    def _resolve(self, key: str) -> Path:
        validate_key(key)
        if key.split("/")[0] == self.STAGING_DIR:
            raise InvalidObjectKeyError(f"Reserved object key: {key!r}")
        return self.base_path.joinpath(*key.split("/"))

    @contextmanager
    def _translate_errors(self, key: str) -> Iterator[None]:
        try:
            yield
        except StorageException:
            raise
        except FileNotFoundError as e:
            raise StorageNotFoundError(f"Object not found: {key}") from e
        except PermissionError as e:
            raise StorageAuthenticationError(f"Permission denied for {key}: {e}") from e
        except OSError as e:
            if e.errno in (errno.ENOSPC, errno.EDQUOT, errno.EFBIG):
                raise StorageQuotaExceededError(f"No space left for {key}: {e}") from e
            if e.errno in (errno.ENAMETOOLONG, errno.EINVAL, errno.EISDIR):
                raise InvalidObjectKeyError(f"Invalid object key {key!r}: {e}") from e
            raise StorageConnectionError(f"Filesystem error for {key}: {e}") from e

    def _info(self, key: str, path: Path) -> ObjectInfo:
        """Build metadata for a file (blocking)."""
        stat = path.stat()
        digest = hashlib.md5()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
        content_type, _ = mimetypes.guess_type(key)
        return ObjectInfo(
            key=key,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            etag=digest.hexdigest(),
            content_type=content_type,
        )

    async def put_object(
        self, key: str, content: bytes, content_type: Optional[str] = None
    ) -> ObjectInfo:
        """Write an object to the filesystem."""
        full_path = self._resolve(key)
        staging = self.base_path / self.STAGING_DIR / uuid.uuid4().hex
        with self._translate_errors(key):
            await run_in_thread_pool(full_path.parent.mkdir, parents=True, exist_ok=True)
            try:
                async with aiofiles.open(staging, "wb") as f:
                    await f.write(content)
                await run_in_thread_pool(os.replace, staging, full_path)
            finally:
                await run_in_thread_pool(staging.unlink, missing_ok=True)
            return await run_in_thread_pool(self._info, key, full_path)

    async def get_object(self, key: str) -> bytes:
        """Read an object from the filesystem."""
        full_path = self._resolve(key)
        with self._translate_errors(key):
            if not full_path.is_file():
                raise StorageNotFoundError(f"Object not found: {key}")
            async with aiofiles.open(full_path, "rb") as f:
                return await f.read()

    async def stat_object(self, key: str) -> ObjectInfo:
        """Return metadata of a file."""
        full_path = self._resolve(key)
        with self._translate_errors(key):
            if not full_path.is_file():
                raise StorageNotFoundError(f"Object not found: {key}")
            return await run_in_thread_pool(self._info, key, full_path)

    def _list_keys(self, prefix: str) -> List[str]:
        keys = []
        for item in self.base_path.rglob("*"):
            if not item.is_file():
                continue
            rel = item.relative_to(self.base_path)
            if rel.parts[0] == self.STAGING_DIR:
                continue
            key = "/".join(rel.parts)
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        """List files whose key starts with ``prefix``, in key order."""
        with self._translate_errors(prefix or "/"):
            keys = await run_in_thread_pool(self._list_keys, prefix)
        for key in keys:
            try:
                with self._translate_errors(key):
                    info = await run_in_thread_pool(self._info, key, self._resolve(key))
            except StorageNotFoundError:
                # Deleted between the directory walk and the stat
                continue
            yield info

    async def delete_object(self, key: str) -> None:
        """Delete a file from the filesystem."""
        full_path = self._resolve(key)
        with self._translate_errors(key):
            await run_in_thread_pool(full_path.unlink, missing_ok=True)

    async def copy_object(self, source_key: str, dest_key: str) -> ObjectInfo:
        """Copy a file to a new key."""
        source = self._resolve(source_key)
        dest = self._resolve(dest_key)
        with self._translate_errors(source_key):
            if not source.is_file():
                raise StorageNotFoundError(f"Object not found: {source_key}")
            await run_in_thread_pool(dest.parent.mkdir, parents=True, exist_ok=True)
            await run_in_thread_pool(shutil.copy2, source, dest)
            return await run_in_thread_pool(self._info, dest_key, dest)


class S3Backend(StorageBackend):
    """S3-compatible object store (AWS S3, MinIO, Cloudflare R2).

    A client is opened per call from a shared aioboto3 session.
    """

    NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
    AUTH_CODES = {"AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "403"}
    QUOTA_CODES = {"QuotaExceeded", "EntityTooLarge"}
    INVALID_KEY_CODES = {"InvalidObjectName", "KeyTooLongError"}

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: str = "us-east-1",
        use_ssl: bool = True,
        timeout: float = 30.0,
        page_size: int = 1000,
    ):
        """Initialize S3 backend.

        Args:
            bucket_name: Bucket holding the images
            endpoint_url: Custom endpoint for S3-compatible stores (None for AWS)
            access_key_id: Access key
            secret_access_key: Secret key
            region: Bucket region
            use_ssl: Use HTTPS for the endpoint
            timeout: Connect and read timeout for every request
            page_size: Keys requested per listing page
        """
        self.bucket_name = bucket_name
        self._endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._region = region
        self._use_ssl = use_ssl
        self._page_size = page_size
        self._config = Config(connect_timeout=timeout, read_timeout=timeout)
        self.session = aioboto3.Session()

        logger.debug(
            f"S3Backend initialized: {bucket_name} (endpoint: {endpoint_url or 'AWS S3'})"
        )

    def _client(self):
        return self.session.client(
            "s3",
            endpoint_url=self._endpoint_url,
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
            region_name=self._region,
            use_ssl=self._use_ssl,
            config=self._config,
        )

    def _map_client_error(self, e: ClientError, key: str) -> StorageException:
        error = e.response.get("Error", {})
        code = str(error.get("Code", "Unknown"))
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        message = f"S3 {code} for {key}: {error.get('Message', e)}"

        if code in self.NOT_FOUND_CODES:
            return StorageNotFoundError(message)
        if code in self.AUTH_CODES:
            return StorageAuthenticationError(message)
        if code in self.QUOTA_CODES:
            return StorageQuotaExceededError(message)
        if code in self.INVALID_KEY_CODES:
            return InvalidObjectKeyError(message)
        if code == "RequestTimeout":
            return StorageTimeoutError(message)
        if status >= 500 or code in ("SlowDown", "InternalError", "ServiceUnavailable"):
            return StorageConnectionError(message)
        return StorageException(message)

    @contextmanager
    def _translate_errors(self, key: str) -> Iterator[None]:
        try:
            yield
        except ClientError as e:
            raise self._map_client_error(e, key) from e
        except NoCredentialsError as e:
            raise StorageAuthenticationError(f"S3 credentials not configured: {e}") from e
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise StorageTimeoutError(f"S3 request for {key} timed out: {e}") from e
        except EndpointConnectionError as e:
            raise StorageConnectionError(f"S3 endpoint unreachable: {e}") from e
        except BotoCoreError as e:
            raise StorageConnectionError(f"S3 request for {key} failed: {e}") from e

    @staticmethod
    def _etag(raw: Optional[str]) -> str:
        return (raw or "").strip('"')

    async def _head(self, s3, key: str) -> ObjectInfo:
        response = await s3.head_object(Bucket=self.bucket_name, Key=key)
        return ObjectInfo(
            key=key,
            size=response["ContentLength"],
            last_modified=response["LastModified"],
            etag=self._etag(response.get("ETag")),
            content_type=response.get("ContentType"),
        )

    async def put_object(
        self, key: str, content: bytes, content_type: Optional[str] = None
    ) -> ObjectInfo:
        """Upload an object to S3."""
        validate_key(key)
        params = {"Bucket": self.bucket_name, "Key": key, "Body": content}
        if content_type:
            params["ContentType"] = content_type
        with self._translate_errors(key):
            async with self._client() as s3:
                await s3.put_object(**params)
                return await self._head(s3, key)

    async def get_object(self, key: str) -> bytes:
        """Download an object from S3."""
        validate_key(key)
        with self._translate_errors(key):
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self.bucket_name, Key=key)
                async with response["Body"] as stream:
                    return await stream.read()

    async def stat_object(self, key: str) -> ObjectInfo:
        """Return object metadata from a HEAD request."""
        validate_key(key)
        with self._translate_errors(key):
            async with self._client() as s3:
                return await self._head(s3, key)

    async def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectInfo]:
        """List objects page by page with ``list_objects_v2``."""
        with self._translate_errors(prefix or "/"):
            async with self._client() as s3:
                paginator = s3.get_paginator("list_objects_v2")
                pages = paginator.paginate(
                    Bucket=self.bucket_name,
                    Prefix=prefix,
                    PaginationConfig={"PageSize": self._page_size},
                )
                async for page in pages:
                    for obj in page.get("Contents", []):
                        yield ObjectInfo(
                            key=obj["Key"],
                            size=obj["Size"],
                            last_modified=obj["LastModified"],
                            etag=self._etag(obj.get("ETag")),
                        )

    async def delete_object(self, key: str) -> None:
        """Delete an object from S3."""
        validate_key(key)
        with self._translate_errors(key):
            async with self._client() as s3:
                await s3.delete_object(Bucket=self.bucket_name, Key=key)

    async def copy_object(self, source_key: str, dest_key: str) -> ObjectInfo:
        """Server-side copy within the bucket."""
        validate_key(source_key)
        validate_key(dest_key)
        with self._translate_errors(source_key):
            async with self._client() as s3:
                await s3.copy_object(
                    Bucket=self.bucket_name,
                    CopySource={"Bucket": self.bucket_name, "Key": source_key},
                    Key=dest_key,
                )
                return await self._head(s3, dest_key)

    async def presigned_url(self, key: str, expires_in: int) -> Optional[str]:
        """Generate a presigned GET URL."""
        validate_key(key)
        with self._translate_errors(key):
            async with self._client() as s3:
                return await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self.bucket_name, "Key": key},
                    ExpiresIn=expires_in,
                )
