"""Object store integration for obituary images."""

from obitarchive.core.config import Settings, settings
from obitarchive.platform.storage.backend import (
    FilesystemBackend,
    ObjectInfo,
    S3Backend,
    StorageBackend,
    validate_key,
    with_timeout,
)
from obitarchive.platform.storage.exceptions import (
    InvalidObjectKeyError,
    PermanentStoreError,
    StorageAuthenticationError,
    StorageConnectionError,
    StorageException,
    StorageNotFoundError,
    StorageQuotaExceededError,
    StorageTimeoutError,
    TransientStoreError,
)

__all__ = [
    "StorageBackend",
    "FilesystemBackend",
    "S3Backend",
    "ObjectInfo",
    "validate_key",
    "with_timeout",
    "get_storage_backend",
    "StorageException",
    "TransientStoreError",
    "PermanentStoreError",
    "StorageConnectionError",
    "StorageTimeoutError",
    "StorageAuthenticationError",
    "StorageQuotaExceededError",
    "InvalidObjectKeyError",
    "StorageNotFoundError",
]


def get_storage_backend(config: Settings = settings) -> StorageBackend:
    """Factory function to get the object store configured by STORAGE_BACKEND."""
    if config.STORAGE_BACKEND == "filesystem":
        return FilesystemBackend(base_path=config.STORAGE_PATH)
    elif config.STORAGE_BACKEND == "s3":
        return S3Backend(
            bucket_name=config.S3_BUCKET_NAME,
            endpoint_url=config.S3_ENDPOINT_URL,
            access_key_id=config.S3_ACCESS_KEY_ID,
            secret_access_key=config.S3_SECRET_ACCESS_KEY,
            region=config.S3_REGION,
            use_ssl=config.S3_USE_SSL,
            timeout=config.STORAGE_TIMEOUT_SECONDS,
            page_size=config.S3_LIST_PAGE_SIZE,
        )
    else:
        raise ValueError(f"Unsupported storage backend: {config.STORAGE_BACKEND}")
