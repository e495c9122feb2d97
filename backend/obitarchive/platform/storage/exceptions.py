"""Object store exceptions.

All storage-related exceptions inherit from StorageException. Callers that
retry only ever retry TransientStoreError subclasses.
"""


class StorageException(Exception):
    """Base exception for storage operations."""

    pass


class TransientStoreError(StorageException):
    """A failure that may succeed when the same call is repeated."""

    pass


class PermanentStoreError(StorageException):
    """A failure that will not go away by repeating the call."""

    pass


class StorageConnectionError(TransientStoreError):
    """Raised when the store is unreachable or reports a server-side error."""

    pass


class StorageTimeoutError(TransientStoreError):
    """Raised when a store call exceeds its deadline."""

    pass


class StorageAuthenticationError(PermanentStoreError):
    """Raised when storage authentication fails."""

    pass


class StorageQuotaExceededError(PermanentStoreError):
    """Raised when storage quota is exceeded or the object is too large."""

    pass


class InvalidObjectKeyError(PermanentStoreError):
    """Raised when an object key is rejected by the store."""

    pass


class StorageNotFoundError(StorageException):
    """Raised when a requested object is not found in storage."""

    pass
