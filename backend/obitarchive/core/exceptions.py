"""Application exceptions shared across the media pipeline and the API."""

from typing import List, Optional


class NotFoundException(Exception):
    """Raised when a record or asset does not exist."""

    def __init__(self, message: Optional[str] = "Object not found"):
        """Create a new NotFoundException instance."""
        self.message = message
        super().__init__(self.message)


class InvalidUploadError(ValueError):
    """Raised when an uploaded file fails the ingestion preconditions."""

    pass


class IngestionError(Exception):
    """Raised when a file could not be written to the object store.

    Carries the number of attempts made and the last underlying cause so the
    caller can report which retry budget was exhausted.
    """

    def __init__(self, key: str, attempts: int, cause: BaseException):
        """Initialize ingestion error.

        Args:
            key: Object key that failed to upload
            attempts: Number of attempts made before giving up
            cause: Last exception raised by the object store
        """
        self.key = key
        self.attempts = attempts
        self.cause = cause
        plural = "attempt" if attempts == 1 else "attempts"
        super().__init__(f"Upload of {key} failed after {attempts} {plural}: {cause}")


class NoContentError(Exception):
    """Raised when an archive would contain neither the document nor any image."""

    def __init__(self, reference: str):
        """Create a new NoContentError for a reference."""
        self.reference = reference
        super().__init__(f"No files available for reference {reference}")


class PartialAssemblyError(Exception):
    """Summary of archive inputs that were dropped.

    Never raised to callers; it is logged as a warning once an archive finishes.
    """

    def __init__(self, reference: str, failures: List[str]):
        """Initialize with the reference and the human-readable failures."""
        self.reference = reference
        self.failures = failures
        super().__init__(
            f"Archive for {reference} omitted {len(failures)} input(s): " + "; ".join(failures)
        )


class ConcurrencyBusyError(Exception):
    """Raised when a reconciliation is already running."""

    def __init__(self, message: str = "A reconciliation is already running"):
        """Create a new ConcurrencyBusyError."""
        super().__init__(message)
