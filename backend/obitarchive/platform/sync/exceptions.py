"""Reconciliation-specific exceptions for error handling."""


class AssetProcessingError(Exception):
    """Raised when a single catalog entry cannot be reconciled.

    This is a recoverable error - the run continues with other keys and the
    failure is recorded in the report.

    Usage:
        raise AssetProcessingError(f"Failed to insert {key}: {reason}")
    """

    pass


class SyncFailureError(Exception):
    """Raised when a critical error occurs that should fail the entire run.

    This is a non-recoverable error - the run is terminated before any catalog
    change is made.

    Examples:
    - Object listing failed or was interrupted
    - Database unreachable while loading the catalog

    Usage:
        raise SyncFailureError("Object listing failed")
    """

    pass
