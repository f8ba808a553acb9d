from invoice_pipeline.utils.retry import TransientError


class StorageError(Exception):
    """Base exception for all storage gateway errors."""


class StorageNotFoundError(StorageError):
    """Raised when a key does not exist in the store."""


class StorageTransientError(StorageError, TransientError):
    """Raised on timeouts, connection resets and retryable backend responses."""
