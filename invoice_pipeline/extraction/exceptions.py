from invoice_pipeline.utils.retry import TransientError


class ExtractionError(Exception):
    """Raised when the extraction service cannot accept or answer a request."""


class ExtractionRequestError(ExtractionError):
    """Raised when the service rejects a request (4xx, malformed response)."""


class ExtractionNetworkError(ExtractionError, TransientError):
    """Raised when the service call fails due to network/infrastructure issues."""
