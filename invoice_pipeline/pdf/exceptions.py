class PdfError(Exception):
    """Base exception for page splitting errors."""


class PdfReadError(PdfError):
    """Raised when a document cannot be opened or converted."""


class PageOutOfRangeError(PdfError):
    """Raised when a requested page number does not exist."""
