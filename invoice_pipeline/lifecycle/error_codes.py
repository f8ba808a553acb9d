from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable codes stored next to every user-visible failure."""

    SUBMIT_FAILED = "SUBMIT_FAILED"
    SUBMIT_INTERRUPTED = "SUBMIT_INTERRUPTED"
    STORAGE_ERROR = "STORAGE_ERROR"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    EXTRACTION_UNREACHABLE = "EXTRACTION_UNREACHABLE"
    POLL_TIMEOUT = "POLL_TIMEOUT"
    POST_PROCESSING_FAILED = "POST_PROCESSING_FAILED"

    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    PAGE_TOO_LARGE = "PAGE_TOO_LARGE"
    EMPTY_UPLOAD = "EMPTY_UPLOAD"
    TOO_MANY_FILES = "TOO_MANY_FILES"
    UNREADABLE_DOCUMENT = "UNREADABLE_DOCUMENT"

    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_NOT_READY = "SESSION_NOT_READY"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_ERROR = "SESSION_ERROR"

    MISSING_USER_ID = "MISSING_USER_ID"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
