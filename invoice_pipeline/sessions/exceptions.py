from invoice_pipeline.lifecycle.error_codes import ErrorCode


class SessionError(Exception):
    """Base exception for session manager errors. Carries a user-visible code."""

    default_code = ErrorCode.SESSION_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class SessionNotFoundError(SessionError):
    """Raised for unknown sessions and sessions owned by another user."""

    default_code = ErrorCode.SESSION_NOT_FOUND


class SessionStateError(SessionError):
    """Raised when an operation does not fit the session's current status."""

    default_code = ErrorCode.SESSION_NOT_READY


class UploadRejectedError(SessionError):
    """Raised when an upload fails validation; nothing was persisted."""

    default_code = ErrorCode.UNSUPPORTED_MEDIA_TYPE


class SessionStorageError(SessionError):
    """Raised when originals could not be stored; the session is marked FAILED."""

    default_code = ErrorCode.STORAGE_ERROR
