from enum import Enum

from invoice_pipeline.lifecycle.exceptions import IllegalTransitionError


class SessionStatus(str, Enum):
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    POST_PROCESSING = "POST_PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _SESSION_TERMINAL


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    POLLING = "POLLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _JOB_TERMINAL


class JobKind(str, Enum):
    """SOURCE rows are synthetic parents of split files; only PAGE rows are driven."""

    SOURCE = "SOURCE"
    PAGE = "PAGE"


_SESSION_TERMINAL = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.EXPIRED,
        SessionStatus.CANCELLED,
    }
)

_JOB_TERMINAL = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.EXPIRED,
        JobStatus.CANCELLED,
    }
)

# EXPIRED and CANCELLED are absorbing: nothing leaves them.
SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.UPLOADING: frozenset(
        {
            SessionStatus.PROCESSING,
            SessionStatus.FAILED,
            SessionStatus.EXPIRED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.PROCESSING: frozenset(
        {
            SessionStatus.POST_PROCESSING,
            SessionStatus.FAILED,
            SessionStatus.EXPIRED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.POST_PROCESSING: frozenset(
        {
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.EXPIRED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.COMPLETED: frozenset({SessionStatus.EXPIRED, SessionStatus.CANCELLED}),
    SessionStatus.FAILED: frozenset({SessionStatus.EXPIRED, SessionStatus.CANCELLED}),
    SessionStatus.EXPIRED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

_JOB_ABANDON = frozenset({JobStatus.FAILED, JobStatus.EXPIRED, JobStatus.CANCELLED})

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: _JOB_ABANDON | {JobStatus.UPLOADING},
    JobStatus.UPLOADING: _JOB_ABANDON | {JobStatus.PROCESSING},
    JobStatus.PROCESSING: _JOB_ABANDON | {JobStatus.POLLING},
    JobStatus.POLLING: _JOB_ABANDON | {JobStatus.COMPLETED},
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.EXPIRED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def ensure_session_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Raise IllegalTransitionError unless current -> target is in the table."""
    if target not in SESSION_TRANSITIONS[current]:
        raise IllegalTransitionError("session", current.value, target.value)


def ensure_job_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise IllegalTransitionError unless current -> target is in the table."""
    if target not in JOB_TRANSITIONS[current]:
        raise IllegalTransitionError("job", current.value, target.value)


def session_sources(target: SessionStatus) -> list[str]:
    """Every session status from which ``target`` may be entered."""
    return [src.value for src, allowed in SESSION_TRANSITIONS.items() if target in allowed]


def job_sources(target: JobStatus) -> list[str]:
    """Every job status from which ``target`` may be entered."""
    return [src.value for src, allowed in JOB_TRANSITIONS.items() if target in allowed]
