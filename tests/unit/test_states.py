import pytest

from invoice_pipeline.lifecycle.exceptions import IllegalTransitionError
from invoice_pipeline.lifecycle.states import (
    JOB_TRANSITIONS,
    SESSION_TRANSITIONS,
    JobStatus,
    SessionStatus,
    ensure_job_transition,
    ensure_session_transition,
    job_sources,
    session_sources,
)


class TestSessionTransitions:
    def test_happy_path_is_allowed(self) -> None:
        ensure_session_transition(SessionStatus.UPLOADING, SessionStatus.PROCESSING)
        ensure_session_transition(SessionStatus.PROCESSING, SessionStatus.POST_PROCESSING)
        ensure_session_transition(SessionStatus.POST_PROCESSING, SessionStatus.COMPLETED)

    @pytest.mark.parametrize("absorbing", [SessionStatus.EXPIRED, SessionStatus.CANCELLED])
    def test_expired_and_cancelled_are_absorbing(self, absorbing: SessionStatus) -> None:
        assert SESSION_TRANSITIONS[absorbing] == frozenset()
        with pytest.raises(IllegalTransitionError):
            ensure_session_transition(absorbing, SessionStatus.PROCESSING)

    def test_completed_sessions_can_still_expire(self) -> None:
        ensure_session_transition(SessionStatus.COMPLETED, SessionStatus.EXPIRED)
        with pytest.raises(IllegalTransitionError):
            ensure_session_transition(SessionStatus.COMPLETED, SessionStatus.PROCESSING)

    def test_every_live_status_can_expire(self) -> None:
        assert set(session_sources(SessionStatus.EXPIRED)) == {
            status.value for status in SessionStatus if status not in (
                SessionStatus.EXPIRED,
                SessionStatus.CANCELLED,
            )
        }

    def test_terminal_flags(self) -> None:
        assert SessionStatus.FAILED.is_terminal
        assert not SessionStatus.POST_PROCESSING.is_terminal


class TestJobTransitions:
    def test_polling_only_completes_from_polling(self) -> None:
        assert job_sources(JobStatus.COMPLETED) == ["POLLING"]

    def test_any_active_job_can_fail(self) -> None:
        assert set(job_sources(JobStatus.FAILED)) == {
            "QUEUED",
            "UPLOADING",
            "PROCESSING",
            "POLLING",
        }

    def test_skipping_steps_is_illegal(self) -> None:
        with pytest.raises(IllegalTransitionError) as excinfo:
            ensure_job_transition(JobStatus.QUEUED, JobStatus.POLLING)
        assert "QUEUED" in str(excinfo.value)

    @pytest.mark.parametrize("terminal", [s for s in JobStatus if s.is_terminal])
    def test_terminal_jobs_never_move(self, terminal: JobStatus) -> None:
        assert JOB_TRANSITIONS[terminal] == frozenset()
