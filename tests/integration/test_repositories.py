from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import psycopg
import pytest

from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.database.repositories.session_repository import SessionRepository
from invoice_pipeline.lifecycle.states import JobStatus, SessionStatus


@pytest.mark.integration
class TestJobClaims:
    def test_claim_queued_returns_pages_in_order_and_leases_them(
        self,
        seed_session: Callable[..., Any],
        job_repo: JobRepository,
        db_conn: psycopg.Connection[Any],
    ) -> None:
        session, jobs = seed_session(pages=2)

        claimed = [job for job in job_repo.claim_queued(db_conn, 10) if job.session_id == session.id]

        assert [job.id for job in claimed] == [job.id for job in jobs]
        assert all(job.locked_at is not None for job in claimed)
        again = job_repo.claim_queued(db_conn, 10)
        assert not {job.id for job in again} & {job.id for job in jobs}

    def test_jobs_of_cancelled_sessions_are_not_claimed(
        self,
        seed_session: Callable[..., Any],
        session_repo: SessionRepository,
        job_repo: JobRepository,
        db_conn: psycopg.Connection[Any],
    ) -> None:
        session, jobs = seed_session(pages=1)
        session_repo.transition(db_conn, session.id, SessionStatus.CANCELLED)
        db_conn.commit()

        claimed = job_repo.claim_queued(db_conn, 10)

        assert jobs[0].id not in {job.id for job in claimed}

    def test_transition_is_compare_and_swap(
        self,
        seed_session: Callable[..., Any],
        job_repo: JobRepository,
        db_conn: psycopg.Connection[Any],
    ) -> None:
        _session, jobs = seed_session(pages=1)

        first = job_repo.transition(
            db_conn, jobs[0].id, JobStatus.UPLOADING, expected=JobStatus.QUEUED
        )
        second = job_repo.transition(
            db_conn, jobs[0].id, JobStatus.UPLOADING, expected=JobStatus.QUEUED
        )
        db_conn.commit()

        assert first is not None and first.status is JobStatus.UPLOADING
        assert first.locked_at is None
        assert second is None


@pytest.mark.integration
class TestSessionCounters:
    def test_processed_pages_never_exceed_total(
        self,
        seed_session: Callable[..., Any],
        session_repo: SessionRepository,
        db_conn: psycopg.Connection[Any],
    ) -> None:
        session, _jobs = seed_session(pages=2)

        results = [session_repo.record_processed_page(db_conn, session.id) for _ in range(3)]
        db_conn.commit()

        assert results == [(1, 2), (2, 2), None]

    def test_post_processing_has_a_single_winner(
        self,
        seed_session: Callable[..., Any],
        session_repo: SessionRepository,
        db_conn: psycopg.Connection[Any],
    ) -> None:
        session, _jobs = seed_session(pages=1)
        session_repo.record_processed_page(db_conn, session.id)
        db_conn.commit()

        def _claim(_: int) -> bool:
            with get_connection() as conn:
                won = session_repo.claim_post_processing(conn, session.id) is not None
                conn.commit()
                return won

        with ThreadPoolExecutor(max_workers=4) as pool:
            winners = list(pool.map(_claim, range(4)))

        assert winners.count(True) == 1
        stored = session_repo.find_by_id(session.id)
        assert stored.status is SessionStatus.POST_PROCESSING
        assert stored.post_processing_started_at is not None
