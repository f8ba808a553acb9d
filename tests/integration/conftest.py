import os
import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import psycopg
import pytest

from invoice_pipeline.config.settings import Settings
from invoice_pipeline.database.connection import close_pool, get_connection, init_pool
from invoice_pipeline.database.models import JobRecord, SessionRecord
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.database.repositories.session_repository import SessionRepository
from invoice_pipeline.lifecycle.states import JobKind, JobStatus, SessionStatus
from invoice_pipeline.storage.paths import original_key, session_prefix

SCHEMA = Path(__file__).resolve().parents[2] / "invoice_pipeline" / "database" / "schema.sql"


def _test_settings() -> Settings:
    os.environ.setdefault("DB_DATABASE", "invoice_pipeline_test")
    return Settings(app_env="test")


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    return _test_settings()


@pytest.fixture(scope="session")
def integration_pool(test_settings: Settings) -> Generator[None, None, None]:
    try:
        init_pool(test_settings)
        with get_connection() as conn:
            conn.execute(SCHEMA.read_text())
            conn.commit()
    except Exception as e:
        close_pool()
        pytest.skip(f"PostgreSQL test DB not available: {e}. Set DB_* env to run.")
    try:
        yield
    finally:
        close_pool()


@pytest.fixture
def db_conn(integration_pool: None) -> Generator[psycopg.Connection[Any], None, None]:
    with get_connection() as conn:
        yield conn


@pytest.fixture
def seed_user(db_conn: psycopg.Connection[Any]) -> Generator[int, None, None]:
    """A user with zero credits; removed with everything it owns afterwards."""
    with db_conn.cursor() as cur:
        cur.execute(
            "INSERT INTO users (email, credits) VALUES (%s, 0) RETURNING id",
            (f"{uuid.uuid4()}@test.invalid",),
        )
        row = cur.fetchone()
        assert row is not None
        user_id = int(row[0])
    db_conn.commit()
    try:
        yield user_id
    finally:
        with db_conn.cursor() as cur:
            cur.execute("DELETE FROM processing_sessions WHERE user_id = %s", (user_id,))
            cur.execute("DELETE FROM credit_transactions WHERE user_id = %s", (user_id,))
            cur.execute("DELETE FROM users WHERE id = %s", (user_id,))
        db_conn.commit()


@pytest.fixture
def session_repo() -> SessionRepository:
    return SessionRepository()


@pytest.fixture
def job_repo() -> JobRepository:
    return JobRepository(lease_seconds=300)


@pytest.fixture
def seed_session(
    db_conn: psycopg.Connection[Any],
    seed_user: int,
    session_repo: SessionRepository,
    job_repo: JobRepository,
) -> Callable[..., tuple[SessionRecord, list[JobRecord]]]:
    """Insert a PROCESSING session with one QUEUED page job per page."""

    def _seed(
        pages: int = 2, expires_in: timedelta = timedelta(hours=24)
    ) -> tuple[SessionRecord, list[JobRecord]]:
        session_id = str(uuid.uuid4())
        prefix = session_prefix("test", seed_user, session_id)
        session = SessionRecord(
            id=session_id,
            user_id=seed_user,
            storage_prefix=prefix,
            model_id="prebuilt-invoice",
            status=SessionStatus.PROCESSING,
            total_files=1,
            total_pages=pages,
            processed_pages=0,
            expires_at=datetime.now(timezone.utc) + expires_in,
        )
        jobs = []
        for number in range(1, pages + 1):
            job_id = str(uuid.uuid4())
            jobs.append(
                JobRecord(
                    id=job_id,
                    session_id=session_id,
                    user_id=seed_user,
                    kind=JobKind.PAGE,
                    status=JobStatus.QUEUED,
                    source_filename=f"invoice_page{number}.pdf",
                    source_key=original_key(prefix, job_id),
                    mime_type="application/pdf",
                    model_id="prebuilt-invoice",
                    page_number=number,
                    position=number,
                )
            )
        session_repo.insert(db_conn, session)
        job_repo.insert_many(db_conn, jobs)
        db_conn.commit()
        return session, jobs

    return _seed
