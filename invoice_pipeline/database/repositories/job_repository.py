from datetime import datetime
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import JobRecord
from invoice_pipeline.lifecycle.states import (
    JobKind,
    JobStatus,
    ensure_job_transition,
    job_sources,
)

JOB_COLUMNS = """
    id, session_id, user_id, kind, status, source_filename, source_key,
    mime_type, model_id, page_number, position, parent_job_id, operation_handle,
    polling_started_at, last_polled_at, next_poll_at, poll_attempt, locked_at,
    extracted_fields, output_filename, credits_charged, unbilled, error_code,
    error_message, completed_at, created_at, updated_at
"""

_MUTABLE_FIELDS = frozenset(
    {
        "operation_handle",
        "polling_started_at",
        "next_poll_at",
        "extracted_fields",
        "output_filename",
        "error_code",
        "error_message",
        "completed_at",
    }
)


def _to_job(row: dict[str, Any]) -> JobRecord:
    return JobRecord(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        user_id=row["user_id"],
        kind=JobKind(row["kind"]),
        status=JobStatus(row["status"]),
        source_filename=row["source_filename"],
        source_key=row["source_key"],
        mime_type=row["mime_type"],
        model_id=row["model_id"],
        page_number=row["page_number"],
        position=row["position"],
        parent_job_id=str(row["parent_job_id"]) if row["parent_job_id"] else None,
        operation_handle=row["operation_handle"],
        polling_started_at=row["polling_started_at"],
        last_polled_at=row["last_polled_at"],
        next_poll_at=row["next_poll_at"],
        poll_attempt=row["poll_attempt"],
        locked_at=row["locked_at"],
        extracted_fields=row["extracted_fields"],
        output_filename=row["output_filename"],
        credits_charged=row["credits_charged"],
        unbilled=row["unbilled"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class JobRepository:
    """Database operations for the jobs table."""

    def __init__(self, lease_seconds: int) -> None:
        self._lease_seconds = lease_seconds

    def insert_many(self, conn: psycopg.Connection[Any], jobs: list[JobRecord]) -> None:
        with conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO jobs
                    (id, session_id, user_id, kind, status, source_filename,
                     source_key, mime_type, model_id, page_number, position, parent_job_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                [
                    (
                        job.id,
                        job.session_id,
                        job.user_id,
                        job.kind.value,
                        job.status.value,
                        job.source_filename,
                        job.source_key,
                        job.mime_type,
                        job.model_id,
                        job.page_number,
                        job.position,
                        job.parent_job_id,
                    )
                    for job in jobs
                ],
            )

    def claim_queued(self, conn: psycopg.Connection[Any], limit: int) -> list[JobRecord]:
        """Lease up to ``limit`` QUEUED page jobs of PROCESSING sessions (SKIP LOCKED)."""
        return self._claim(
            conn,
            limit,
            """
            status = 'QUEUED' AND kind = 'PAGE'
              AND EXISTS (
                  SELECT 1 FROM processing_sessions s
                  WHERE s.id = jobs.session_id AND s.status = 'PROCESSING'
              )
            """,
        )

    def claim_due_polls(self, conn: psycopg.Connection[Any], limit: int) -> list[JobRecord]:
        """Lease up to ``limit`` POLLING jobs whose next poll is due."""
        return self._claim(
            conn,
            limit,
            """
            status = 'POLLING' AND next_poll_at <= NOW()
            """,
        )

    def _claim(
        self, conn: psycopg.Connection[Any], limit: int, condition: str
    ) -> list[JobRecord]:
        if limit <= 0:
            return []
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                UPDATE jobs SET locked_at = NOW()
                WHERE id IN (
                    SELECT id FROM jobs
                    WHERE {condition}
                      AND (locked_at IS NULL
                           OR locked_at < NOW() - make_interval(secs => %s))
                    ORDER BY created_at, position
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {JOB_COLUMNS}
                """,
                (self._lease_seconds, limit),
            )
            rows = cur.fetchall()
        conn.commit()
        return [_to_job(row) for row in rows]

    def transition(
        self,
        conn: psycopg.Connection[Any],
        job_id: str,
        target: JobStatus,
        expected: JobStatus | None = None,
        **fields: object,
    ) -> JobRecord | None:
        """Move a job to ``target`` if its current status allows it.

        Same contract as SessionRepository.transition. The lease is released
        on every transition.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set job fields: {sorted(unknown)}")
        if expected is not None:
            ensure_job_transition(expected, target)
            sources = [expected.value]
        else:
            sources = job_sources(target)

        assignments = [
            sql.SQL("status = %s"),
            sql.SQL("locked_at = NULL"),
            sql.SQL("updated_at = NOW()"),
        ]
        params: list[object] = [target.value]
        for name, value in fields.items():
            if name == "extracted_fields" and value is not None:
                value = Jsonb(value)
            assignments.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            params.append(value)
        params.extend([job_id, sources])

        query = sql.SQL(
            "UPDATE jobs SET {assignments} "
            "WHERE id = %s AND status = ANY(%s) "
            "RETURNING {columns}"
        ).format(
            assignments=sql.SQL(", ").join(assignments),
            columns=sql.SQL(JOB_COLUMNS),
        )
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return _to_job(row) if row is not None else None

    def set_billing(
        self,
        conn: psycopg.Connection[Any],
        job_id: str,
        credits_charged: int,
        unbilled: bool,
    ) -> None:
        """Record the charge outcome on a job that just completed."""
        conn.execute(
            """
            UPDATE jobs
            SET credits_charged = %s, unbilled = %s, updated_at = NOW()
            WHERE id = %s AND status = 'COMPLETED' AND credits_charged = 0
            """,
            (credits_charged, unbilled, job_id),
        )

    def set_output_filename(
        self, conn: psycopg.Connection[Any], job_id: str, output_filename: str
    ) -> None:
        """Store the collision-free name a completed page was published under."""
        conn.execute(
            """
            UPDATE jobs
            SET output_filename = %s, updated_at = NOW()
            WHERE id = %s AND status = 'COMPLETED'
            """,
            (output_filename, job_id),
        )

    def record_poll(self, job_id: str, next_poll_at: datetime) -> None:
        """Note a pending poll answer and release the lease until ``next_poll_at``."""
        with get_connection() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET poll_attempt = poll_attempt + 1,
                    last_polled_at = NOW(),
                    next_poll_at = %s,
                    locked_at = NULL,
                    updated_at = NOW()
                WHERE id = %s AND status = 'POLLING'
                """,
                (next_poll_at, job_id),
            )
            conn.commit()

    def release(self, job_id: str) -> None:
        with get_connection() as conn:
            conn.execute(
                "UPDATE jobs SET locked_at = NULL WHERE id = %s",
                (job_id,),
            )
            conn.commit()

    def abandon_open_jobs(
        self, conn: psycopg.Connection[Any], session_id: str, target: JobStatus
    ) -> int:
        """Move every non-terminal job of a session to CANCELLED or EXPIRED."""
        if target not in (JobStatus.CANCELLED, JobStatus.EXPIRED):
            raise ValueError(f"Jobs cannot be abandoned into {target.value}")
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE jobs
                SET status = %s, locked_at = NULL, updated_at = NOW()
                WHERE session_id = %s AND status = ANY(%s)
                """,
                (target.value, session_id, job_sources(target)),
            )
            return cur.rowcount

    def find_by_id(self, job_id: str) -> JobRecord | None:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = %s",
                    (job_id,),
                )
                row = cur.fetchone()
        return _to_job(row) if row is not None else None

    def list_for_session(self, session_id: str) -> list[JobRecord]:
        """Page jobs of a session in upload order."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {JOB_COLUMNS} FROM jobs
                    WHERE session_id = %s AND kind = 'PAGE'
                    ORDER BY position
                    """,
                    (session_id,),
                )
                rows = cur.fetchall()
        return [_to_job(row) for row in rows]

    def find_stalled(self, older_than_seconds: int, limit: int = 100) -> list[JobRecord]:
        """Jobs left mid-submit (UPLOADING/PROCESSING) for too long."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {JOB_COLUMNS} FROM jobs
                    WHERE status IN ('UPLOADING', 'PROCESSING')
                      AND updated_at < NOW() - make_interval(secs => %s)
                    ORDER BY updated_at
                    LIMIT %s
                    """,
                    (older_than_seconds, limit),
                )
                rows = cur.fetchall()
        return [_to_job(row) for row in rows]
