from datetime import datetime
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import SessionRecord
from invoice_pipeline.lifecycle.states import (
    SessionStatus,
    ensure_session_transition,
    session_sources,
)

SESSION_COLUMNS = """
    id, user_id, storage_prefix, model_id, status, total_files, total_pages,
    processed_pages, expires_at, bundle_key, report_key, error_code,
    error_message, post_processing_started_at, completed_at, created_at,
    updated_at
"""

_MUTABLE_FIELDS = frozenset(
    {
        "bundle_key",
        "report_key",
        "error_code",
        "error_message",
        "post_processing_started_at",
        "completed_at",
    }
)


def _to_session(row: dict[str, Any]) -> SessionRecord:
    return SessionRecord(
        id=str(row["id"]),
        user_id=row["user_id"],
        storage_prefix=row["storage_prefix"],
        model_id=row["model_id"],
        status=SessionStatus(row["status"]),
        total_files=row["total_files"],
        total_pages=row["total_pages"],
        processed_pages=row["processed_pages"],
        expires_at=row["expires_at"],
        bundle_key=row["bundle_key"],
        report_key=row["report_key"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        post_processing_started_at=row["post_processing_started_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SessionRepository:
    """Database operations for the processing_sessions table.

    Every status change goes through ``transition`` or ``claim_post_processing``,
    both compare-and-swap updates guarded by the session transition table.
    """

    def insert(self, conn: psycopg.Connection[Any], session: SessionRecord) -> None:
        conn.execute(
            """
            INSERT INTO processing_sessions
                (id, user_id, storage_prefix, model_id, status, total_files,
                 total_pages, processed_pages, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.storage_prefix,
                session.model_id,
                session.status.value,
                session.total_files,
                session.total_pages,
                session.processed_pages,
                session.expires_at,
            ),
        )

    def find_by_id(self, session_id: str) -> SessionRecord | None:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {SESSION_COLUMNS} FROM processing_sessions WHERE id = %s",
                    (session_id,),
                )
                row = cur.fetchone()
        return _to_session(row) if row is not None else None

    def transition(
        self,
        conn: psycopg.Connection[Any],
        session_id: str,
        target: SessionStatus,
        expected: SessionStatus | None = None,
        **fields: object,
    ) -> SessionRecord | None:
        """Move a session to ``target`` if its current status allows it.

        With ``expected`` the update only applies from that exact status, and an
        illegal ``expected -> target`` pair raises IllegalTransitionError.
        Returns the updated row, or None when the compare-and-swap lost.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set session fields: {sorted(unknown)}")
        if expected is not None:
            ensure_session_transition(expected, target)
            sources = [expected.value]
        else:
            sources = session_sources(target)

        assignments = [sql.SQL("status = %s"), sql.SQL("updated_at = NOW()")]
        params: list[object] = [target.value]
        for name, value in fields.items():
            assignments.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            params.append(value)
        params.extend([session_id, sources])

        query = sql.SQL(
            "UPDATE processing_sessions SET {assignments} "
            "WHERE id = %s AND status = ANY(%s) "
            "RETURNING {columns}"
        ).format(
            assignments=sql.SQL(", ").join(assignments),
            columns=sql.SQL(SESSION_COLUMNS),
        )
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return _to_session(row) if row is not None else None

    def record_processed_page(
        self, conn: psycopg.Connection[Any], session_id: str
    ) -> tuple[int, int] | None:
        """Increment processed_pages, never past total_pages.

        Returns (processed_pages, total_pages) after the increment, or None if
        the session is gone or already full.
        """
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE processing_sessions
                SET processed_pages = processed_pages + 1, updated_at = NOW()
                WHERE id = %s AND processed_pages < total_pages
                RETURNING processed_pages, total_pages
                """,
                (session_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    def claim_post_processing(
        self, conn: psycopg.Connection[Any], session_id: str
    ) -> SessionRecord | None:
        """Single-winner PROCESSING -> POST_PROCESSING once every page is processed."""
        ensure_session_transition(SessionStatus.PROCESSING, SessionStatus.POST_PROCESSING)
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                UPDATE processing_sessions
                SET status = %s, post_processing_started_at = NOW(), updated_at = NOW()
                WHERE id = %s
                  AND status = %s
                  AND processed_pages >= total_pages
                RETURNING {SESSION_COLUMNS}
                """,
                (
                    SessionStatus.POST_PROCESSING.value,
                    session_id,
                    SessionStatus.PROCESSING.value,
                ),
            )
            row = cur.fetchone()
        return _to_session(row) if row is not None else None

    def find_ready_for_post_processing(self, limit: int = 50) -> list[str]:
        """Sessions whose pages are all processed but that were never claimed."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id FROM processing_sessions
                    WHERE status = %s AND processed_pages >= total_pages
                      AND expires_at > NOW()
                    ORDER BY updated_at
                    LIMIT %s
                    """,
                    (SessionStatus.PROCESSING.value, limit),
                )
                return [str(row[0]) for row in cur.fetchall()]

    def list_deadlines(self) -> list[tuple[str, datetime]]:
        """(id, expires_at) for every session row still present."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, expires_at FROM processing_sessions")
                return [(str(row[0]), row[1]) for row in cur.fetchall()]

    def find_expired(self, now: datetime, limit: int = 500) -> list[SessionRecord]:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {SESSION_COLUMNS} FROM processing_sessions
                    WHERE expires_at <= %s
                    ORDER BY expires_at
                    LIMIT %s
                    """,
                    (now, limit),
                )
                rows = cur.fetchall()
        return [_to_session(row) for row in rows]

    def delete(self, conn: psycopg.Connection[Any], session_id: str) -> int:
        """Physically delete a session and its jobs. Returns the job row count."""
        with conn.cursor() as cur:
            cur.execute("DELETE FROM jobs WHERE session_id = %s", (session_id,))
            jobs_deleted = cur.rowcount
            cur.execute("DELETE FROM processing_sessions WHERE id = %s", (session_id,))
        return jobs_deleted
