from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import CleanupRecord


class CleanupRepository:
    """Append-only access to the cleanup_records table."""

    def append(self, record: CleanupRecord) -> int:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO cleanup_records
                        (trigger, started_at, completed_at, sessions_reaped,
                         jobs_reaped, blobs_deleted, errors, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        record.trigger,
                        record.started_at,
                        record.completed_at,
                        record.sessions_reaped,
                        record.jobs_reaped,
                        record.blobs_deleted,
                        Jsonb(record.errors),
                        record.status,
                    ),
                )
                row = cur.fetchone()
            if row is None:
                raise RuntimeError("INSERT INTO cleanup_records returned no id")
            conn.commit()
        return int(row[0])

    def latest(self, limit: int = 20) -> list[CleanupRecord]:
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT id, trigger, started_at, completed_at, sessions_reaped,
                           jobs_reaped, blobs_deleted, errors, status
                    FROM cleanup_records
                    ORDER BY started_at DESC
                    LIMIT %s
                    """,
                    (limit,),
                )
                rows = cur.fetchall()
        return [
            CleanupRecord(
                id=row["id"],
                trigger=row["trigger"],
                started_at=row["started_at"],
                completed_at=row["completed_at"],
                sessions_reaped=row["sessions_reaped"],
                jobs_reaped=row["jobs_reaped"],
                blobs_deleted=row["blobs_deleted"],
                errors=list(row["errors"] or []),
                status=row["status"],
            )
            for row in rows
        ]
