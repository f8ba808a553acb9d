import heapq
import threading
from datetime import datetime, timezone

from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import CleanupRecord, SessionRecord
from invoice_pipeline.database.repositories.cleanup_repository import CleanupRepository
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.database.repositories.session_repository import SessionRepository
from invoice_pipeline.lifecycle.states import JobStatus, SessionStatus
from invoice_pipeline.logging.logger import Log
from invoice_pipeline.storage.base import BaseStorage

SCHEDULED = "scheduled"
SWEEP = "sweep"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CleanupScheduler:
    """Deletes every session's blobs and rows once ``expires_at`` has passed.

    Deadlines live in processing_sessions.expires_at. The in-memory heap only
    avoids rescanning the table on every tick: ``reschedule_all`` rebuilds it
    from the database on start-up and periodically, and ``sweep`` scans the
    table directly as a safety net.
    """

    def __init__(
        self,
        session_repo: SessionRepository,
        job_repo: JobRepository,
        cleanup_repo: CleanupRepository,
        storage: BaseStorage,
    ) -> None:
        self._session_repo = session_repo
        self._job_repo = job_repo
        self._cleanup_repo = cleanup_repo
        self._storage = storage
        self._lock = threading.Lock()
        self._heap: list[tuple[datetime, str]] = []
        self._deadlines: dict[str, datetime] = {}

    def schedule(self, session_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._deadlines[session_id] = expires_at
            heapq.heappush(self._heap, (expires_at, session_id))

    def reschedule_all(self) -> int:
        """Rebuild the schedule from persisted deadlines. Returns the session count."""
        deadlines = self._session_repo.list_deadlines()
        with self._lock:
            self._deadlines = dict(deadlines)
            self._heap = [(expires_at, session_id) for session_id, expires_at in deadlines]
            heapq.heapify(self._heap)
        Log.info(f"Cleanup schedule rebuilt with {len(deadlines)} session(s)")
        return len(deadlines)

    def pending(self) -> int:
        with self._lock:
            return len(self._deadlines)

    def next_deadline(self) -> datetime | None:
        with self._lock:
            while self._heap and self._deadlines.get(self._heap[0][1]) != self._heap[0][0]:
                heapq.heappop(self._heap)
            return self._heap[0][0] if self._heap else None

    def run_due(self, now: datetime | None = None) -> CleanupRecord | None:
        """Reap every scheduled session whose deadline has passed."""
        now = now or _now()
        due = self._pop_due(now)
        if not due:
            return None
        record = CleanupRecord(trigger=SCHEDULED, started_at=now)
        for session_id in due:
            session = self._session_repo.find_by_id(session_id)
            if session is None:
                continue
            if session.expires_at > now:
                self.schedule(session.id, session.expires_at)
                continue
            self._reap(session, record)
        return self._finish(record)

    def sweep(self, now: datetime | None = None) -> CleanupRecord:
        """Reap every session past ``expires_at`` straight from the table."""
        now = now or _now()
        record = CleanupRecord(trigger=SWEEP, started_at=now)
        for session in self._session_repo.find_expired(now):
            self._reap(session, record)
        return self._finish(record)

    def _pop_due(self, now: datetime) -> list[str]:
        due: list[str] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                expires_at, session_id = heapq.heappop(self._heap)
                if self._deadlines.get(session_id) == expires_at:
                    del self._deadlines[session_id]
                    due.append(session_id)
        return due

    def _reap(self, session: SessionRecord, record: CleanupRecord) -> None:
        """Expire, delete blobs, then delete rows. Errors are recorded, never raised."""
        if session.id not in session.storage_prefix:
            record.errors.append(
                f"session {session.id}: prefix '{session.storage_prefix}' does not "
                "contain the session id, refusing to delete"
            )
            return
        try:
            with get_connection() as conn:
                self._session_repo.transition(conn, session.id, SessionStatus.EXPIRED)
                self._job_repo.abandon_open_jobs(conn, session.id, JobStatus.EXPIRED)
                conn.commit()

            deletion = self._storage.delete_prefix(session.storage_prefix)
            record.blobs_deleted += deletion.deleted
            if deletion.errors:
                record.errors.extend(f"session {session.id}: {err}" for err in deletion.errors)
                Log.warning(
                    f"Session {session.id}: {len(deletion.errors)} blob(s) not deleted, "
                    "rows kept for the next sweep"
                )
                return

            with get_connection() as conn:
                jobs_deleted = self._session_repo.delete(conn, session.id)
                conn.commit()
        except Exception as exc:
            Log.error(f"Cleanup of session {session.id} failed: {exc}")
            record.errors.append(f"session {session.id}: {exc}")
            return

        record.sessions_reaped += 1
        record.jobs_reaped += jobs_deleted
        with self._lock:
            self._deadlines.pop(session.id, None)
        Log.info(
            f"Session {session.id} removed: {jobs_deleted} job row(s), "
            f"{deletion.deleted} blob(s)"
        )

    def _finish(self, record: CleanupRecord) -> CleanupRecord:
        record.completed_at = _now()
        record.status = "COMPLETED_WITH_ERRORS" if record.errors else "COMPLETED"
        try:
            record.id = self._cleanup_repo.append(record)
        except Exception as exc:
            Log.error(f"Could not store cleanup record: {exc}")
        Log.info(
            f"Cleanup ({record.trigger}) finished: {record.sessions_reaped} session(s), "
            f"{record.jobs_reaped} job(s), {record.blobs_deleted} blob(s), "
            f"{len(record.errors)} error(s)"
        )
        return record
