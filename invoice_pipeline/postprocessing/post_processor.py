from datetime import datetime, timezone

from invoice_pipeline.config.settings import Settings
from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import JobRecord, SessionRecord
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.database.repositories.session_repository import SessionRepository
from invoice_pipeline.lifecycle.error_codes import ErrorCode
from invoice_pipeline.lifecycle.states import JobStatus, SessionStatus
from invoice_pipeline.logging.logger import Log
from invoice_pipeline.postprocessing.bundler import build_bundle, build_manifest
from invoice_pipeline.postprocessing.file_namer import fallback_name, unique_name
from invoice_pipeline.postprocessing.spreadsheet import build_report
from invoice_pipeline.storage import paths
from invoice_pipeline.storage.base import BaseStorage
from invoice_pipeline.utils.retry import call_with_retry


class PostProcessor:
    """Renames completed pages and publishes bundle.zip and report.xlsx.

    Runs once per session, after the session manager won the
    PROCESSING -> POST_PROCESSING claim.
    """

    def __init__(
        self,
        job_repo: JobRepository,
        session_repo: SessionRepository,
        storage: BaseStorage,
        settings: Settings,
    ) -> None:
        self._job_repo = job_repo
        self._session_repo = session_repo
        self._storage = storage
        self._settings = settings

    def run(self, session: SessionRecord) -> SessionRecord | None:
        """Build and upload the bundle, then complete the session.

        Any error marks the session FAILED; job results stay queryable.
        """
        Log.info(f"Post-processing session {session.id}")
        jobs = self._job_repo.list_for_session(session.id)
        completed = [job for job in jobs if job.status is JobStatus.COMPLETED]
        failed = [job for job in jobs if job.status is JobStatus.FAILED]

        try:
            bundle_key, report_key, output_names = self._publish(
                session, jobs, completed, failed
            )
        except Exception as exc:
            Log.exception(f"Post-processing failed for session {session.id}: {exc}")
            return self._fail(session, f"Could not build download bundle: {exc}")

        with get_connection() as conn:
            for job in completed:
                if output_names[job.id] != job.output_filename:
                    self._job_repo.set_output_filename(conn, job.id, output_names[job.id])
            done = self._session_repo.transition(
                conn,
                session.id,
                SessionStatus.COMPLETED,
                expected=SessionStatus.POST_PROCESSING,
                bundle_key=bundle_key,
                report_key=report_key,
                completed_at=datetime.now(timezone.utc),
            )
            conn.commit()
        if done is None:
            Log.warning(f"Session {session.id} left POST_PROCESSING before completion")
            return None
        Log.info(
            f"Session {session.id} completed: {len(completed)} renamed, {len(failed)} failed"
        )
        return done

    def _publish(
        self,
        session: SessionRecord,
        jobs: list[JobRecord],
        completed: list[JobRecord],
        failed: list[JobRecord],
    ) -> tuple[str, str, dict[str, str]]:
        prefix = session.storage_prefix
        used: set[str] = set()
        output_names: dict[str, str] = {}
        processed: list[tuple[str, bytes]] = []

        for job in completed:
            name = unique_name(job.output_filename or fallback_name(job.source_filename), used)
            page = call_with_retry(
                lambda: self._storage.get(paths.page_key(prefix, job.id)),
                f"Load page of job {job.id}",
            )
            key = paths.processed_key(prefix, name)
            call_with_retry(
                lambda: self._storage.put(key, page, "application/pdf"),
                f"Store renamed page {name}",
            )
            output_names[job.id] = name
            processed.append((name, page))

        report = build_report(
            completed, failed, self._settings.spreadsheet_column_order, output_names
        )
        manifest = build_manifest(session, jobs, output_names)
        bundle = build_bundle(processed, report, manifest)

        report_key = paths.report_key(prefix)
        bundle_key = paths.bundle_key(prefix)
        call_with_retry(
            lambda: self._storage.put(
                report_key,
                report,
                "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            ),
            f"Upload report for session {session.id}",
        )
        call_with_retry(
            lambda: self._storage.put(bundle_key, bundle, "application/zip"),
            f"Upload bundle for session {session.id}",
        )
        return bundle_key, report_key, output_names

    def _fail(self, session: SessionRecord, message: str) -> SessionRecord | None:
        with get_connection() as conn:
            failed = self._session_repo.transition(
                conn,
                session.id,
                SessionStatus.FAILED,
                expected=SessionStatus.POST_PROCESSING,
                error_code=ErrorCode.POST_PROCESSING_FAILED.value,
                error_message=message,
                completed_at=datetime.now(timezone.utc),
            )
            conn.commit()
        return failed
