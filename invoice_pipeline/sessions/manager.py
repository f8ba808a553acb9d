import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import PurePath

from invoice_pipeline.cleanup.scheduler import CleanupScheduler
from invoice_pipeline.config.settings import Settings
from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import JobRecord, SessionRecord
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.database.repositories.session_repository import SessionRepository
from invoice_pipeline.jobs.state_machine import JobOutcome
from invoice_pipeline.lifecycle.error_codes import ErrorCode
from invoice_pipeline.lifecycle.states import JobKind, JobStatus, SessionStatus
from invoice_pipeline.logging.logger import Log
from invoice_pipeline.pdf.base import BasePageSplitter
from invoice_pipeline.pdf.exceptions import PdfError
from invoice_pipeline.postprocessing.post_processor import PostProcessor
from invoice_pipeline.sessions.exceptions import (
    SessionNotFoundError,
    SessionStateError,
    SessionStorageError,
    UploadRejectedError,
)
from invoice_pipeline.sessions.models import SessionCreated, SessionView, UploadedFile
from invoice_pipeline.storage import paths
from invoice_pipeline.storage.base import BaseStorage
from invoice_pipeline.storage.exceptions import StorageError
from invoice_pipeline.utils.retry import call_with_retry


@dataclass(frozen=True)
class _PreparedFile:
    filename: str
    mime_type: str
    pdf: bytes
    page_count: int


class SessionManager:
    """Owns processing sessions: fan-out on upload, progress, hand-off, cancel.

    Page jobs created here are picked up by the worker, which drives them
    through the JobStateMachine and reports terminal outcomes back through
    ``on_job_terminal``.
    """

    def __init__(
        self,
        session_repo: SessionRepository,
        job_repo: JobRepository,
        storage: BaseStorage,
        splitter: BasePageSplitter,
        post_processor: PostProcessor,
        settings: Settings,
        scheduler: CleanupScheduler | None = None,
    ) -> None:
        self._session_repo = session_repo
        self._job_repo = job_repo
        self._storage = storage
        self._splitter = splitter
        self._post_processor = post_processor
        self._settings = settings
        self._scheduler = scheduler

    def create_session(
        self,
        user_id: int,
        files: list[UploadedFile],
        model_id: str | None = None,
    ) -> SessionCreated:
        """Validate an upload, persist the session and one QUEUED job per page.

        Raises:
            UploadRejectedError: if a file is empty, unsupported, unreadable or
                has a page over the size ceiling. Nothing is persisted.
            SessionStorageError: if originals could not be stored.
        """
        if not files:
            raise UploadRejectedError("No files uploaded", ErrorCode.EMPTY_UPLOAD)
        if len(files) > self._settings.max_files_per_upload:
            raise UploadRejectedError(
                f"At most {self._settings.max_files_per_upload} files per upload",
                ErrorCode.TOO_MANY_FILES,
            )
        prepared = [self._prepare(upload) for upload in files]

        session_id = str(uuid.uuid4())
        prefix = paths.session_prefix(self._settings.app_env, user_id, session_id)
        model = model_id or self._settings.extraction_default_model
        jobs, originals = self._plan_jobs(session_id, user_id, prefix, model, prepared)
        total_pages = sum(item.page_count for item in prepared)
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self._settings.retention_hours)

        session = SessionRecord(
            id=session_id,
            user_id=user_id,
            storage_prefix=prefix,
            model_id=model,
            status=SessionStatus.UPLOADING,
            total_files=len(prepared),
            total_pages=total_pages,
            processed_pages=0,
            expires_at=expires_at,
        )
        with get_connection() as conn:
            self._session_repo.insert(conn, session)
            self._job_repo.insert_many(conn, jobs)
            conn.commit()
        if self._scheduler is not None:
            self._scheduler.schedule(session_id, expires_at)

        self._store_originals(session, originals)

        with get_connection() as conn:
            self._session_repo.transition(
                conn, session_id, SessionStatus.PROCESSING, expected=SessionStatus.UPLOADING
            )
            conn.commit()
        Log.info(
            f"Session {session_id} created for user {user_id}: "
            f"{len(prepared)} file(s), {total_pages} page(s)"
        )
        return SessionCreated(
            session_id=session_id,
            total_files=len(prepared),
            total_pages=total_pages,
            expires_at=expires_at,
        )

    def on_job_terminal(self, outcome: JobOutcome) -> SessionRecord | None:
        """Hand the session to post-processing once its last page is processed."""
        if not outcome.session_ready:
            Log.debug(
                f"Session {outcome.session_id} progress "
                f"{outcome.processed_pages}/{outcome.total_pages}"
            )
            return None
        return self._claim_and_post_process(outcome.session_id)

    def resume_ready_sessions(self) -> int:
        """Claim sessions whose pages are all processed but were never handed off."""
        resumed = 0
        for session_id in self._session_repo.find_ready_for_post_processing():
            if self._claim_and_post_process(session_id) is not None:
                resumed += 1
        if resumed:
            Log.info(f"Resumed post-processing for {resumed} session(s)")
        return resumed

    def get_status(self, session_id: str, user_id: int) -> SessionView:
        session = self._owned_session(session_id, user_id)
        jobs = self._job_repo.list_for_session(session_id)
        return SessionView.build(session, jobs)

    def cancel_session(self, session_id: str, user_id: int) -> SessionRecord:
        """Cancel a session and abandon its open jobs. Idempotent.

        In-flight extraction operations are not cancelled upstream; their
        results are ignored because the job is no longer POLLING.
        """
        session = self._owned_session(session_id, user_id)
        if session.status is SessionStatus.CANCELLED:
            return session
        if session.status is SessionStatus.EXPIRED:
            raise SessionStateError(f"Session {session_id} has expired", ErrorCode.SESSION_EXPIRED)

        with get_connection() as conn:
            cancelled = self._session_repo.transition(conn, session_id, SessionStatus.CANCELLED)
            if cancelled is None:
                conn.rollback()
                current = self._owned_session(session_id, user_id)
                if current.status is SessionStatus.CANCELLED:
                    return current
                raise SessionStateError(
                    f"Session {session_id} cannot be cancelled from {current.status.value}",
                    ErrorCode.SESSION_EXPIRED,
                )
            abandoned = self._job_repo.abandon_open_jobs(conn, session_id, JobStatus.CANCELLED)
            conn.commit()
        Log.info(f"Session {session_id} cancelled, {abandoned} open job(s) abandoned")
        return cancelled

    def download_url(self, session_id: str, user_id: int) -> str:
        """Time-limited URL of the bundle of a COMPLETED session."""
        session = self._owned_session(session_id, user_id)
        if session.status is not SessionStatus.COMPLETED or session.bundle_key is None:
            raise SessionStateError(
                f"Session {session_id} is {session.status.value}, bundle not available"
            )
        return self._storage.signed_url(session.bundle_key, self._settings.signed_url_ttl_minutes)

    def _claim_and_post_process(self, session_id: str) -> SessionRecord | None:
        with get_connection() as conn:
            claimed = self._session_repo.claim_post_processing(conn, session_id)
            conn.commit()
        if claimed is None:
            Log.debug(f"Session {session_id} already claimed or not ready")
            return None
        return self._post_processor.run(claimed)

    def _owned_session(self, session_id: str, user_id: int) -> SessionRecord:
        try:
            uuid.UUID(session_id)
        except ValueError:
            raise SessionNotFoundError(f"Session {session_id} not found") from None
        session = self._session_repo.find_by_id(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def _prepare(self, upload: UploadedFile) -> _PreparedFile:
        mime_type = self._resolve_mime_type(upload)
        if not upload.data:
            raise UploadRejectedError(f"File '{upload.filename}' is empty", ErrorCode.EMPTY_UPLOAD)
        try:
            pdf = self._splitter.to_pdf(upload.data, mime_type)
            page_count = self._splitter.page_count(pdf)
            if page_count == 0:
                raise UploadRejectedError(
                    f"File '{upload.filename}' has no pages", ErrorCode.UNREADABLE_DOCUMENT
                )
            self._check_page_sizes(upload.filename, pdf, page_count)
        except PdfError as exc:
            raise UploadRejectedError(
                f"File '{upload.filename}' could not be read: {exc}",
                ErrorCode.UNREADABLE_DOCUMENT,
            ) from exc
        return _PreparedFile(
            filename=upload.filename,
            mime_type=mime_type,
            pdf=pdf,
            page_count=page_count,
        )

    def _resolve_mime_type(self, upload: UploadedFile) -> str:
        allowed = self._settings.allowed_mime_types
        mime_type = (upload.content_type or "").split(";")[0].strip().lower()
        if mime_type not in allowed:
            guessed, _ = mimetypes.guess_type(upload.filename)
            mime_type = guessed or mime_type
        if mime_type not in allowed:
            raise UploadRejectedError(
                f"File '{upload.filename}' has unsupported type '{mime_type or 'unknown'}'",
                ErrorCode.UNSUPPORTED_MEDIA_TYPE,
            )
        return mime_type

    def _check_page_sizes(self, filename: str, pdf: bytes, page_count: int) -> None:
        limit = self._settings.max_page_size_bytes
        if len(pdf) <= limit:
            return
        pages = [pdf] if page_count == 1 else self._splitter.split(pdf)
        for number, page in enumerate(pages, start=1):
            if len(page) > limit:
                raise UploadRejectedError(
                    f"Page {number} of '{filename}' is {len(page)} bytes, limit is {limit}",
                    ErrorCode.PAGE_TOO_LARGE,
                )

    def _plan_jobs(
        self,
        session_id: str,
        user_id: int,
        prefix: str,
        model_id: str,
        prepared: list[_PreparedFile],
    ) -> tuple[list[JobRecord], list[tuple[str, bytes]]]:
        """Page jobs (plus a SOURCE parent per multi-page file) and originals to store."""
        jobs: list[JobRecord] = []
        originals: list[tuple[str, bytes]] = []

        for item in prepared:
            owner_id = str(uuid.uuid4())
            source_key = paths.original_key(prefix, owner_id)
            originals.append((source_key, item.pdf))
            base = {
                "session_id": session_id,
                "user_id": user_id,
                "status": JobStatus.QUEUED,
                "source_key": source_key,
                "mime_type": "application/pdf",
                "model_id": model_id,
            }
            if item.page_count == 1:
                jobs.append(
                    JobRecord(
                        id=owner_id,
                        kind=JobKind.PAGE,
                        source_filename=item.filename,
                        position=len(jobs),
                        **base,
                    )
                )
                continue

            jobs.append(
                JobRecord(
                    id=owner_id,
                    kind=JobKind.SOURCE,
                    source_filename=item.filename,
                    page_number=0,
                    position=len(jobs),
                    **base,
                )
            )
            stem = PurePath(item.filename).stem
            for number in range(1, item.page_count + 1):
                jobs.append(
                    JobRecord(
                        id=str(uuid.uuid4()),
                        kind=JobKind.PAGE,
                        source_filename=f"{stem}_page{number}.pdf",
                        page_number=number,
                        parent_job_id=owner_id,
                        position=len(jobs),
                        **base,
                    )
                )
        return jobs, originals

    def _store_originals(self, session: SessionRecord, originals: list[tuple[str, bytes]]) -> None:
        written: list[str] = []
        try:
            for key, data in originals:
                call_with_retry(
                    lambda: self._storage.put(key, data, "application/pdf"),
                    f"Store original {key}",
                )
                written.append(key)
        except StorageError as exc:
            Log.error(f"Session {session.id} upload failed: {exc}")
            for key in written:
                try:
                    self._storage.delete(key)
                except StorageError as cleanup_exc:
                    Log.warning(f"Could not remove {key}, left for cleanup: {cleanup_exc}")
            with get_connection() as conn:
                self._session_repo.transition(
                    conn,
                    session.id,
                    SessionStatus.FAILED,
                    expected=SessionStatus.UPLOADING,
                    error_code=ErrorCode.STORAGE_ERROR.value,
                    error_message=f"Could not store uploaded files: {exc}",
                )
                self._job_repo.abandon_open_jobs(conn, session.id, JobStatus.CANCELLED)
                conn.commit()
            raise SessionStorageError(f"Could not store uploaded files: {exc}") from exc
