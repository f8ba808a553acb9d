from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from invoice_pipeline.config.settings import Settings
from invoice_pipeline.credits.ledger import CreditLedger
from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.models import JobRecord
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.database.repositories.session_repository import SessionRepository
from invoice_pipeline.extraction.base import BaseExtractionClient, ExtractionState
from invoice_pipeline.extraction.exceptions import ExtractionError, ExtractionNetworkError
from invoice_pipeline.lifecycle.error_codes import ErrorCode
from invoice_pipeline.lifecycle.states import JobStatus
from invoice_pipeline.logging.logger import Log
from invoice_pipeline.pdf.base import BasePageSplitter
from invoice_pipeline.pdf.exceptions import PdfError
from invoice_pipeline.postprocessing.file_namer import FileNamer
from invoice_pipeline.storage.base import BaseStorage
from invoice_pipeline.storage.exceptions import StorageError
from invoice_pipeline.storage.paths import page_key, session_prefix
from invoice_pipeline.utils.retry import call_with_retry


@dataclass(frozen=True)
class JobOutcome:
    """Published when a job reaches COMPLETED or FAILED and its page is counted."""

    job_id: str
    session_id: str
    status: JobStatus
    processed_pages: int
    total_pages: int

    @property
    def session_ready(self) -> bool:
        return self.processed_pages >= self.total_pages


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStateMachine:
    """Drives one page job: QUEUED -> UPLOADING -> PROCESSING -> POLLING -> COMPLETED | FAILED.

    Every step is a compare-and-swap on the job row. A step that loses the
    swap (the job was cancelled, expired or finished by another worker) stops
    quietly. COMPLETED and FAILED count the page on the session in the same
    transaction and return a JobOutcome for the session manager.
    """

    def __init__(
        self,
        job_repo: JobRepository,
        session_repo: SessionRepository,
        ledger: CreditLedger,
        storage: BaseStorage,
        extraction: BaseExtractionClient,
        splitter: BasePageSplitter,
        namer: FileNamer,
        settings: Settings,
    ) -> None:
        self._job_repo = job_repo
        self._session_repo = session_repo
        self._ledger = ledger
        self._storage = storage
        self._extraction = extraction
        self._splitter = splitter
        self._namer = namer
        self._settings = settings

    def submit(self, job: JobRecord) -> JobOutcome | None:
        """Upload the page and start extraction. Failures end the job, uncharged."""
        if not self._advance(job, JobStatus.QUEUED, JobStatus.UPLOADING):
            Log.info(f"Job {job.id} is no longer queued, skipping submit")
            return None

        try:
            page = self._upload_page(job)
        except (StorageError, PdfError) as exc:
            return self.fail(job, ErrorCode.STORAGE_ERROR, f"Could not prepare page: {exc}")

        if not self._advance(job, JobStatus.UPLOADING, JobStatus.PROCESSING):
            Log.info(f"Job {job.id} was abandoned during upload")
            return None

        try:
            handle = call_with_retry(
                lambda: self._extraction.submit(page, job.model_id),
                f"Extraction submit for job {job.id}",
            )
        except ExtractionError as exc:
            return self.fail(job, ErrorCode.SUBMIT_FAILED, f"Extraction submit failed: {exc}")

        now = _now()
        with get_connection() as conn:
            polling = self._job_repo.transition(
                conn,
                job.id,
                JobStatus.POLLING,
                expected=JobStatus.PROCESSING,
                operation_handle=handle,
                polling_started_at=now,
                next_poll_at=now + timedelta(seconds=self._settings.poll_interval_seconds),
            )
            conn.commit()
        if polling is None:
            Log.info(f"Job {job.id} was abandoned during submit, ignoring operation")
        else:
            Log.info(f"Job {job.id} submitted, polling")
        return None

    def poll(self, job: JobRecord) -> JobOutcome | None:
        """Query the extraction service once. A job that is not POLLING is ignored."""
        if job.status is not JobStatus.POLLING or not job.operation_handle:
            Log.debug(f"Job {job.id} is {job.status.value}, ignoring poll")
            return None
        handle = job.operation_handle

        try:
            status = call_with_retry(
                lambda: self._extraction.poll(handle),
                f"Extraction poll for job {job.id}",
            )
        except ExtractionNetworkError as exc:
            return self.fail(
                job, ErrorCode.EXTRACTION_UNREACHABLE, f"Extraction service unreachable: {exc}"
            )
        except ExtractionError as exc:
            return self.fail(job, ErrorCode.EXTRACTION_FAILED, str(exc))

        if status.state is ExtractionState.FAILED:
            return self.fail(job, ErrorCode.EXTRACTION_FAILED, status.error or "Extraction failed")
        if status.state is ExtractionState.SUCCEEDED:
            return self._complete(job, status.fields)

        if self._poll_deadline_passed(job):
            return self.fail(
                job,
                ErrorCode.POLL_TIMEOUT,
                f"Extraction still pending after {self._settings.poll_timeout_seconds}s",
            )
        delay = max(self._settings.poll_interval_seconds, status.retry_after_seconds or 0)
        self._job_repo.record_poll(job.id, _now() + timedelta(seconds=delay))
        Log.debug(f"Job {job.id} still pending (attempt {job.poll_attempt + 1})")
        return None

    def fail(
        self,
        job: JobRecord,
        code: ErrorCode,
        message: str,
        expected: JobStatus | None = None,
    ) -> JobOutcome | None:
        """Move a job to FAILED and count its page.

        Without ``expected`` any non-terminal state may fail.
        """
        with get_connection() as conn:
            failed = self._job_repo.transition(
                conn,
                job.id,
                JobStatus.FAILED,
                expected=expected,
                error_code=code.value,
                error_message=message,
                completed_at=_now(),
            )
            if failed is None:
                conn.rollback()
                Log.info(f"Job {job.id} already left its active state, not failing")
                return None
            counters = self._session_repo.record_processed_page(conn, job.session_id)
            conn.commit()
        Log.error(f"Job {job.id} failed [{code.value}]: {message}")
        return _outcome(failed, counters)

    def fail_stalled_submissions(self) -> list[JobOutcome]:
        """Fail jobs a crashed worker left in UPLOADING or PROCESSING."""
        outcomes = []
        for job in self._job_repo.find_stalled(self._settings.submit_stale_seconds):
            outcome = self.fail(
                job,
                ErrorCode.SUBMIT_INTERRUPTED,
                f"Submission interrupted while {job.status.value.lower()}",
                expected=job.status,
            )
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def _complete(self, job: JobRecord, fields: dict[str, Any]) -> JobOutcome | None:
        output_filename = self._namer.derive(fields, job.source_filename)
        with get_connection() as conn:
            completed = self._job_repo.transition(
                conn,
                job.id,
                JobStatus.COMPLETED,
                expected=JobStatus.POLLING,
                extracted_fields=fields,
                output_filename=output_filename,
                completed_at=_now(),
            )
            if completed is None:
                conn.rollback()
                Log.info(f"Job {job.id} already left POLLING, result ignored")
                return None

            charge = self._ledger.charge_usage(
                job.user_id, 1, job.id, session_id=job.session_id, conn=conn
            )
            self._job_repo.set_billing(
                conn,
                job.id,
                credits_charged=0 if charge.insufficient else 1,
                unbilled=charge.insufficient,
            )
            counters = self._session_repo.record_processed_page(conn, job.session_id)
            conn.commit()

        if not charge.insufficient:
            Log.info(f"Job {job.id} completed as {output_filename}, balance {charge.balance}")
        else:
            Log.warning(
                f"Job {job.id} completed UNBILLED for user {job.user_id} "
                f"(insufficient credits, balance {charge.balance})"
            )
        return _outcome(completed, counters)

    def _upload_page(self, job: JobRecord) -> bytes:
        original = call_with_retry(
            lambda: self._storage.get(job.source_key),
            f"Load original for job {job.id}",
        )
        page = self._splitter.extract_page(original, job.page_number)
        key = page_key(session_prefix(self._settings.app_env, job.user_id, job.session_id), job.id)
        call_with_retry(
            lambda: self._storage.put(key, page, "application/pdf"),
            f"Upload page for job {job.id}",
        )
        return page

    def _advance(self, job: JobRecord, expected: JobStatus, target: JobStatus) -> bool:
        with get_connection() as conn:
            moved = self._job_repo.transition(conn, job.id, target, expected=expected)
            conn.commit()
        return moved is not None

    def _poll_deadline_passed(self, job: JobRecord) -> bool:
        if job.polling_started_at is None:
            return False
        elapsed = (_now() - job.polling_started_at).total_seconds()
        return elapsed > self._settings.poll_timeout_seconds


def _outcome(job: JobRecord, counters: tuple[int, int] | None) -> JobOutcome | None:
    if counters is None:
        Log.warning(f"Session {job.session_id} page counter not advanced for job {job.id}")
        return None
    processed, total = counters
    return JobOutcome(
        job_id=job.id,
        session_id=job.session_id,
        status=job.status,
        processed_pages=processed,
        total_pages=total,
    )
