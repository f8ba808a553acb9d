from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from invoice_pipeline.lifecycle.states import JobKind, JobStatus, SessionStatus


@dataclass
class SessionRecord:
    """Represents a row from the processing_sessions table."""

    id: str
    user_id: int
    storage_prefix: str
    model_id: str
    status: SessionStatus
    total_files: int
    total_pages: int
    processed_pages: int
    expires_at: datetime
    bundle_key: str | None = None
    report_key: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    post_processing_started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def percent_complete(self) -> float:
        if self.total_pages == 0:
            return 0.0
        return round(100.0 * self.processed_pages / self.total_pages, 1)


@dataclass
class JobRecord:
    """Represents a row from the jobs table."""

    id: str
    session_id: str
    user_id: int
    kind: JobKind
    status: JobStatus
    source_filename: str
    source_key: str
    mime_type: str
    model_id: str
    page_number: int = 1
    position: int = 0
    parent_job_id: str | None = None
    operation_handle: str | None = None
    polling_started_at: datetime | None = None
    last_polled_at: datetime | None = None
    next_poll_at: datetime | None = None
    poll_attempt: int = 0
    locked_at: datetime | None = None
    extracted_fields: dict[str, Any] | None = None
    output_filename: str | None = None
    credits_charged: int = 0
    unbilled: bool = False
    error_code: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TransactionRecord:
    """Represents a row from the credit_transactions table."""

    id: int
    user_id: int
    type: str
    credits: int
    status: str
    description: str | None = None
    job_id: str | None = None
    session_id: str | None = None
    reference: str | None = None
    created_at: datetime | None = None


@dataclass
class CleanupRecord:
    """Represents a row from the cleanup_records table."""

    trigger: str
    started_at: datetime
    completed_at: datetime | None = None
    sessions_reaped: int = 0
    jobs_reaped: int = 0
    blobs_deleted: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = "RUNNING"
    id: int | None = None
