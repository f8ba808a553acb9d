from dataclasses import dataclass, field
from datetime import datetime

from invoice_pipeline.database.models import JobRecord, SessionRecord


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class SessionCreated:
    session_id: str
    total_files: int
    total_pages: int
    expires_at: datetime


@dataclass(frozen=True)
class JobView:
    id: str
    status: str
    page_number: int
    file_name: str
    output_file_name: str | None
    unbilled: bool
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobView":
        return cls(
            id=job.id,
            status=job.status.value,
            page_number=job.page_number,
            file_name=job.source_filename,
            output_file_name=job.output_filename,
            unbilled=job.unbilled,
            error_code=job.error_code,
            error_message=job.error_message,
        )


@dataclass(frozen=True)
class SessionView:
    """Read-only aggregate returned by SessionManager.get_status."""

    session_id: str
    status: str
    processed_pages: int
    total_pages: int
    percent_complete: float
    expires_at: datetime
    error_code: str | None = None
    error_message: str | None = None
    jobs: list[JobView] = field(default_factory=list)

    @classmethod
    def build(cls, session: SessionRecord, jobs: list[JobRecord]) -> "SessionView":
        return cls(
            session_id=session.id,
            status=session.status.value,
            processed_pages=session.processed_pages,
            total_pages=session.total_pages,
            percent_complete=session.percent_complete,
            expires_at=session.expires_at,
            error_code=session.error_code,
            error_message=session.error_message,
            jobs=[JobView.from_record(job) for job in jobs],
        )
