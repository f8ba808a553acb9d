import io
import json
import zipfile
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from invoice_pipeline.database.models import JobRecord, SessionRecord
from invoice_pipeline.lifecycle.states import JobStatus

REPORT_NAME = "report.xlsx"
MANIFEST_NAME = "manifest.json"
PROCESSED_DIR = "processed"


def build_manifest(
    session: SessionRecord,
    jobs: Sequence[JobRecord],
    output_names: Mapping[str, str],
) -> dict[str, Any]:
    """Per-page outcome listing shipped inside the bundle."""
    pages = []
    for job in jobs:
        entry: dict[str, Any] = {
            "jobId": job.id,
            "sourceFile": job.source_filename,
            "page": job.page_number,
            "status": job.status.value,
            "outputFile": output_names.get(job.id),
        }
        if job.status is JobStatus.COMPLETED:
            entry["unbilled"] = job.unbilled
        if job.error_code:
            entry["error"] = {"code": job.error_code, "message": job.error_message}
        pages.append(entry)
    return {
        "sessionId": session.id,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "totalPages": session.total_pages,
        "completed": sum(1 for job in jobs if job.status is JobStatus.COMPLETED),
        "failed": sum(1 for job in jobs if job.status is JobStatus.FAILED),
        "pages": pages,
    }


def build_bundle(
    processed: Sequence[tuple[str, bytes]],
    report: bytes,
    manifest: Mapping[str, Any],
) -> bytes:
    """Zip renamed PDFs under processed/ together with the report and manifest."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in processed:
            archive.writestr(f"{PROCESSED_DIR}/{name}", data)
        archive.writestr(REPORT_NAME, report)
        archive.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2, default=str))
    return buffer.getvalue()
