import io
from collections.abc import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from invoice_pipeline.database.models import JobRecord
from invoice_pipeline.extraction.fields import scalar_text

BASE_HEADERS = ["File Name", "Status", "Processing Date"]
FAILED_HEADERS = ["Original File", "Page", "Error Code", "Error"]

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill(start_color="305496", end_color="305496", fill_type="solid")
_FAILED_FILL = PatternFill(start_color="C00000", end_color="C00000", fill_type="solid")
_MAX_COLUMN_WIDTH = 60


def field_columns(jobs: Sequence[JobRecord], column_order: Sequence[str]) -> list[str]:
    """Configured columns first, in order, then any other field alphabetically."""
    present: set[str] = set()
    for job in jobs:
        present.update((job.extracted_fields or {}).keys())
    configured = list(dict.fromkeys(column_order))
    return configured + sorted(present - set(configured))


def build_report(
    completed: Sequence[JobRecord],
    failed: Sequence[JobRecord],
    column_order: Sequence[str],
    output_names: Mapping[str, str] | None = None,
) -> bytes:
    """One row per completed page; failed pages go to a second sheet.

    ``output_names`` maps job id to the name the page carries in the bundle.
    """
    names = output_names or {}
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Invoices"

    columns = field_columns(completed, column_order)
    _write_header(sheet, [*BASE_HEADERS, *columns], _HEADER_FILL)
    for job in completed:
        fields = job.extracted_fields or {}
        processed_on = job.completed_at.strftime("%Y-%m-%d %H:%M") if job.completed_at else ""
        sheet.append(
            [
                names.get(job.id) or job.output_filename or job.source_filename,
                "Completed (unbilled)" if job.unbilled else "Completed",
                processed_on,
                *(scalar_text(fields.get(column)) for column in columns),
            ]
        )
    _autosize(sheet)

    if failed:
        failures = workbook.create_sheet("Failed Pages")
        _write_header(failures, FAILED_HEADERS, _FAILED_FILL)
        for job in failed:
            failures.append(
                [job.source_filename, job.page_number, job.error_code or "", job.error_message or ""]
            )
        _autosize(failures)

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _write_header(sheet: Worksheet, headers: list[str], fill: PatternFill) -> None:
    sheet.append(headers)
    for cell in sheet[1]:
        cell.font = _HEADER_FONT
        cell.fill = fill
    sheet.freeze_panes = "A2"


def _autosize(sheet: Worksheet) -> None:
    for index, column in enumerate(sheet.iter_cols(), start=1):
        width = max((len(str(cell.value)) for cell in column if cell.value is not None), default=8)
        sheet.column_dimensions[get_column_letter(index)].width = min(width + 2, _MAX_COLUMN_WIDTH)
