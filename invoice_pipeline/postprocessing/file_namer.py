"""Output file names from extracted fields.

A naming template mixes literal text with field references::

    {VendorName}_{InvoiceId}_{InvoiceDate|date:%Y-%m-%d}
    INV-{InvoiceId|upper}-{VendorName|truncate:20}

Transforms chain with ``|``: upper, lower, camelcase, kebabcase,
truncate:N, date:FORMAT and replace:OLD:NEW. FORMAT is a strftime pattern;
YYYY, MM and DD tokens are accepted too.
"""

import re
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from pathlib import PurePath
from typing import Any

from invoice_pipeline.extraction.fields import scalar_text
from invoice_pipeline.logging.logger import Log

_TOKEN = re.compile(r"\{([^{}|]+)(?:\|([^{}]+))?\}")
_INVALID = re.compile(r"[^A-Za-z0-9_-]")
_REPEATED_UNDERSCORE = re.compile(r"_+")

_INPUT_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%m-%d-%Y",
    "%d.%m.%Y",
    "%d %B %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%b %d, %Y",
)

MAX_STEM_LENGTH = 120

# Excel counts days from 1899-12-30 (it treats 1900 as a leap year).
_EXCEL_EPOCH = datetime(1899, 12, 30)


def sanitize(text: str) -> str:
    """Replace characters outside [A-Za-z0-9_-] and collapse separators."""
    cleaned = _INVALID.sub("_", text)
    cleaned = _REPEATED_UNDERSCORE.sub("_", cleaned)
    return cleaned.strip("_")


def fallback_name(original_filename: str) -> str:
    stem = sanitize(PurePath(original_filename).stem) or "document"
    return f"{stem[:MAX_STEM_LENGTH]}.pdf"


def _parse_compressed(digits: str) -> datetime | None:
    """MYY, MMYY/MDYY and MMDYY/MDDYY forms; a missing day means the 1st."""
    if len(digits) == 3:
        month, day, year = int(digits[0]), 1, int(digits[1:])
    elif len(digits) == 4:
        if int(digits[:2]) <= 12:
            month, day, year = int(digits[:2]), 1, int(digits[2:])
        else:
            month, day, year = int(digits[0]), int(digits[1]), int(digits[2:])
    elif len(digits) == 5:
        if int(digits[:2]) <= 12:
            month, day, year = int(digits[:2]), int(digits[2]), int(digits[3:])
        else:
            month, day, year = int(digits[0]), int(digits[1:3]), int(digits[3:])
    else:
        return None
    try:
        return datetime(2000 + year, month, day)
    except ValueError:
        return None


def _parse_numeric(digits: str) -> datetime | None:
    """Compressed dates, Excel serial days and Unix timestamps (s or ms)."""
    parsed = _parse_compressed(digits)
    if parsed is not None:
        return parsed
    number = int(digits)
    if 40000 < number < 50000:
        return _EXCEL_EPOCH + timedelta(days=number)
    if 1_000_000_000 < number < 2_000_000_000:
        return datetime.fromtimestamp(number, tz=timezone.utc).replace(tzinfo=None)
    if 1_000_000_000_000 < number < 2_000_000_000_000:
        return datetime.fromtimestamp(number / 1000, tz=timezone.utc).replace(tzinfo=None)
    return None


def parse_date(value: str) -> datetime | None:
    text = value.strip().strip("\"'")
    if text.isascii() and text.isdigit():
        parsed = _parse_numeric(text)
        if parsed is not None:
            return parsed
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in _INPUT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def apply_transform(value: str, transform: str) -> str:
    name, _, arg = transform.partition(":")
    name = name.strip().lower()
    if name in ("upper", "uppercase"):
        return value.upper()
    if name in ("lower", "lowercase"):
        return value.lower()
    if name == "camelcase":
        words = [w for w in re.split(r"[^A-Za-z0-9]+", value) if w]
        return "".join([words[0].lower(), *(w.capitalize() for w in words[1:])]) if words else ""
    if name == "kebabcase":
        spaced = re.sub(r"([a-z])([A-Z])", r"\1-\2", value)
        return re.sub(r"[^A-Za-z0-9]+", "-", spaced).strip("-").lower()
    if name == "truncate":
        try:
            length = int(arg)
        except ValueError:
            length = 50
        return value[:length]
    if name == "date":
        parsed = parse_date(value)
        if parsed is None:
            return value
        fmt = arg or "%Y-%m-%d"
        fmt = fmt.replace("YYYY", "%Y").replace("MM", "%m").replace("DD", "%d")
        return parsed.strftime(fmt)
    if name == "replace":
        old, _, new = arg.partition(":")
        return value.replace(old, new) if old else value
    Log.warning(f"Unknown file name transform '{transform}', ignoring")
    return value


class FileNamer:
    """Derives a sanitized ``.pdf`` file name from a template and field values."""

    def __init__(self, template: str) -> None:
        self._template = template

    def render(self, fields: Mapping[str, Any]) -> str | None:
        """Resolved, sanitized stem; None when a referenced field is missing."""
        parts: list[str] = []
        position = 0
        for match in _TOKEN.finditer(self._template):
            parts.append(self._template[position : match.start()])
            value = scalar_text(fields.get(match.group(1).strip())).strip()
            if not value:
                return None
            for transform in (match.group(2) or "").split("|"):
                if transform.strip():
                    value = apply_transform(value, transform.strip())
            parts.append(value)
            position = match.end()
        parts.append(self._template[position:])

        stem = sanitize("".join(parts))[:MAX_STEM_LENGTH].rstrip("_")
        return stem or None

    def derive(self, fields: Mapping[str, Any], original_filename: str) -> str:
        stem = self.render(fields)
        if stem is None:
            return fallback_name(original_filename)
        return f"{stem}.pdf"


def unique_name(name: str, used: set[str]) -> str:
    """Return ``name`` or ``name_1``, ``name_2`` ... not yet in ``used``; records it."""
    candidate = name
    path = PurePath(name)
    counter = 1
    while candidate.lower() in used:
        candidate = f"{path.stem}_{counter}{path.suffix}"
        counter += 1
    used.add(candidate.lower())
    return candidate
