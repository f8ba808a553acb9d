"""Example extraction adapter.

Implement BaseExtractionClient and register the provider in
ExtractionClientFactory to add a real service.
"""

import uuid
from typing import Any, ClassVar

from invoice_pipeline.extraction.base import (
    BaseExtractionClient,
    ExtractionState,
    ExtractionStatus,
)


class ExampleExtractionAdapter(BaseExtractionClient):
    """Returns fixed invoice fields after a configurable number of pending polls.

    No network calls. Useful for local development and tests.
    """

    DEFAULT_FIELDS: ClassVar[dict[str, Any]] = {
        "VendorName": "Example Supplies Ltd",
        "InvoiceId": "INV-0001",
        "InvoiceDate": "2025-06-05",
        "InvoiceTotal": 120.5,
    }

    def __init__(self, pending_polls: int = 0) -> None:
        self._pending_polls = pending_polls
        self._polls: dict[str, int] = {}

    def submit(self, document: bytes, model_id: str) -> str:
        _ = document
        handle = f"example://{model_id}/{uuid.uuid4()}"
        self._polls[handle] = 0
        return handle

    def poll(self, handle: str) -> ExtractionStatus:
        seen = self._polls.get(handle, self._pending_polls)
        if seen < self._pending_polls:
            self._polls[handle] = seen + 1
            return ExtractionStatus(state=ExtractionState.PENDING)
        self._polls.pop(handle, None)
        return ExtractionStatus(state=ExtractionState.SUCCEEDED, fields=dict(self.DEFAULT_FIELDS))
