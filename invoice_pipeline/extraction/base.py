from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ExtractionState(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ExtractionStatus:
    """One poll answer. ``fields`` holds flattened values on success."""

    state: ExtractionState
    fields: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    retry_after_seconds: int | None = None


class BaseExtractionClient(ABC):
    """Contract for document-intelligence service adapters."""

    @abstractmethod
    def submit(self, document: bytes, model_id: str) -> str:
        """Start analysis of a single-page PDF.

        Returns:
            Opaque operation handle to pass to ``poll``.

        Raises:
            ExtractionNetworkError: on timeouts, connection errors, 429/5xx.
            ExtractionRequestError: when the service rejects the request.
        """

    @abstractmethod
    def poll(self, handle: str) -> ExtractionStatus:
        """Return the current state of a submitted operation."""
