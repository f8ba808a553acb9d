from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from invoice_pipeline.storage.exceptions import StorageError


@dataclass
class PrefixDeletion:
    """Outcome of deleting every object below a prefix."""

    deleted: int = 0
    errors: list[str] = field(default_factory=list)


class BaseStorage(ABC):
    """Contract for all blob storage adapters.

    Keys are '/'-separated paths. Adapters raise StorageNotFoundError for
    missing keys and StorageTransientError for failures worth one retry.
    """

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Write ``data`` at ``key``, replacing any existing object."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read the object at ``key``."""

    @abstractmethod
    def list_keys(self, prefix: str) -> list[str]:
        """Return every key below ``prefix`` (recursive)."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete ``key``. Returns False when it did not exist."""

    @abstractmethod
    def signed_url(self, key: str, ttl_minutes: int) -> str:
        """Return a time-limited read URL for ``key``."""

    def delete_prefix(self, prefix: str) -> PrefixDeletion:
        """Delete every object below ``prefix``.

        Failures are collected per object and never stop the remaining
        deletes. Missing objects are not failures.
        """
        result = PrefixDeletion()
        try:
            keys = self.list_keys(prefix)
        except StorageError as exc:
            result.errors.append(f"list {prefix}: {exc}")
            return result
        for key in keys:
            try:
                if self.delete(key):
                    result.deleted += 1
            except StorageError as exc:
                result.errors.append(f"delete {key}: {exc}")
        return result
