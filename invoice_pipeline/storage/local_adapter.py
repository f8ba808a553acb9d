import hashlib
import hmac
import time
from pathlib import Path
from urllib.parse import quote, urlencode

from invoice_pipeline.logging.logger import Log
from invoice_pipeline.storage.base import BaseStorage
from invoice_pipeline.storage.exceptions import StorageError, StorageNotFoundError


class LocalStorageAdapter(BaseStorage):
    """Filesystem storage for development.

    Signed URLs point at the API's /files route and carry an HMAC over the key
    and expiry timestamp; see ``verify``.
    """

    def __init__(self, root: Path, public_base_url: str, signing_key: str) -> None:
        self._root = root
        self._public_base_url = public_base_url.rstrip("/")
        self._signing_key = signing_key.encode()
        self._root.mkdir(parents=True, exist_ok=True)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._resolve(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Cannot write {key}: {exc}") from exc
        Log.debug(f"Stored {key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        path = self._resolve(key)
        if not path.is_file():
            raise StorageNotFoundError(f"Object not found: {key}")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Cannot read {key}: {exc}") from exc

    def list_keys(self, prefix: str) -> list[str]:
        base = self._resolve(prefix)
        if not base.exists():
            return []
        return sorted(
            item.relative_to(self._root).as_posix()
            for item in base.rglob("*")
            if item.is_file()
        )

    def delete(self, key: str) -> bool:
        path = self._resolve(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Cannot delete {key}: {exc}") from exc
        self._prune_empty_dirs(path.parent)
        return True

    def signed_url(self, key: str, ttl_minutes: int) -> str:
        expires = int(time.time()) + ttl_minutes * 60
        query = urlencode({"expires": expires, "signature": self._sign(key, expires)})
        return f"{self._public_base_url}/{quote(key)}?{query}"

    def verify(self, key: str, expires: int, signature: str) -> bool:
        """Check a signature produced by ``signed_url`` and that it is unexpired."""
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._sign(key, expires), signature)

    def _sign(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def _resolve(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root.resolve()):
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def _prune_empty_dirs(self, directory: Path) -> None:
        root = self._root.resolve()
        while directory != root and directory.is_dir() and not any(directory.iterdir()):
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent
