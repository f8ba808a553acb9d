import time
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from invoice_pipeline.storage.exceptions import StorageError, StorageNotFoundError
from invoice_pipeline.storage.local_adapter import LocalStorageAdapter


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorageAdapter:
    return LocalStorageAdapter(tmp_path, "http://localhost:8000/files/", "secret")


class TestLocalStorage:
    def test_put_get_roundtrip(self, storage: LocalStorageAdapter) -> None:
        storage.put("dev/1/s1/originals/a.pdf", b"data")
        assert storage.get("dev/1/s1/originals/a.pdf") == b"data"

    def test_get_missing_raises_not_found(self, storage: LocalStorageAdapter) -> None:
        with pytest.raises(StorageNotFoundError):
            storage.get("dev/1/missing.pdf")

    def test_list_keys_is_recursive(self, storage: LocalStorageAdapter) -> None:
        storage.put("dev/1/s1/originals/a.pdf", b"a")
        storage.put("dev/1/s1/pages/b.pdf", b"b")
        storage.put("dev/1/s2/bundle.zip", b"c")

        assert storage.list_keys("dev/1/s1") == [
            "dev/1/s1/originals/a.pdf",
            "dev/1/s1/pages/b.pdf",
        ]

    def test_delete_prefix_removes_files_and_empty_dirs(
        self, storage: LocalStorageAdapter, tmp_path: Path
    ) -> None:
        storage.put("dev/1/s1/originals/a.pdf", b"a")
        storage.put("dev/1/s1/bundle.zip", b"b")

        result = storage.delete_prefix("dev/1/s1")

        assert (result.deleted, result.errors) == (2, [])
        assert not (tmp_path / "dev").exists()

    def test_delete_missing_returns_false(self, storage: LocalStorageAdapter) -> None:
        assert storage.delete("dev/1/none.pdf") is False

    def test_keys_cannot_escape_root(self, storage: LocalStorageAdapter) -> None:
        with pytest.raises(StorageError, match="escapes"):
            storage.put("../outside.txt", b"x")


class TestSignedUrls:
    def test_signed_url_verifies(self, storage: LocalStorageAdapter) -> None:
        url = urlparse(storage.signed_url("dev/1/s1/bundle.zip", 5))
        query = parse_qs(url.query)

        assert url.path == "/files/dev/1/s1/bundle.zip"
        assert storage.verify(
            "dev/1/s1/bundle.zip", int(query["expires"][0]), query["signature"][0]
        )

    def test_tampered_key_fails(self, storage: LocalStorageAdapter) -> None:
        query = parse_qs(urlparse(storage.signed_url("dev/1/s1/bundle.zip", 5)).query)

        assert not storage.verify(
            "dev/2/s9/bundle.zip", int(query["expires"][0]), query["signature"][0]
        )

    def test_expired_link_fails(self, storage: LocalStorageAdapter) -> None:
        expires = int(time.time()) - 1
        signature = storage._sign("dev/1/s1/bundle.zip", expires)

        assert not storage.verify("dev/1/s1/bundle.zip", expires, signature)
