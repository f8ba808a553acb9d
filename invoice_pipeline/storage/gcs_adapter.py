from datetime import timedelta

import requests
from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from invoice_pipeline.logging.logger import Log
from invoice_pipeline.storage.base import BaseStorage
from invoice_pipeline.storage.exceptions import (
    StorageError,
    StorageNotFoundError,
    StorageTransientError,
)

_TRANSIENT = (
    gcs_exceptions.TooManyRequests,
    gcs_exceptions.InternalServerError,
    gcs_exceptions.BadGateway,
    gcs_exceptions.ServiceUnavailable,
    gcs_exceptions.GatewayTimeout,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


class GcsStorageAdapter(BaseStorage):
    """Google Cloud Storage backend for production."""

    def __init__(
        self,
        bucket_name: str,
        project_id: str | None,
        timeout_seconds: int,
        client: storage.Client | None = None,
    ) -> None:
        self._client = client if client is not None else storage.Client(project=project_id)
        self._bucket = self._client.bucket(bucket_name)
        self._bucket_name = bucket_name
        self._timeout = timeout_seconds
        Log.info(f"GCS storage initialized for bucket {bucket_name}")

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        blob = self._bucket.blob(key)
        try:
            blob.upload_from_string(data, content_type=content_type, timeout=self._timeout)
        except _TRANSIENT as exc:
            raise StorageTransientError(f"GCS upload of {key} failed: {exc}") from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"GCS upload of {key} failed: {exc}") from exc

    def get(self, key: str) -> bytes:
        blob = self._bucket.blob(key)
        try:
            return blob.download_as_bytes(timeout=self._timeout)
        except gcs_exceptions.NotFound as exc:
            raise StorageNotFoundError(f"Object not found: {key}") from exc
        except _TRANSIENT as exc:
            raise StorageTransientError(f"GCS download of {key} failed: {exc}") from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"GCS download of {key} failed: {exc}") from exc

    def list_keys(self, prefix: str) -> list[str]:
        try:
            blobs = self._client.list_blobs(
                self._bucket_name, prefix=prefix.rstrip("/") + "/", timeout=self._timeout
            )
            return [blob.name for blob in blobs]
        except _TRANSIENT as exc:
            raise StorageTransientError(f"GCS list of {prefix} failed: {exc}") from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"GCS list of {prefix} failed: {exc}") from exc

    def delete(self, key: str) -> bool:
        blob = self._bucket.blob(key)
        try:
            blob.delete(timeout=self._timeout)
        except gcs_exceptions.NotFound:
            return False
        except _TRANSIENT as exc:
            raise StorageTransientError(f"GCS delete of {key} failed: {exc}") from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageError(f"GCS delete of {key} failed: {exc}") from exc
        return True

    def signed_url(self, key: str, ttl_minutes: int) -> str:
        blob = self._bucket.blob(key)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(minutes=ttl_minutes),
            method="GET",
        )
