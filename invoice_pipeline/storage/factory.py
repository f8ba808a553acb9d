from pathlib import Path

from invoice_pipeline.config.settings import Settings
from invoice_pipeline.storage.base import BaseStorage
from invoice_pipeline.storage.gcs_adapter import GcsStorageAdapter
from invoice_pipeline.storage.local_adapter import LocalStorageAdapter


class StorageFactory:
    """Creates the configured storage backend."""

    BACKENDS = ("local", "gcs")

    @classmethod
    def create(cls, settings: Settings) -> BaseStorage:
        backend = settings.storage_backend.lower()
        if backend == "local":
            return LocalStorageAdapter(
                root=Path(settings.storage_local_root),
                public_base_url=settings.storage_public_base_url,
                signing_key=settings.storage_signing_key,
            )
        if backend == "gcs":
            if not settings.gcs_bucket:
                raise ValueError("gcs_bucket is required for storage_backend=gcs")
            return GcsStorageAdapter(
                bucket_name=settings.gcs_bucket,
                project_id=settings.gcs_project_id,
                timeout_seconds=settings.storage_timeout_seconds,
            )
        raise ValueError(
            f"Unknown storage backend '{backend}'. Choose from: {list(cls.BACKENDS)}"
        )
