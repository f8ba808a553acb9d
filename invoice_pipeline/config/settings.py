from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8000

    db_host: str = "host.docker.internal"
    db_port: int = 5432
    db_database: str = "invoice_pipeline"
    db_username: str = "invoice_pipeline"
    db_password: str = "secret"
    db_pool_max_size: int = 20

    pdf_engine: str = "pymupdf"

    retention_hours: int = 24

    poll_interval_seconds: int = 5
    poll_timeout_seconds: int = 600
    worker_tick_seconds: float = 1.0
    job_lease_seconds: int = 120
    submit_stale_seconds: int = 300

    extraction_provider: str = "azure"
    extraction_endpoint: str = ""
    extraction_api_key: str = ""
    extraction_api_version: str = "2024-11-30"
    extraction_default_model: str = "prebuilt-invoice"
    extraction_timeout_seconds: int = 30
    extraction_tier: str = "free"
    tier_concurrency: dict[str, int] = {"free": 1, "standard": 15}

    storage_backend: str = "local"
    storage_local_root: str = "/app/storage"
    storage_public_base_url: str = "http://localhost:8000/files"
    storage_signing_key: str = "change-me"
    storage_timeout_seconds: int = 30
    signed_url_ttl_minutes: int = 60
    gcs_bucket: str = ""
    gcs_project_id: str | None = None

    naming_template: str = "{VendorName}_{InvoiceId}_{InvoiceDate}"
    spreadsheet_column_order: list[str] = []

    max_page_size_bytes: int = 4 * 1024 * 1024
    max_files_per_upload: int = 20
    allowed_mime_types: list[str] = [
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/tiff",
    ]

    cleanup_refresh_minutes: int = 5
    cleanup_sweep_interval_hours: int = 24
    reconciliation_interval_minutes: int = 60

    def concurrency_cap(self) -> int:
        """Worker pool size for the configured extraction tier."""
        tier = self.extraction_tier.lower()
        cap = self.tier_concurrency.get(tier)
        if cap is None:
            raise ValueError(
                f"Unknown extraction tier '{tier}'. Choose from: {list(self.tier_concurrency)}"
            )
        return max(cap, 1)
