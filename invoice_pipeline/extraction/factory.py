from invoice_pipeline.config.settings import Settings
from invoice_pipeline.extraction.azure_adapter import AzureDocumentIntelligenceAdapter
from invoice_pipeline.extraction.base import BaseExtractionClient
from invoice_pipeline.extraction.example_adapter import ExampleExtractionAdapter


class ExtractionClientFactory:
    """Creates the configured extraction client."""

    PROVIDERS = ("azure", "example")

    @classmethod
    def create(cls, settings: Settings) -> BaseExtractionClient:
        provider = settings.extraction_provider.lower()
        if provider == "example":
            return ExampleExtractionAdapter()
        if provider == "azure":
            return AzureDocumentIntelligenceAdapter(
                endpoint=settings.extraction_endpoint,
                api_key=settings.extraction_api_key,
                api_version=settings.extraction_api_version,
                timeout_seconds=settings.extraction_timeout_seconds,
            )
        raise ValueError(
            f"Unknown extraction provider '{provider}'. Choose from: {list(cls.PROVIDERS)}"
        )
