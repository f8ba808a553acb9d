from invoice_pipeline.config.settings import Settings
from invoice_pipeline.pdf.base import BasePageSplitter
from invoice_pipeline.pdf.pymupdf_adapter import PyMuPdfAdapter


class PageSplitterFactory:
    """Creates the correct page splitter based on settings."""

    ADAPTERS: dict[str, type[BasePageSplitter]] = {
        "pymupdf": PyMuPdfAdapter,
    }

    @classmethod
    def create(cls, settings: Settings) -> BasePageSplitter:
        engine = settings.pdf_engine.lower()
        adapter_cls = cls.ADAPTERS.get(engine)
        if adapter_cls is None:
            raise ValueError(
                f"Unknown PDF engine '{engine}'. Choose from: {list(cls.ADAPTERS)}"
            )
        return adapter_cls()
