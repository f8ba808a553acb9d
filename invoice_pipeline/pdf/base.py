from abc import ABC, abstractmethod


class BasePageSplitter(ABC):
    """Contract for PDF page counting and splitting adapters.

    Page numbers are 1-based everywhere.
    """

    @abstractmethod
    def to_pdf(self, data: bytes, mime_type: str) -> bytes:
        """Return ``data`` as PDF bytes, converting images when needed.

        Raises:
            PdfReadError: if the document cannot be opened or converted.
        """

    @abstractmethod
    def page_count(self, pdf_bytes: bytes) -> int:
        """Number of pages in a PDF."""

    @abstractmethod
    def extract_page(self, pdf_bytes: bytes, page_number: int) -> bytes:
        """Return one page as a standalone PDF.

        Raises:
            PageOutOfRangeError: if ``page_number`` is not in the document.
        """

    def split(self, pdf_bytes: bytes) -> list[bytes]:
        """Every page as a standalone PDF, in order."""
        return [
            self.extract_page(pdf_bytes, number)
            for number in range(1, self.page_count(pdf_bytes) + 1)
        ]
