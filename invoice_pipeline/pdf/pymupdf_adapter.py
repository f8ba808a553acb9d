from typing import ClassVar

import pymupdf

from invoice_pipeline.pdf.base import BasePageSplitter
from invoice_pipeline.pdf.exceptions import PageOutOfRangeError, PdfReadError


class PyMuPdfAdapter(BasePageSplitter):
    """Counts, converts and splits documents using PyMuPDF."""

    IMAGE_TYPES: ClassVar[dict[str, str]] = {
        "image/jpeg": "jpeg",
        "image/png": "png",
        "image/tiff": "tiff",
    }

    def to_pdf(self, data: bytes, mime_type: str) -> bytes:
        if mime_type == "application/pdf":
            self.page_count(data)
            return data
        filetype = self.IMAGE_TYPES.get(mime_type)
        if filetype is None:
            raise PdfReadError(f"Cannot convert '{mime_type}' to PDF")
        try:
            with pymupdf.open(stream=data, filetype=filetype) as image:  # type: ignore[no-untyped-call]
                return bytes(image.convert_to_pdf())
        except Exception as exc:
            raise PdfReadError(f"pymupdf image conversion failed: {exc}") from exc

    def page_count(self, pdf_bytes: bytes) -> int:
        try:
            with pymupdf.open(stream=pdf_bytes, filetype="pdf") as doc:  # type: ignore[no-untyped-call]
                return int(doc.page_count)
        except Exception as exc:
            raise PdfReadError(f"pymupdf could not open document: {exc}") from exc

    def extract_page(self, pdf_bytes: bytes, page_number: int) -> bytes:
        try:
            with pymupdf.open(stream=pdf_bytes, filetype="pdf") as doc:  # type: ignore[no-untyped-call]
                if not 1 <= page_number <= doc.page_count:
                    raise PageOutOfRangeError(
                        f"Page {page_number} out of range (1..{doc.page_count})"
                    )
                with pymupdf.open() as single:  # type: ignore[no-untyped-call]
                    single.insert_pdf(doc, from_page=page_number - 1, to_page=page_number - 1)
                    return bytes(single.tobytes(garbage=3, deflate=True))
        except PageOutOfRangeError:
            raise
        except Exception as exc:
            raise PdfReadError(f"pymupdf page split failed: {exc}") from exc
