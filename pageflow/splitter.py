"""
PDF Splitter

Partitions a PDF into single-page PDFs with PyMuPDF. Pure functions over
bytes; malformed input raises DocumentSplitError.
"""

import logging
from typing import List, Optional, Tuple

import fitz  # PyMuPDF

from .errors import DocumentSplitError

logger = logging.getLogger(__name__)

# The PDF header may be preceded by junk, but only within the first 1024 bytes
PDF_HEADER_SEARCH_BYTES = 1024


class PDFSplitter:
    """Splits PDF documents into ordered single-page documents."""

    def _open(self, content: bytes) -> "fitz.Document":
        if not content:
            raise DocumentSplitError("Document is empty")
        if b"%PDF-" not in content[:PDF_HEADER_SEARCH_BYTES]:
            raise DocumentSplitError("Document is not a PDF (missing %PDF header)")

        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except Exception as e:
            raise DocumentSplitError(f"Unable to parse PDF: {e}") from e

        if doc.needs_pass:
            doc.close()
            raise DocumentSplitError("PDF is encrypted")
        if doc.page_count == 0:
            doc.close()
            raise DocumentSplitError("PDF has no pages")
        return doc

    def page_count(self, content: bytes) -> int:
        doc = self._open(content)
        try:
            return doc.page_count
        finally:
            doc.close()

    def validate_pdf(self, content: bytes) -> Tuple[bool, Optional[str]]:
        """Return (is_valid, error_message)."""
        try:
            self.page_count(content)
        except DocumentSplitError as e:
            return False, str(e)
        return True, None

    def split_into_pages(self, content: bytes) -> List[bytes]:
        """
        Split a PDF into single-page PDFs.

        Returns:
            Page documents in original order; index 0 is page 1
        """
        source = self._open(content)
        pages = []
        try:
            for index in range(source.page_count):
                single = fitz.open()
                try:
                    single.insert_pdf(source, from_page=index, to_page=index)
                    pages.append(single.tobytes(garbage=3, deflate=True))
                finally:
                    single.close()
        except DocumentSplitError:
            raise
        except Exception as e:
            raise DocumentSplitError(f"Failed to split page {len(pages) + 1}: {e}") from e
        finally:
            source.close()

        logger.info(f"Split PDF into {len(pages)} pages")
        return pages

    def render_page_png(self, page_content: bytes, dpi: int = 150) -> bytes:
        """Render the first page of a PDF to PNG (for pages without a text layer)."""
        doc = self._open(page_content)
        try:
            pixmap = doc[0].get_pixmap(dpi=dpi)
            return pixmap.tobytes("png")
        finally:
            doc.close()
