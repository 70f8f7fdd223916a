"""
Tests for the PDF splitter.
"""

import sys
from pathlib import Path

import fitz  # PyMuPDF
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pageflow.errors import DocumentSplitError
from pageflow.splitter import PDFSplitter

from fakes import make_pdf, page_number_of


@pytest.fixture
def splitter():
    return PDFSplitter()


class TestPDFSplitter:
    """Tests for page partitioning and input validation."""

    def test_splits_in_page_order(self, splitter):
        pages = splitter.split_into_pages(make_pdf(4))

        assert len(pages) == 4
        assert [page_number_of(p) for p in pages] == [1, 2, 3, 4]

    def test_each_part_is_a_single_page_pdf(self, splitter):
        for page in splitter.split_into_pages(make_pdf(2)):
            doc = fitz.open(stream=page, filetype="pdf")
            try:
                assert doc.page_count == 1
            finally:
                doc.close()

    def test_single_page_document(self, splitter):
        assert len(splitter.split_into_pages(make_pdf(1))) == 1

    def test_page_count(self, splitter):
        assert splitter.page_count(make_pdf(5)) == 5

    @pytest.mark.parametrize("content", [
        b"",
        b"This is plain text, not a PDF",
        b"%PDF-1.7\nthis body is truncated garbage",
    ])
    def test_malformed_input_raises(self, splitter, content):
        with pytest.raises(DocumentSplitError):
            splitter.split_into_pages(content)

    def test_malformed_input_is_not_retryable(self, splitter):
        with pytest.raises(DocumentSplitError) as exc_info:
            splitter.split_into_pages(b"not a pdf")
        assert exc_info.value.retryable is False

    def test_validate_pdf(self, splitter):
        assert splitter.validate_pdf(make_pdf(1)) == (True, None)
        ok, message = splitter.validate_pdf(b"nope")
        assert ok is False
        assert "PDF" in message

    def test_render_page_png(self, splitter):
        page = splitter.split_into_pages(make_pdf(1))[0]
        png = splitter.render_page_png(page, dpi=72)
        assert png.startswith(b"\x89PNG")
