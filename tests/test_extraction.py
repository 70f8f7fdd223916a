"""
Test Suite for the Page Extraction Client

Covers response parsing, HTTP status classification, mock mode and the
Mistral call path with a stubbed SDK client.
"""

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pageflow.errors import ExtractionError, ExtractionRetryableError, is_retryable
from pageflow.extraction import (
    MistralExtractionClient,
    classify_service_error,
    parse_extraction_response,
)

from fakes import make_pdf

VALID_RESPONSE = """Here is the data:
{
  "fields": {
    "invoice_number": {"value": "INV-001", "confidence": 0.98},
    "total_amount": {"value": 1250.5, "confidence": 0.91}
  },
  "overall_confidence": 0.93
}"""


class ServiceError(Exception):
    """Stand-in for an SDK error carrying an HTTP status."""

    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def chat_response(content):
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


# =============================================================================
# PARSING
# =============================================================================

class TestParseExtractionResponse:
    """Tests for model response validation."""

    def test_parses_embedded_json(self):
        parsed = parse_extraction_response(VALID_RESPONSE)

        assert parsed.fields["invoice_number"].value == "INV-001"
        assert parsed.overall_confidence == 0.93

    def test_no_json_is_terminal(self):
        with pytest.raises(ExtractionError):
            parse_extraction_response("I could not read this page.")

    def test_invalid_json_is_terminal(self):
        with pytest.raises(ExtractionError):
            parse_extraction_response('{"fields": {"a": }')

    def test_schema_violation_is_terminal(self):
        with pytest.raises(ExtractionError):
            parse_extraction_response('{"fields": {}, "overall_confidence": 1.7}')

    def test_missing_confidence_is_terminal(self):
        with pytest.raises(ExtractionError):
            parse_extraction_response('{"fields": {}}')


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

class TestClassifyServiceError:
    """Tests for mapping HTTP statuses to retry behavior."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_retryable_statuses(self, status):
        classified = classify_service_error(ServiceError(status))

        assert isinstance(classified, ExtractionRetryableError)
        assert classified.status_code == status
        assert is_retryable(classified)

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    def test_terminal_statuses(self, status):
        classified = classify_service_error(ServiceError(status))

        assert isinstance(classified, ExtractionError)
        assert not is_retryable(classified)

    def test_unclassified_errors_pass_through(self):
        error = ConnectionError("reset by peer")
        assert classify_service_error(error) is error


# =============================================================================
# CLIENT
# =============================================================================

class TestMistralExtractionClient:
    """Tests for the extraction client."""

    @pytest.mark.asyncio
    async def test_mock_mode_without_api_key(self, monkeypatch):
        monkeypatch.delenv("MISTRAL_API_KEY", raising=False)
        client = MistralExtractionClient(api_key=None)

        output = await client.extract(make_pdf(1))

        assert output.model_name == "mistral-large-latest (mock)"
        assert output.confidence == 0.9
        assert "Page 1" in output.data["fields"]["text_excerpt"]["value"]

    @pytest.mark.asyncio
    async def test_text_page_uses_text_model(self):
        client = MistralExtractionClient(api_key="test-key")
        client._client = MagicMock()
        client._client.chat.complete.return_value = chat_response(VALID_RESPONSE)

        output = await client.extract(make_pdf(1))

        assert output.model_name == "mistral-large-latest"
        assert output.confidence == 0.93
        assert output.data["fields"]["invoice_number"]["value"] == "INV-001"
        call = client._client.chat.complete.call_args.kwargs
        assert call["model"] == "mistral-large-latest"
        assert "Page 1" in call["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_rate_limited_response_is_retryable(self):
        client = MistralExtractionClient(api_key="test-key")
        client._client = MagicMock()
        client._client.chat.complete.side_effect = ServiceError(429)

        with pytest.raises(ExtractionRetryableError):
            await client.extract(make_pdf(1))

    @pytest.mark.asyncio
    async def test_rejected_request_is_terminal(self):
        client = MistralExtractionClient(api_key="test-key")
        client._client = MagicMock()
        client._client.chat.complete.side_effect = ServiceError(400)

        with pytest.raises(ExtractionError):
            await client.extract(make_pdf(1))

    @pytest.mark.asyncio
    async def test_unparseable_response_is_terminal(self):
        client = MistralExtractionClient(api_key="test-key")
        client._client = MagicMock()
        client._client.chat.complete.return_value = chat_response("no data here")

        with pytest.raises(ExtractionError):
            await client.extract(make_pdf(1))

    @pytest.mark.asyncio
    async def test_network_errors_propagate_unchanged(self):
        client = MistralExtractionClient(api_key="test-key")
        client._client = MagicMock()
        client._client.chat.complete.side_effect = ConnectionError("reset")

        with pytest.raises(ConnectionError):
            await client.extract(make_pdf(1))
