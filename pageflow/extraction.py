"""
Page Extraction Client

Turns one page PDF into structured fields with Mistral AI. Pages with a text
layer go to the text model; scanned pages are rendered and sent to the vision
model.

Errors are classified for the page worker:
- ExtractionRetryableError: rate limited (429) or service errors (5xx)
- ExtractionError: rejected input (other 4xx) or unparseable/invalid output
Anything unclassified (network errors, timeouts) propagates unchanged and is
treated as transient by the queue.
"""

import asyncio
import base64
import io
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import pdfplumber
from mistralai import Mistral
from pydantic import BaseModel, Field, ValidationError

from .errors import ExtractionError, ExtractionRetryableError
from .splitter import PDFSplitter

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT MODELS
# =============================================================================

class FieldValue(BaseModel):
    """One extracted field and the model's confidence in it."""
    value: Any = None
    confidence: float = Field(0.0, ge=0, le=1)


class PageExtraction(BaseModel):
    """Validated response of the extraction model for one page."""
    fields: Dict[str, FieldValue] = Field(default_factory=dict)
    overall_confidence: float = Field(..., ge=0, le=1)


@dataclass
class ExtractionOutput:
    """What the page worker stores on a succeeded step."""
    data: Dict[str, Any]
    model_name: str
    confidence: Optional[float] = None


def parse_extraction_response(content: str) -> PageExtraction:
    """Pull the JSON object out of a model response and validate it."""
    start = content.find('{')
    end = content.rfind('}') + 1
    if start < 0 or end <= start:
        raise ExtractionError("No JSON object found in model response")
    try:
        return PageExtraction.model_validate(json.loads(content[start:end]))
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Model response is not valid JSON: {e}") from e
    except ValidationError as e:
        raise ExtractionError(f"Model response failed validation: {e.error_count()} errors") from e


def classify_service_error(exc: Exception) -> Exception:
    """Map an SDK error to the pipeline's retryable/terminal split by HTTP status."""
    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        return exc
    if status == 429 or status >= 500:
        return ExtractionRetryableError(f"Extraction service returned {status}: {exc}", status_code=status)
    if 400 <= status < 500:
        return ExtractionError(f"Extraction service rejected the request ({status}): {exc}", status_code=status)
    return exc


# =============================================================================
# CLIENTS
# =============================================================================

class ExtractionClient(ABC):
    """Abstract base class for page extraction clients."""

    model_name: str = "unknown"

    @abstractmethod
    async def extract(self, page_content: bytes) -> ExtractionOutput:
        """Extract structured data from a single-page PDF."""
        pass


class MistralExtractionClient(ExtractionClient):
    """Mistral AI client for page extraction."""

    EXTRACTION_PROMPT = """You are a document extraction specialist. Extract structured data from the following document page.

PAGE TEXT:
{page_text}

Identify every labelled value on the page (identifiers, dates, names, addresses, amounts, totals, line items) and return them as a JSON object. For each field, provide the value and your confidence level (0.0 to 1.0). Use snake_case field names.

Respond ONLY with a valid JSON object in this exact format:
{{
  "fields": {{
    "field_name": {{"value": "...", "confidence": 0.95}}
  }},
  "overall_confidence": 0.90
}}

Be precise and only extract information explicitly present on the page."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "mistral-large-latest",
        vision_model: str = "pixtral-large-latest",
        splitter: Optional[PDFSplitter] = None,
        max_text_chars: int = 8000,
    ):
        self.api_key = api_key or os.environ.get("MISTRAL_API_KEY")
        self.model_name = model
        self.vision_model = vision_model
        self.splitter = splitter or PDFSplitter()
        self.max_text_chars = max_text_chars
        if self.api_key:
            self._client = Mistral(api_key=self.api_key)
        else:
            logger.warning("No Mistral API key provided. Using mock extraction.")
            self._client = None

    def _page_text(self, page_content: bytes) -> str:
        try:
            with pdfplumber.open(io.BytesIO(page_content)) as pdf:
                return "\n\n".join(page.extract_text() or "" for page in pdf.pages)
        except Exception as e:
            raise ExtractionError(f"Unable to read page content: {e}") from e

    async def extract(self, page_content: bytes) -> ExtractionOutput:
        """Extract structured data from one page using Mistral AI."""
        text = await asyncio.to_thread(self._page_text, page_content)

        if self._client is None:
            return self._mock_extraction(text)

        if text.strip():
            model = self.model_name
            prompt = self.EXTRACTION_PROMPT.format(page_text=text[:self.max_text_chars])
            messages = [{"role": "user", "content": prompt}]
        else:
            model = self.vision_model
            image = await asyncio.to_thread(self.splitter.render_page_png, page_content)
            image_url = f"data:image/png;base64,{base64.b64encode(image).decode('utf-8')}"
            prompt = self.EXTRACTION_PROMPT.format(
                page_text="[Page is an image - extract fields from the image]"
            )
            messages = [{
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }]
            logger.info(f"Page has no text layer, using {model} ({len(image)} byte image)")

        try:
            response = await asyncio.to_thread(
                self._client.chat.complete,
                model=model,
                messages=messages,
                temperature=0.1,
                max_tokens=4096,
            )
        except Exception as e:
            classified = classify_service_error(e)
            logger.error(f"LLM extraction failed with {model}: {e}")
            if classified is e:
                raise
            raise classified from e

        content = response.choices[0].message.content
        if not isinstance(content, str):
            content = "".join(getattr(chunk, "text", "") or "" for chunk in content or [])

        parsed = parse_extraction_response(content)
        return ExtractionOutput(
            data=parsed.model_dump(),
            model_name=model,
            confidence=parsed.overall_confidence,
        )

    def _mock_extraction(self, text: str) -> ExtractionOutput:
        """Return mock extraction for running without API key."""
        excerpt = " ".join(text.split())[:200]
        parsed = PageExtraction(
            fields={
                "text_excerpt": FieldValue(value=excerpt, confidence=0.9),
                "character_count": FieldValue(value=len(text), confidence=1.0),
            },
            overall_confidence=0.9 if excerpt else 0.5,
        )
        return ExtractionOutput(
            data=parsed.model_dump(),
            model_name=f"{self.model_name} (mock)",
            confidence=parsed.overall_confidence,
        )
