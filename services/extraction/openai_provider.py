"""OpenAI-based extraction provider for invoice field extraction.

Uses OpenAI API with function calling for structured data extraction from
OCR text, attaching the invoice image for vision-capable models.

Includes retry logic with exponential backoff for transient API errors.
For self-hosted inference use OllamaExtractionProvider instead.
"""

import base64
import logging
import os
from typing import Any

from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.confidence import ConfidenceWeights
from services.extraction.llm_response import parse_llm_json, to_extracted_invoice
from services.extraction.prompts import SYSTEM_PROMPT, build_extraction_prompt
from services.shared.config import Settings
from services.shared.exceptions import LLMResponseError

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)

_NULLABLE_STRING = {"type": ["string", "null"]}
_NULLABLE_NUMBER = {"type": ["number", "null"]}


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider (gpt-4o-mini by default).

    Uses OpenAI API with function calling for structured outputs.
    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'openai'
        """
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def extract_invoice_fields(
        self,
        ocr_text: str,
        image: bytes | None = None,
        mime_type: str | None = None,
    ) -> ExtractionResult:
        """Extract structured invoice data from OCR text using OpenAI.

        Args:
            ocr_text: Raw text from OCR engine
            image: Optional invoice image sent alongside the text
            mime_type: MIME type of ``image``, defaults to image/jpeg

        Returns:
            ExtractionResult with structured invoice data or error, provider='openai'
        """
        if not self.is_available():
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error="OPENAI_API_KEY environment variable not set",
                provider=self.provider_name,
            )

        if not ocr_text or not ocr_text.strip():
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error="Empty OCR text provided",
                provider=self.provider_name,
            )

        try:
            api_key = os.getenv("OPENAI_API_KEY")
            if self._client is None or self._client.api_key != api_key:
                self._client = OpenAI(api_key=api_key, timeout=self.settings.llm_timeout_seconds)

            prompt = build_extraction_prompt(
                ocr_text, with_image=image is not None, date_order=self.settings.date_order
            )
            response = self._call_openai_with_retry(
                self._build_messages(prompt, image, mime_type)
            )

            message = response.choices[0].message
            if message.function_call is None:
                return ExtractionResult(
                    invoice_data=None,
                    success=False,
                    error="No function call in API response",
                    provider=self.provider_name,
                )

            invoice_dict = parse_llm_json(message.function_call.arguments)
            invoice_data = to_extracted_invoice(
                invoice_dict,
                date_order=self.settings.date_order,
                ocr_text=ocr_text,
                weights=ConfidenceWeights.from_settings(self.settings),
            )

            return ExtractionResult(
                invoice_data=invoice_data,
                success=True,
                provider=self.provider_name,
            )

        except LLMResponseError as e:
            logger.warning(f"Failed to parse OpenAI function arguments: {e.message}")
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error=f"JSON parsing failed: {e.message}",
                provider=self.provider_name,
            )
        except APIError as e:
            logger.error(f"OpenAI extraction failed: {e}")
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error=f"Extraction failed: {str(e)}",
                provider=self.provider_name,
            )

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        wait=wait_exponential_jitter(initial=1, max=60),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_openai_with_retry(self, messages: list[dict[str, Any]]) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Retries connection failures, timeouts, rate limits and 5xx responses up
        to 3 times with exponential backoff and jitter.

        Args:
            messages: Chat messages including the extraction prompt

        Returns:
            OpenAI API response

        Raises:
            openai.APIError: After all retry attempts are exhausted
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return self._client.chat.completions.create(  # type: ignore[call-overload]
            model=self.settings.openai_model,
            messages=messages,
            functions=[self._get_invoice_schema()],
            function_call={"name": "extract_invoice_data"},
            temperature=0,  # Deterministic output
        )

    def _build_messages(
        self, prompt: str, image: bytes | None, mime_type: str | None
    ) -> list[dict[str, Any]]:
        """Build chat messages, attaching the image as a data URL when given."""
        user_content: Any = prompt
        if image is not None:
            encoded = base64.b64encode(image).decode("ascii")
            user_content = [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime_type or 'image/jpeg'};base64,{encoded}"},
                },
            ]
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]

    def _get_invoice_schema(self) -> dict[str, Any]:
        """Get OpenAI function calling schema for the canonical invoice.

        Returns:
            Function definition dict for OpenAI API
        """
        return {
            "name": "extract_invoice_data",
            "description": "Extract structured invoice data from OCR text",
            "parameters": {
                "type": "object",
                "properties": {
                    "vendor": {
                        "type": "object",
                        "properties": {
                            "name": _NULLABLE_STRING,
                            "email": _NULLABLE_STRING,
                            "address": _NULLABLE_STRING,
                            "tax_id": _NULLABLE_STRING,
                        },
                    },
                    "invoice_number": _NULLABLE_STRING,
                    "po_number": _NULLABLE_STRING,
                    "invoice_date": {"type": ["string", "null"], "format": "date"},
                    "due_date": {"type": ["string", "null"], "format": "date"},
                    "currency": _NULLABLE_STRING,
                    "payment_terms": _NULLABLE_STRING,
                    "subtotal": _NULLABLE_NUMBER,
                    "tax_total": _NULLABLE_NUMBER,
                    "discount": _NULLABLE_NUMBER,
                    "total": _NULLABLE_NUMBER,
                    "line_items": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "description": _NULLABLE_STRING,
                                "quantity": _NULLABLE_NUMBER,
                                "unit_price": _NULLABLE_NUMBER,
                                "total": _NULLABLE_NUMBER,
                            },
                        },
                    },
                    "confidence": {
                        "type": "object",
                        "properties": {
                            "overall": {"type": "number", "minimum": 0, "maximum": 1},
                            "fields": {
                                "type": "object",
                                "additionalProperties": {"type": "number"},
                            },
                        },
                    },
                },
            },
        }
