"""Ollama-based extraction provider for self-hosted LLM inference.

Uses local Ollama server for structured data extraction from OCR text and,
with vision models, the invoice image itself. Runs entirely on-premises.

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import base64
import logging

import httpx
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


class OllamaExtractionProvider(ExtractionProvider):
    """Ollama-based extraction provider for self-hosted LLM inference.

    Uses local Ollama server running on localhost:11434.
    Supports models like Qwen2.5, Llama3, Mistral, and vision models
    (llava, qwen2.5vl) when an image is passed.
    """

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        """Initialize Ollama extraction provider.

        Args:
            settings: Application settings
            client: Optional preconfigured HTTP client (tests inject a mock transport)
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._model = settings.ollama_model
        self._client = client or httpx.Client(timeout=settings.llm_timeout_seconds)

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'ollama'
        """
        return "ollama"

    def is_available(self) -> bool:
        """Check if Ollama server is running and model is available.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = self._client.get(f"{self._base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except (httpx.HTTPError, ValueError):
            return False

    def extract_invoice_fields(
        self,
        ocr_text: str,
        image: bytes | None = None,
        mime_type: str | None = None,
    ) -> ExtractionResult:
        """Extract structured invoice data from OCR text using Ollama.

        Args:
            ocr_text: Raw text from OCR engine
            image: Optional invoice image for vision models
            mime_type: MIME type of ``image`` (unused by Ollama)

        Returns:
            ExtractionResult with structured invoice data or error
        """
        if not ocr_text or not ocr_text.strip():
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error="Empty OCR text provided",
                provider=self.provider_name,
            )

        try:
            prompt = build_extraction_prompt(
                ocr_text, with_image=image is not None, date_order=self.settings.date_order
            )
            response_text = self._call_ollama_with_retry(prompt, image)
            invoice_dict = parse_llm_json(response_text)
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
            logger.warning(f"Failed to parse JSON from Ollama response: {e.message}")
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error=f"JSON parsing failed: {e.message}",
                provider=self.provider_name,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Ollama request timed out after {self.settings.llm_timeout_seconds}s")
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error=f"Extraction timed out: {str(e)}",
                provider=self.provider_name,
            )
        except httpx.HTTPError as e:
            logger.error(f"Ollama extraction failed: {e}")
            return ExtractionResult(
                invoice_data=None,
                success=False,
                error=f"Extraction failed: {str(e)}",
                provider=self.provider_name,
            )

    @retry(
        retry=retry_if_exception_type(httpx.HTTPError),
        wait=wait_exponential_jitter(initial=1, max=30),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_ollama_with_retry(self, prompt: str, image: bytes | None = None) -> str:
        """Call Ollama API with retry logic for transient errors.

        Args:
            prompt: Extraction prompt for the LLM
            image: Optional raw image bytes, sent base64-encoded

        Returns:
            Raw response text from Ollama

        Raises:
            httpx.HTTPError: After all retry attempts exhausted
            LLMResponseError: If the server answers with something other than a JSON object
        """
        body: dict[str, object] = {
            "model": self._model,
            "system": SYSTEM_PROMPT,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": 0,  # Deterministic output
                "num_predict": 2048,
            },
        }
        if image is not None:
            body["images"] = [base64.b64encode(image).decode("ascii")]

        response = self._client.post(f"{self._base_url}/api/generate", json=body)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise LLMResponseError("Ollama returned a non-JSON body", response.text) from e
        if not isinstance(payload, dict):
            raise LLMResponseError("Ollama returned an unexpected body", response.text)
        result: str = payload.get("response", "")
        return result
