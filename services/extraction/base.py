"""Abstract base class for extraction providers.

Enables switching between the offline regex extractor and LLM providers
(Ollama, OpenAI) while keeping one result type and one invoice schema.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from services.extraction.schema import ExtractedInvoice
from services.shared.config import Settings


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        invoice_data: Extracted invoice data or None if extraction failed
        success: Whether operation succeeded
        error: Error message if operation failed
        provider: Name of provider that performed extraction (e.g., 'regex', 'ollama')
    """

    invoice_data: ExtractedInvoice | None
    success: bool
    error: str | None = None
    provider: str


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    All extraction providers must implement this interface. Providers never
    raise for malformed OCR text; failures are reported through
    ExtractionResult.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract_invoice_fields(
        self,
        ocr_text: str,
        image: bytes | None = None,
        mime_type: str | None = None,
    ) -> ExtractionResult:
        """Extract structured invoice data from OCR text.

        Args:
            ocr_text: Raw text from OCR engine
            image: Optional source image for vision-capable providers
            mime_type: MIME type of ``image``

        Returns:
            ExtractionResult with structured invoice data or error
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics (e.g., 'regex', 'ollama')."""
