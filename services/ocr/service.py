"""OCR service using Tesseract.

Turns an invoice image into raw text plus a mean word confidence. The text
is persisted as phase one of the intake pipeline and is the only input to
the extraction phase.

Based on pytesseract documentation:
https://github.com/madmaze/pytesseract
"""

import io
import logging
import os
from pathlib import Path

import pytesseract
from PIL import Image
from pydantic import BaseModel

from services.shared.config import Settings

logger = logging.getLogger(__name__)


class OCRResult(BaseModel):
    """Result of OCR operation.

    Attributes:
        text: Extracted text content
        success: Whether operation succeeded
        error: Error message if operation failed
        confidence: Mean word confidence in [0, 1], None if unavailable
    """

    text: str
    success: bool
    error: str | None = None
    confidence: float | None = None


class OCRService:
    """OCR service using Tesseract engine.

    Handles text extraction from images with proper error handling
    and configuration management.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OCR service.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self._configure_tesseract()

    def _configure_tesseract(self) -> None:
        """Configure Tesseract command path from environment.

        Allows overriding default Tesseract path via TESSERACT_CMD environment variable.
        Common paths:
        - Linux: /usr/bin/tesseract
        - macOS: /opt/homebrew/bin/tesseract or /usr/local/bin/tesseract
        """
        tesseract_cmd = os.getenv("TESSERACT_CMD")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def extract_text(self, image_path: Path) -> OCRResult:
        """Extract text from image file.

        Args:
            image_path: Path to image file

        Returns:
            OCRResult with extracted text or error information
        """
        if not image_path.exists():
            return OCRResult(text="", success=False, error=f"Image file not found: {image_path}")

        try:
            with Image.open(image_path) as image:
                return self._recognize(image)
        except OSError as e:
            return OCRResult(text="", success=False, error=f"OCR processing failed: {str(e)}")

    def extract_text_from_bytes(self, data: bytes) -> OCRResult:
        """Extract text from an in-memory image payload.

        Args:
            data: Encoded image bytes (PNG, JPEG, TIFF)

        Returns:
            OCRResult with extracted text or error information
        """
        try:
            with Image.open(io.BytesIO(data)) as image:
                return self._recognize(image)
        except OSError as e:
            return OCRResult(text="", success=False, error=f"OCR processing failed: {str(e)}")

    def _recognize(self, image: Image.Image) -> OCRResult:
        timeout = self.settings.ocr_timeout_seconds
        try:
            text = pytesseract.image_to_string(image, timeout=timeout)
            data = pytesseract.image_to_data(
                image, output_type=pytesseract.Output.DICT, timeout=timeout
            )
        except RuntimeError as e:
            # pytesseract raises RuntimeError on timeout, TesseractError on engine failure
            logger.error(f"Tesseract failed: {e}")
            return OCRResult(text="", success=False, error=f"OCR processing failed: {str(e)}")

        return OCRResult(text=text, success=True, confidence=_mean_confidence(data))


def _mean_confidence(data: dict[str, list[object]]) -> float | None:
    """Average the per-word confidences Tesseract reports (0-100, -1 for non-words)."""
    scores: list[float] = []
    for raw, word in zip(data.get("conf", []), data.get("text", []), strict=False):
        try:
            score = float(str(raw))
        except ValueError:
            continue
        if score >= 0 and str(word).strip():
            scores.append(score)
    if not scores:
        return None
    return round(sum(scores) / len(scores) / 100, 4)
