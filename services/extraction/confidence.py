"""Confidence weights and review policy.

Base confidences for pattern matches are calibration data, not control flow:
they live in an overridable table so tuning them never touches extraction
code. Review thresholds are policy and come from Settings.
"""

from collections.abc import Mapping
from enum import Enum

from pydantic import BaseModel

from services.extraction.schema import ConfidenceScore
from services.shared.config import Settings

DEFAULT_FIELD_WEIGHTS: dict[str, float] = {
    "vendor_name": 0.7,
    "vendor_name_fallback": 0.5,
    "invoice_number": 0.85,
    "invoice_date": 0.75,
    "invoice_date_fallback": 0.65,
    "due_date": 0.75,
    "total": 0.8,
    "subtotal": 0.75,
    "tax_total": 0.75,
    "vendor_email": 0.9,
    "po_number": 0.8,
}


class ConfidenceWeights:
    """Field name to base confidence table.

    Keys ending in ``_fallback`` hold the weight for the weaker match path of
    the same field (e.g. vendor name read from the first OCR line).
    """

    def __init__(self, overrides: Mapping[str, float] | None = None) -> None:
        table = dict(DEFAULT_FIELD_WEIGHTS)
        for key, value in (overrides or {}).items():
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Confidence weight for '{key}' must be within [0, 1]")
            table[key] = value
        self._table = table

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfidenceWeights":
        return cls(settings.confidence_weights)

    def labeled(self, field: str) -> float:
        return self._table[field]

    def fallback(self, field: str) -> float:
        return self._table[f"{field}_fallback"]

    def as_dict(self) -> dict[str, float]:
        return dict(self._table)


class ConfidenceLevel(str, Enum):
    """Review bucket for an overall confidence score."""

    NEEDS_REVIEW = "needs_review"
    STANDARD = "standard"
    HIGH = "high"


class ConfidencePolicy(BaseModel):
    """Thresholds deciding how much human attention an extraction needs."""

    review_threshold: float = 0.7
    high_threshold: float = 0.9

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfidencePolicy":
        return cls(
            review_threshold=settings.review_threshold,
            high_threshold=settings.high_confidence_threshold,
        )

    def classify(self, overall: float) -> ConfidenceLevel:
        """Bucket an overall score.

        Args:
            overall: Overall confidence in [0, 1]

        Returns:
            NEEDS_REVIEW below the review threshold, HIGH at or above the high
            threshold, STANDARD otherwise
        """
        if overall >= self.high_threshold:
            return ConfidenceLevel.HIGH
        if overall < self.review_threshold:
            return ConfidenceLevel.NEEDS_REVIEW
        return ConfidenceLevel.STANDARD

    def initial_status(self, confidence: ConfidenceScore, auto_approve: bool) -> str:
        """Status an invoice enters after extraction.

        Only high-confidence extractions with auto-approval enabled skip review.
        """
        if auto_approve and self.classify(confidence.overall) is ConfidenceLevel.HIGH:
            return "approved"
        return "needs_review"
