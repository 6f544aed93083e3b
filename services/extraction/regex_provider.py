"""Regex-based extraction provider.

Pattern-based fallback that pulls structured fields straight out of OCR
text without any external service. Used when no LLM provider is available,
when an LLM call fails, and as a sanity baseline for LLM output.

Each matched field gets a fixed base confidence from ConfidenceWeights; the
overall score is the mean of the recorded field confidences.
"""

import logging
import re
from datetime import date
from decimal import Decimal

from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.confidence import ConfidenceWeights
from services.extraction.normalizers import (
    DateOrder,
    detect_currency,
    normalize_date,
    parse_amount,
)
from services.extraction.schema import ConfidenceScore, ExtractedInvoice, VendorInfo
from services.shared.config import Settings

logger = logging.getLogger(__name__)

_FLAGS = re.IGNORECASE
_LABEL_END = r"[ \t]*(?:\([^)\n]*\))?[ \t]*:?\s*"
_CURRENCY = r"(?:[$€£¥]|USD|EUR|GBP)?[ \t]*"
# Digits with optional thousands groups and a 1-2 digit decimal part; rejects percentages
_AMOUNT = r"(\d+(?:(?:[.,]|[ ](?=\d{3}(?!\d)))\d{3})*(?:[.,]\d{1,2})?)(?![\d.,]*[ \t]*%)"
_DATE = r"(\d{4}[-/]\d{1,2}[-/]\d{1,2}|\d{1,2}[-/]\d{1,2}[-/]\d{2,4})"
_REFERENCE = r"([A-Z0-9-]*\d[A-Z0-9-]*)"


def _amount_pattern(labels: str) -> re.Pattern[str]:
    return re.compile(rf"\b(?:{labels})\b{_LABEL_END}{_CURRENCY}{_AMOUNT}", _FLAGS)


PATTERNS: dict[str, re.Pattern[str]] = {
    "vendor_name": re.compile(
        r"^[ \t]*(?:bill[ \t]*from|from|seller|vendor|supplier)"
        r"(?:[ \t]*:|[ \t]*(?=\n))\s*(\S[^\n]*)",
        _FLAGS | re.MULTILINE,
    ),
    "invoice_number": re.compile(
        rf"\b(?:invoice|inv)\b\.?[ \t]*(?:number|num|no\.?|#)?[ \t]*[:#]?\s*{_REFERENCE}",
        _FLAGS,
    ),
    "po_number": re.compile(
        rf"\b(?:p\.?o\b\.?|purchase[ \t]*order\b)[ \t]*(?:number|num|no\.?|#)?[ \t]*[:#]?\s*"
        rf"{_REFERENCE}",
        _FLAGS,
    ),
    "invoice_date": re.compile(
        rf"(?<!due\s)\b(?:invoice[ \t]*)?(?:date[ \t]+of[ \t]+issue|dated|date|issued)"
        rf"[ \t]*:?\s*{_DATE}",
        _FLAGS,
    ),
    "standalone_date": re.compile(rf"\b{_DATE}\b"),
    "due_date": re.compile(
        rf"\b(?:due[ \t]*date|payment[ \t]*due|date[ \t]*due|due)[ \t]*:?\s*{_DATE}",
        _FLAGS,
    ),
    "subtotal": _amount_pattern(r"sub[ \t-]*total|net[ \t]*worth|net[ \t]*amount"),
    "tax_total": re.compile(
        r"\b(?:sales[ \t]*tax|tax|vat|gst)\b(?![ \t]*(?:id|no\b|number|#|\[))"
        r"[ \t]*(?:\(?[ \t]*\d{1,2}(?:[.,]\d+)?[ \t]*%[ \t]*\)?)?"
        rf"[ \t]*:?\s*{_CURRENCY}{_AMOUNT}",
        _FLAGS,
    ),
    "vendor_email": re.compile(r"([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})"),
}

# Tried in order; the first label yielding a positive amount wins
TOTAL_PATTERNS: list[re.Pattern[str]] = [
    _amount_pattern(r"grand[ \t]*total"),
    _amount_pattern(r"total[ \t]*amount|total[ \t]*due|amount[ \t]*due|balance[ \t]*due"),
    re.compile(rf"(?<!sub-)(?<!sub )\btotal\b{_LABEL_END}{_CURRENCY}{_AMOUNT}", _FLAGS),
    _amount_pattern(r"gross[ \t]*worth"),
]


def _search_date(pattern: re.Pattern[str], text: str, date_order: DateOrder) -> date | None:
    for match in pattern.finditer(text):
        iso = normalize_date(match.group(1), date_order)
        if iso:
            return date.fromisoformat(iso)
    return None


def _search_positive_amount(pattern: re.Pattern[str], text: str) -> Decimal | None:
    match = pattern.search(text)
    if not match:
        return None
    value = parse_amount(match.group(1))
    if value is None or value <= 0:
        return None
    return value


def parse_invoice_data(
    raw_text: str | None,
    weights: ConfidenceWeights | None = None,
    date_order: DateOrder = "MDY",
) -> ExtractedInvoice:
    """Extract invoice fields from raw OCR text with regular expressions.

    Never raises for any string input. Empty text yields an invoice with all
    fields unset and an overall confidence of 0.

    Args:
        raw_text: OCR text of the whole document
        weights: Base confidence table (defaults to the built-in table)
        date_order: Component order for ambiguous dates

    Returns:
        ExtractedInvoice with per-field confidences for every recorded field
    """
    text = raw_text or ""
    weights = weights or ConfidenceWeights()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    fields: dict[str, float] = {}
    vendor = VendorInfo()
    values: dict[str, object] = {}

    vendor_match = PATTERNS["vendor_name"].search(text)
    if vendor_match:
        vendor.name = vendor_match.group(1).strip()
        fields["vendor_name"] = weights.labeled("vendor_name")
    elif lines:
        vendor.name = lines[0]
        fields["vendor_name"] = weights.fallback("vendor_name")

    for key in ("invoice_number", "po_number"):
        match = PATTERNS[key].search(text)
        if match:
            reference = match.group(1).strip("-")
            if reference:
                values[key] = reference
                fields[key] = weights.labeled(key)

    invoice_date = _search_date(PATTERNS["invoice_date"], text, date_order)
    if invoice_date:
        values["invoice_date"] = invoice_date
        fields["invoice_date"] = weights.labeled("invoice_date")
    else:
        invoice_date = _search_date(PATTERNS["standalone_date"], text, date_order)
        if invoice_date:
            values["invoice_date"] = invoice_date
            fields["invoice_date"] = weights.fallback("invoice_date")

    due_date = _search_date(PATTERNS["due_date"], text, date_order)
    if due_date:
        values["due_date"] = due_date
        fields["due_date"] = weights.labeled("due_date")

    for pattern in TOTAL_PATTERNS:
        total = _search_positive_amount(pattern, text)
        if total is not None:
            values["total"] = total
            fields["total"] = weights.labeled("total")
            break

    for key in ("subtotal", "tax_total"):
        amount = _search_positive_amount(PATTERNS[key], text)
        if amount is not None:
            values[key] = amount
            fields[key] = weights.labeled(key)

    email_match = PATTERNS["vendor_email"].search(text)
    if email_match:
        vendor.email = email_match.group(1)
        fields["vendor_email"] = weights.labeled("vendor_email")

    return ExtractedInvoice(
        vendor=vendor,
        currency=detect_currency(text),
        confidence=ConfidenceScore(fields=fields),
        **values,  # type: ignore[arg-type]
    )


class RegexExtractionProvider(ExtractionProvider):
    """Offline extraction provider backed by parse_invoice_data."""

    def __init__(self, settings: Settings) -> None:
        """Initialize regex provider.

        Args:
            settings: Application settings (date order, confidence weights)
        """
        super().__init__(settings)
        self._weights = ConfidenceWeights.from_settings(settings)

    @property
    def provider_name(self) -> str:
        return "regex"

    def is_available(self) -> bool:
        return True

    def extract_invoice_fields(
        self,
        ocr_text: str,
        image: bytes | None = None,
        mime_type: str | None = None,
    ) -> ExtractionResult:
        """Extract fields from OCR text; the image is ignored."""
        invoice = parse_invoice_data(ocr_text, self._weights, self.settings.date_order)
        logger.debug(
            f"Regex extraction recorded {len(invoice.confidence.fields)} fields "
            f"(overall={invoice.confidence.overall:.2f})"
        )
        return ExtractionResult(
            invoice_data=invoice,
            success=True,
            provider=self.provider_name,
        )
