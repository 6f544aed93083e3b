"""Parsing and canonical mapping of LLM extraction responses.

LLM output is control data: a response without a parseable JSON object is a
hard failure (LLMResponseError), never silently replaced by an empty result.
Individual field values inside a valid object are input data and degrade
to None when malformed.
"""

import json
import logging
import re
from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from typing import Any

from services.extraction.confidence import ConfidenceWeights
from services.extraction.normalizers import DateOrder, normalize_date, parse_amount
from services.extraction.schema import ConfidenceScore, ExtractedInvoice, LineItem, VendorInfo
from services.shared.exceptions import LLMResponseError

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^\s*```[A-Za-z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")

# Canonical field name -> accepted keys in LLM output (nested and flat schemas)
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "invoice_number": ("invoice_number", "invoice_no"),
    "po_number": ("po_number", "purchase_order_number"),
    "invoice_date": ("invoice_date", "date"),
    "due_date": ("due_date",),
    "payment_terms": ("payment_terms",),
    "currency": ("currency",),
    "subtotal": ("subtotal",),
    "tax_total": ("tax_total", "tax_amount", "tax"),
    "discount": ("discount",),
    "total": ("total", "total_amount", "amount"),
}
_AMOUNT_FIELDS = ("subtotal", "tax_total", "discount", "total")
_DATE_FIELDS = ("invoice_date", "due_date")


def _find_object_span(text: str) -> str | None:
    """Return the first balanced top-level {...} span, honoring JSON strings."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def parse_llm_json(response_text: str) -> dict[str, Any]:
    """Extract and parse the JSON object from an LLM response.

    Tolerates a leading/trailing markdown code fence and prose around the
    object.

    Args:
        response_text: Raw LLM response

    Returns:
        Parsed JSON object

    Raises:
        LLMResponseError: If no parseable JSON object is found
    """
    if not response_text or not response_text.strip():
        raise LLMResponseError("empty response")

    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", response_text))
    span = _find_object_span(cleaned)
    if span is None:
        raise LLMResponseError("no JSON object found", response_text)

    try:
        parsed = json.loads(span)
    except json.JSONDecodeError as e:
        raise LLMResponseError(str(e), response_text) from e

    if not isinstance(parsed, dict):
        raise LLMResponseError("top-level JSON value is not an object", response_text)
    return parsed


def _first_present(data: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _coerce_amount(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float | Decimal):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        amount = parse_amount(value)
    else:
        return None
    if amount is None or amount < 0:
        return None
    return amount


def _coerce_date(value: Any, date_order: DateOrder) -> date | None:
    if not isinstance(value, str):
        return None
    iso = normalize_date(value.strip()[:10], date_order)
    return date.fromisoformat(iso) if iso else None


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _line_items(raw_items: Any) -> list[LineItem]:
    if not isinstance(raw_items, list):
        return []
    items: list[LineItem] = []
    for raw in raw_items:
        if not isinstance(raw, Mapping):
            continue
        amount = _coerce_amount(_first_present(raw, ("amount", "total")))
        quantity = _coerce_amount(raw.get("quantity"))
        unit_price = _coerce_amount(raw.get("unit_price"))
        if amount is None and quantity is not None and unit_price is not None:
            amount = quantity * unit_price
        items.append(
            LineItem(
                description=_coerce_text(raw.get("description")) or "",
                quantity=quantity if quantity is not None else Decimal("1"),
                unit_price=unit_price if unit_price is not None else (amount or Decimal("0")),
                amount=amount or Decimal("0"),
                tax_amount=_coerce_amount(_first_present(raw, ("tax_amount", "tax"))),
            )
        )
    return items


def _vendor(data: Mapping[str, Any]) -> VendorInfo:
    nested = data.get("vendor")
    if isinstance(nested, Mapping):
        return VendorInfo(
            name=_coerce_text(nested.get("name")),
            email=_coerce_text(nested.get("email")),
            address=_coerce_text(nested.get("address")),
            tax_id=_coerce_text(nested.get("tax_id")),
        )
    return VendorInfo(
        name=_coerce_text(_first_present(data, ("vendor_name", "supplier_name"))),
        email=_coerce_text(data.get("vendor_email")),
        address=_coerce_text(_first_present(data, ("vendor_address", "supplier_address"))),
        tax_id=_coerce_text(data.get("vendor_tax_id")),
    )


def _reported_confidence(data: Mapping[str, Any]) -> tuple[float | None, dict[str, float]]:
    raw = data.get("confidence")
    if isinstance(raw, int | float) and not isinstance(raw, bool):
        return _clamp(raw), {}
    if not isinstance(raw, Mapping):
        return None, {}
    overall = raw.get("overall")
    reported_overall = None
    if isinstance(overall, int | float) and not isinstance(overall, bool):
        reported_overall = _clamp(overall)
    per_field: dict[str, float] = {}
    fields = raw.get("fields")
    if isinstance(fields, Mapping):
        for name, score in fields.items():
            if isinstance(score, int | float) and not isinstance(score, bool):
                per_field[str(name)] = _clamp(score)
    return reported_overall, per_field


def _clamp(value: float) -> float:
    # Some models report percentages instead of fractions
    score = float(value) / 100 if value > 1 else float(value)
    return min(max(score, 0.0), 1.0)


def to_extracted_invoice(
    data: Mapping[str, Any],
    default_confidence: float = 0.8,
    date_order: DateOrder = "MDY",
    ocr_text: str | None = None,
    weights: ConfidenceWeights | None = None,
) -> ExtractedInvoice:
    """Map an LLM JSON object onto the canonical ExtractedInvoice schema.

    Accepts both the nested schema (``vendor: {...}``, line item ``total``)
    and flat keys (``vendor_name``, ``total_amount``). Every extracted field
    gets a confidence entry: the model's per-field score when reported,
    otherwise the model's overall score, otherwise ``default_confidence``.

    Args:
        data: Parsed LLM JSON object
        default_confidence: Per-field score when the model reports none
        date_order: Component order for non-ISO dates
        ocr_text: Source OCR text. When the model returns no vendor name, its
            first non-empty line is used, scored with the fallback weight.
        weights: Base confidence table for the vendor name fallback

    Returns:
        ExtractedInvoice populated from the response
    """
    reported_overall, reported_fields = _reported_confidence(data)
    base_score = reported_overall if reported_overall is not None else default_confidence

    values: dict[str, Any] = {}
    for field, aliases in _FIELD_ALIASES.items():
        raw = _first_present(data, aliases)
        if field in _AMOUNT_FIELDS:
            value: Any = _coerce_amount(raw)
        elif field in _DATE_FIELDS:
            value = _coerce_date(raw, date_order)
        else:
            value = _coerce_text(raw)
        if value is not None:
            values[field] = value

    vendor = _vendor(data)
    line_items = _line_items(data.get("line_items"))

    fallback_lines = [line.strip() for line in (ocr_text or "").splitlines() if line.strip()]
    if not vendor.name and fallback_lines:
        vendor.name = fallback_lines[0]
        reported_fields["vendor_name"] = (weights or ConfidenceWeights()).fallback("vendor_name")

    extracted = [name for name in values if name != "currency"]
    if vendor.name:
        extracted.append("vendor_name")
    if vendor.email:
        extracted.append("vendor_email")
    if line_items:
        extracted.append("line_items")

    confidence = ConfidenceScore(
        fields={name: reported_fields.get(name, base_score) for name in extracted}
    )
    if values.get("currency") and len(str(values["currency"])) != 3:
        logger.warning(f"Ignoring non ISO-4217 currency from LLM: {values['currency']!r}")
        values.pop("currency")

    return ExtractedInvoice(
        vendor=vendor,
        line_items=line_items,
        confidence=confidence,
        **values,
    )
