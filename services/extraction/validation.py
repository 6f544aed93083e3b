"""Arithmetic consistency checks for extracted invoices.

These are validation signals shown to reviewers, never enforced at
extraction time: source documents and OCR output are often noisy.
"""

from decimal import Decimal

from pydantic import BaseModel, Field

from services.extraction.schema import ExtractedInvoice

TOTALS_TOLERANCE = Decimal("0.01")


class TotalsCheck(BaseModel):
    """Outcome of validate_totals."""

    is_valid: bool
    messages: list[str] = Field(default_factory=list)


def validate_totals(
    invoice: ExtractedInvoice, tolerance: Decimal = TOTALS_TOLERANCE
) -> TotalsCheck:
    """Check line items against the subtotal and the subtotal against the total.

    Each check only runs when the values it needs are present.

    Args:
        invoice: Extracted invoice
        tolerance: Maximum absolute difference accepted

    Returns:
        TotalsCheck listing every failed check
    """
    messages: list[str] = []

    if invoice.line_items and invoice.subtotal is not None:
        line_sum = sum((item.amount for item in invoice.line_items), Decimal("0"))
        if abs(line_sum - invoice.subtotal) > tolerance:
            messages.append(
                f"Line items sum to {line_sum}, subtotal is {invoice.subtotal}"
            )

    if invoice.subtotal is not None and invoice.total is not None:
        expected = (
            invoice.subtotal
            + (invoice.tax_total or Decimal("0"))
            - (invoice.discount or Decimal("0"))
        )
        if abs(expected - invoice.total) > tolerance:
            messages.append(
                f"Subtotal + tax - discount is {expected}, total is {invoice.total}"
            )

    return TotalsCheck(is_valid=not messages, messages=messages)
