"""Invoice data models for structured extraction.

One canonical schema is shared by every extraction pathway (regex fallback
and LLM providers), so downstream review and sync code never sees provider
specific shapes.
"""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field, computed_field, field_validator


class VendorInfo(BaseModel):
    """Vendor (seller) details printed on the invoice."""

    name: str | None = Field(None, description="Vendor company name")
    email: str | None = Field(None, description="Vendor contact email")
    address: str | None = Field(None, description="Vendor postal address")
    tax_id: str | None = Field(None, description="Vendor tax identifier")


class LineItem(BaseModel):
    """Single billed line."""

    description: str = Field("", description="Line description")
    quantity: Decimal = Field(Decimal("1"), description="Billed quantity")
    unit_price: Decimal = Field(Decimal("0"), description="Price per unit")
    amount: Decimal = Field(Decimal("0"), description="Line total")
    tax_amount: Decimal | None = Field(None, description="Tax charged on the line")


class ConfidenceScore(BaseModel):
    """Per-field extraction confidence with a derived overall score.

    `overall` is always the arithmetic mean of `fields` (0.0 when empty) and
    cannot be set directly.
    """

    fields: dict[str, float] = Field(default_factory=dict)

    @field_validator("fields")
    @classmethod
    def _check_range(cls, value: dict[str, float]) -> dict[str, float]:
        for name, score in value.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"Confidence for '{name}' must be within [0, 1], got {score}")
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def overall(self) -> float:
        if not self.fields:
            return 0.0
        return sum(self.fields.values()) / len(self.fields)


class ExtractedInvoice(BaseModel):
    """Structured, confidence-scored invoice record produced by extraction."""

    vendor: VendorInfo = Field(default_factory=VendorInfo)
    invoice_number: str | None = Field(None, description="Invoice identifier")
    po_number: str | None = Field(None, description="Purchase order reference")
    invoice_date: date | None = Field(None, description="Date invoice was issued")
    due_date: date | None = Field(None, description="Payment due date")
    payment_terms: str | None = Field(None, description="Payment terms, e.g. 'Net 30'")
    currency: str = Field("USD", description="Currency code (ISO 4217)")

    line_items: list[LineItem] = Field(default_factory=list)

    subtotal: Decimal | None = Field(None, ge=0, description="Subtotal before tax")
    tax_total: Decimal | None = Field(None, ge=0, description="Tax amount")
    discount: Decimal | None = Field(None, ge=0, description="Discount subtracted from total")
    total: Decimal | None = Field(None, ge=0, description="Total amount payable")

    confidence: ConfidenceScore = Field(default_factory=ConfidenceScore)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper() or "USD"
