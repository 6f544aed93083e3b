"""Unit tests for the regex extraction fallback.

Tests cover:
- Field extraction and base confidences
- Label vs fallback paths for vendor name and invoice date
- Positive-only amount recording
- Never raising on arbitrary input
"""

import random
import string
from datetime import date
from decimal import Decimal

import pytest

from services.extraction.confidence import ConfidenceWeights
from services.extraction.regex_provider import RegexExtractionProvider, parse_invoice_data
from services.extraction.schema import ExtractedInvoice
from services.shared.config import Settings

SAMPLE_INVOICE = """From: Acme Supplies Ltd
Invoice Number: INV-2024-001
PO Number: PO-7788
Invoice Date: 03/15/2024
Due Date: 04/14/2024
Subtotal: $1,000.00
Tax (8%): $80.00
Total: $1,080.00
billing@acme.example.com
"""


class TestParseInvoiceData:
    """Field-by-field extraction from a complete invoice."""

    @pytest.fixture
    def invoice(self) -> ExtractedInvoice:
        return parse_invoice_data(SAMPLE_INVOICE)

    def test_identifiers(self, invoice: ExtractedInvoice) -> None:
        """Invoice and PO numbers are read from their labels."""
        assert invoice.invoice_number == "INV-2024-001"
        assert invoice.po_number == "PO-7788"

    def test_vendor(self, invoice: ExtractedInvoice) -> None:
        """Vendor name comes from the From label; email from anywhere in the text."""
        assert invoice.vendor.name == "Acme Supplies Ltd"
        assert invoice.vendor.email == "billing@acme.example.com"
        assert invoice.confidence.fields["vendor_name"] == 0.7

    def test_dates(self, invoice: ExtractedInvoice) -> None:
        """Labeled invoice and due dates are normalized."""
        assert invoice.invoice_date == date(2024, 3, 15)
        assert invoice.due_date == date(2024, 4, 14)
        assert invoice.confidence.fields["invoice_date"] == 0.75

    def test_amounts(self, invoice: ExtractedInvoice) -> None:
        """Subtotal is not mistaken for total; the tax rate is not mistaken for tax."""
        assert invoice.subtotal == Decimal("1000.00")
        assert invoice.tax_total == Decimal("80.00")
        assert invoice.total == Decimal("1080.00")
        assert invoice.currency == "USD"

    def test_overall_is_mean_of_fields(self, invoice: ExtractedInvoice) -> None:
        """Overall confidence is the mean of the nine recorded fields."""
        fields = invoice.confidence.fields
        assert len(fields) == 9
        assert invoice.confidence.overall == pytest.approx(7.05 / 9)


def test_vendor_and_date_fallbacks() -> None:
    """First line and standalone dates are used with lower confidence."""
    invoice = parse_invoice_data("Globex Corporation\n2024-01-05\nTotal 50.00")

    assert invoice.vendor.name == "Globex Corporation"
    assert invoice.confidence.fields["vendor_name"] == 0.5
    assert invoice.invoice_date == date(2024, 1, 5)
    assert invoice.confidence.fields["invoice_date"] == 0.65
    assert invoice.total == Decimal("50.00")


def test_zero_total_not_recorded() -> None:
    """A zero amount counts as not found rather than as zero."""
    invoice = parse_invoice_data("Vendor: Initech\nTotal: $0.00")

    assert invoice.total is None
    assert "total" not in invoice.confidence.fields


def test_european_total() -> None:
    """European separators in a labeled total are parsed."""
    invoice = parse_invoice_data("Vendor: Muster GmbH\nTotal: 1.234,56 €")

    assert invoice.total == Decimal("1234.56")
    assert invoice.currency == "EUR"


def test_date_order_applies_to_ambiguous_dates() -> None:
    """DMY order reads 05/03/2024 as March 5th."""
    invoice = parse_invoice_data("Invoice Date: 05/03/2024", date_order="DMY")

    assert invoice.invoice_date == date(2024, 3, 5)


def test_weight_overrides() -> None:
    """Overridden weights replace the built-in confidence table."""
    weights = ConfidenceWeights({"total": 0.95})

    invoice = parse_invoice_data("Total: $10.00", weights=weights)

    assert invoice.confidence.fields["total"] == 0.95


def test_weight_override_out_of_range() -> None:
    """Weights outside [0, 1] are rejected."""
    with pytest.raises(ValueError, match="within"):
        ConfidenceWeights({"total": 1.5})


@pytest.mark.parametrize("text", ["", None, "   \n\t  "])
def test_empty_text_yields_empty_invoice(text: str | None) -> None:
    """Empty input yields all fields unset and an overall confidence of 0."""
    invoice = parse_invoice_data(text)

    assert invoice.invoice_number is None
    assert invoice.total is None
    assert invoice.vendor.name is None
    assert invoice.confidence.fields == {}
    assert invoice.confidence.overall == 0.0


def test_never_raises_on_arbitrary_text() -> None:
    """Random printable and unicode input never raises and keeps overall within [0, 1]."""
    rng = random.Random(1234)
    alphabet = string.printable + "€£¥₹ÄÖÜßçé–— "
    for _ in range(300):
        text = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 200)))
        invoice = parse_invoice_data(text)
        assert 0.0 <= invoice.confidence.overall <= 1.0


class TestRegexExtractionProvider:
    """Provider wrapper around parse_invoice_data."""

    def test_provider_metadata(self) -> None:
        """The regex provider is always available."""
        provider = RegexExtractionProvider(Settings(_env_file=None))

        assert provider.provider_name == "regex"
        assert provider.is_available() is True

    def test_extract_uses_settings(self) -> None:
        """Date order and weight overrides come from settings."""
        settings = Settings(_env_file=None, date_order="DMY", confidence_weights={"total": 0.9})
        provider = RegexExtractionProvider(settings)

        result = provider.extract_invoice_fields("Invoice Date: 05/03/2024\nTotal: $10.00")

        assert result.success is True
        assert result.provider == "regex"
        assert result.invoice_data is not None
        assert result.invoice_data.invoice_date == date(2024, 3, 5)
        assert result.invoice_data.confidence.fields["total"] == 0.9

    def test_empty_text_succeeds(self) -> None:
        """Empty text is not an error for the fallback extractor."""
        provider = RegexExtractionProvider(Settings(_env_file=None))

        result = provider.extract_invoice_fields("")

        assert result.success is True
        assert result.invoice_data is not None
        assert result.invoice_data.confidence.overall == 0.0
