"""Unit tests for the canonical invoice schema and confidence policy."""

import random
from decimal import Decimal

import pytest
from pydantic import ValidationError

from services.extraction.confidence import (
    DEFAULT_FIELD_WEIGHTS,
    ConfidenceLevel,
    ConfidencePolicy,
    ConfidenceWeights,
)
from services.extraction.schema import ConfidenceScore, ExtractedInvoice
from services.shared.config import Settings


class TestConfidenceScore:
    """overall is derived from the per-field scores."""

    def test_empty_fields_overall_zero(self) -> None:
        """No recorded fields means an overall confidence of 0."""
        assert ConfidenceScore().overall == 0.0

    def test_overall_is_mean_over_random_subsets(self) -> None:
        """For any subset of fields, overall equals the arithmetic mean and stays in [0, 1]."""
        rng = random.Random(42)
        names = list(DEFAULT_FIELD_WEIGHTS)
        for _ in range(200):
            subset = rng.sample(names, rng.randint(0, len(names)))
            fields = {name: rng.random() for name in subset}

            score = ConfidenceScore(fields=fields)

            expected = sum(fields.values()) / len(fields) if fields else 0.0
            assert score.overall == pytest.approx(expected)
            assert 0.0 <= score.overall <= 1.0

    def test_out_of_range_field_rejected(self) -> None:
        """Per-field scores must lie within [0, 1]."""
        with pytest.raises(ValidationError):
            ConfidenceScore(fields={"total": 1.2})

    def test_overall_serialized(self) -> None:
        """The computed overall is part of the serialized model."""
        dumped = ConfidenceScore(fields={"total": 0.8, "subtotal": 0.6}).model_dump()

        assert dumped["overall"] == pytest.approx(0.7)


class TestExtractedInvoice:
    """Canonical invoice model validation."""

    def test_defaults(self) -> None:
        """A bare invoice has no fields and USD currency."""
        invoice = ExtractedInvoice()

        assert invoice.vendor.name is None
        assert invoice.line_items == []
        assert invoice.currency == "USD"
        assert invoice.confidence.overall == 0.0

    def test_currency_uppercased(self) -> None:
        """Currency codes are normalized to upper case."""
        assert ExtractedInvoice(currency=" eur ").currency == "EUR"

    def test_negative_total_rejected(self) -> None:
        """Amounts cannot be negative."""
        with pytest.raises(ValidationError):
            ExtractedInvoice(total=Decimal("-1"))


class TestConfidencePolicy:
    """Review buckets and initial invoice status."""

    @pytest.fixture
    def policy(self) -> ConfidencePolicy:
        return ConfidencePolicy()

    @pytest.mark.parametrize(
        ("overall", "level"),
        [
            (0.0, ConfidenceLevel.NEEDS_REVIEW),
            (0.69, ConfidenceLevel.NEEDS_REVIEW),
            (0.7, ConfidenceLevel.STANDARD),
            (0.89, ConfidenceLevel.STANDARD),
            (0.9, ConfidenceLevel.HIGH),
            (1.0, ConfidenceLevel.HIGH),
        ],
    )
    def test_classify(
        self, policy: ConfidencePolicy, overall: float, level: ConfidenceLevel
    ) -> None:
        """Below 0.7 needs review; 0.9 and above is high confidence."""
        assert policy.classify(overall) is level

    def test_initial_status_without_auto_approve(self, policy: ConfidencePolicy) -> None:
        """Every extraction goes to review unless auto approval is enabled."""
        confidence = ConfidenceScore(fields={"total": 0.95})

        assert policy.initial_status(confidence, auto_approve=False) == "needs_review"

    def test_initial_status_auto_approves_high(self, policy: ConfidencePolicy) -> None:
        """High-confidence extractions skip review when auto approval is enabled."""
        high = ConfidenceScore(fields={"total": 0.95})
        standard = ConfidenceScore(fields={"total": 0.8})

        assert policy.initial_status(high, auto_approve=True) == "approved"
        assert policy.initial_status(standard, auto_approve=True) == "needs_review"

    def test_thresholds_from_settings(self) -> None:
        """Thresholds are configuration, not constants."""
        settings = Settings(_env_file=None, review_threshold=0.5, high_confidence_threshold=0.8)

        policy = ConfidencePolicy.from_settings(settings)

        assert policy.classify(0.6) is ConfidenceLevel.STANDARD
        assert policy.classify(0.8) is ConfidenceLevel.HIGH


def test_weights_table_matches_defaults() -> None:
    """Labeled and fallback lookups read the base confidence table."""
    weights = ConfidenceWeights()

    assert weights.labeled("invoice_number") == 0.85
    assert weights.fallback("vendor_name") == 0.5
    assert weights.fallback("invoice_date") == 0.65
    assert weights.as_dict() == DEFAULT_FIELD_WEIGHTS
