"""Duplicate invoice detection.

Two comparators with deliberately different semantics:

- Grouping (detect_duplicates / group_duplicates): finds exact and
  near-exact copies for the duplicates review screen. Amounts must agree
  within an absolute $0.01.
- Ingest (detect_duplicate_invoice): conservative check run when a new
  invoice is analyzed. Amounts must agree within 1% of the candidate total.

Similarity scores here use a 0-100 scale and are unrelated to the 0-1
extraction confidence scale.

All inputs are read-only snapshots; nothing is cached between calls.
"""

import logging
from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from services.shared.config import Settings
from services.shared.metrics import duplicate_groups_total

logger = logging.getLogger(__name__)


class InvoiceSnapshot(BaseModel):
    """Fields of a stored invoice that duplicate detection compares."""

    id: str
    vendor_id: str | None = None
    invoice_number: str | None = None
    total: Decimal | None = None
    invoice_date: date | None = None
    raw_ocr: str | None = None


class DuplicateReason(str, Enum):
    SAME_INVOICE_NUMBER_AND_AMOUNT = "same_invoice_number_and_amount"
    SAME_VENDOR_AMOUNT_AND_DATE_WINDOW = "same_vendor_amount_and_date_window"
    OCR_TEXT_SIMILARITY = "ocr_text_similarity"


REASON_SIMILARITY: dict[DuplicateReason, int] = {
    DuplicateReason.SAME_INVOICE_NUMBER_AND_AMOUNT: 100,
    DuplicateReason.SAME_VENDOR_AMOUNT_AND_DATE_WINDOW: 90,
    DuplicateReason.OCR_TEXT_SIMILARITY: 85,
}


class DuplicateMatch(BaseModel):
    """One invoice resembling another."""

    invoice_id: str
    matched_invoice_id: str
    reason: DuplicateReason
    similarity: int = Field(ge=0, le=100)


class DuplicateGroup(BaseModel):
    """An original invoice and every invoice grouped as its duplicate."""

    original: InvoiceSnapshot
    duplicates: list[InvoiceSnapshot]
    matches: list[DuplicateMatch]
    reason: DuplicateReason
    similarity: int


class DuplicateCheckResult(BaseModel):
    """Result of the ingest-time duplicate check."""

    is_duplicate: bool
    matches: list[InvoiceSnapshot] = Field(default_factory=list)


class DuplicatePolicy(BaseModel):
    """Tolerances for both duplicate semantics.

    Attributes:
        window_days: Maximum invoice date distance
        grouping_amount_tolerance: Absolute amount tolerance for grouping
            (a pair matches only when the difference is strictly smaller)
        ingest_relative_tolerance: Fraction of the candidate total accepted
            by the ingest check
        ocr_similarity_threshold: Word overlap a pair must exceed
    """

    window_days: int = Field(90, ge=0)
    grouping_amount_tolerance: Decimal = Decimal("0.01")
    ingest_relative_tolerance: Decimal = Decimal("0.01")
    ocr_similarity_threshold: float = 0.8

    @classmethod
    def from_settings(cls, settings: Settings) -> "DuplicatePolicy":
        return cls(window_days=settings.duplicate_window_days)


def ocr_similarity(text1: str | None, text2: str | None) -> float:
    """Word-set overlap 2|A∩B| / (|A|+|B|) of two OCR texts.

    Words are lower-cased whitespace-separated tokens.

    Returns:
        Overlap in [0, 1]; 0 when either text is empty
    """
    if not text1 or not text2:
        return 0.0
    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    if not words1 or not words2:
        return 0.0
    return 2 * len(words1 & words2) / (len(words1) + len(words2))


def _within_window(first: date | None, second: date | None, window_days: int) -> bool:
    if first is None or second is None:
        return True
    return abs((first - second).days) <= window_days


def _same_amount(first: Decimal | None, second: Decimal | None, tolerance: Decimal) -> bool:
    if first is None or second is None:
        return False
    return abs(first - second) < tolerance


def compare_invoices(
    candidate: InvoiceSnapshot,
    other: InvoiceSnapshot,
    policy: DuplicatePolicy | None = None,
) -> DuplicateReason | None:
    """Classify a pair of invoices for duplicate grouping.

    Rules are evaluated in order and the first that applies wins:
    differing vendors never match; equal invoice numbers match; same vendor,
    amount and date window match (two invoices without a vendor count as the
    same vendor); otherwise OCR word overlap decides.

    Args:
        candidate: Invoice being checked
        other: Invoice it is compared against
        policy: Tolerances (defaults to DuplicatePolicy())

    Returns:
        Reason for the match, or None if the pair is not a duplicate
    """
    policy = policy or DuplicatePolicy()

    if candidate.vendor_id and other.vendor_id and candidate.vendor_id != other.vendor_id:
        return None

    if candidate.invoice_number and other.invoice_number:
        if candidate.invoice_number == other.invoice_number:
            return DuplicateReason.SAME_INVOICE_NUMBER_AND_AMOUNT

    if (
        candidate.vendor_id == other.vendor_id
        and _same_amount(candidate.total, other.total, policy.grouping_amount_tolerance)
        and _within_window(candidate.invoice_date, other.invoice_date, policy.window_days)
    ):
        return DuplicateReason.SAME_VENDOR_AMOUNT_AND_DATE_WINDOW

    if ocr_similarity(candidate.raw_ocr, other.raw_ocr) > policy.ocr_similarity_threshold:
        return DuplicateReason.OCR_TEXT_SIMILARITY

    return None


def detect_duplicates(
    candidate: InvoiceSnapshot,
    existing: list[InvoiceSnapshot],
    window_days: int = 90,
) -> list[DuplicateMatch]:
    """Find every existing invoice that the candidate duplicates.

    Args:
        candidate: Invoice being checked
        existing: Snapshot of stored invoices (the candidate itself is skipped)
        window_days: Maximum invoice date distance

    Returns:
        Matches in the order of ``existing``
    """
    policy = DuplicatePolicy(window_days=window_days)
    matches: list[DuplicateMatch] = []
    for other in existing:
        if other.id == candidate.id:
            continue
        reason = compare_invoices(candidate, other, policy)
        if reason is not None:
            matches.append(
                DuplicateMatch(
                    invoice_id=candidate.id,
                    matched_invoice_id=other.id,
                    reason=reason,
                    similarity=REASON_SIMILARITY[reason],
                )
            )
    return matches


def group_duplicates(
    invoices: list[InvoiceSnapshot],
    window_days: int = 90,
) -> list[DuplicateGroup]:
    """Group invoices into original/duplicates sets.

    Each invoice is placed in at most one group. Once an invoice has been
    grouped, as original or duplicate, it is neither a seed nor a candidate
    for later groups. A group's reason and similarity come from its first
    match.

    Args:
        invoices: All invoices to analyze, in seed order
        window_days: Maximum invoice date distance

    Returns:
        Duplicate groups in seed order
    """
    groups: list[DuplicateGroup] = []
    processed: set[str] = set()

    for invoice in invoices:
        if invoice.id in processed:
            continue

        remaining = [other for other in invoices if other.id not in processed]
        matches = detect_duplicates(invoice, remaining, window_days)
        if not matches:
            continue

        matched_ids = {match.matched_invoice_id for match in matches}
        duplicates = [other for other in remaining if other.id in matched_ids]
        first = matches[0]
        groups.append(
            DuplicateGroup(
                original=invoice,
                duplicates=duplicates,
                matches=matches,
                reason=first.reason,
                similarity=first.similarity,
            )
        )
        duplicate_groups_total.labels(reason=first.reason.value).inc()

        processed.add(invoice.id)
        processed.update(matched_ids)

    logger.info(f"Duplicate analysis found {len(groups)} groups in {len(invoices)} invoices")
    return groups


def detect_duplicate_invoice(
    candidate: InvoiceSnapshot,
    existing: list[InvoiceSnapshot],
    window_days: int = 90,
    relative_tolerance: Decimal = Decimal("0.01"),
) -> DuplicateCheckResult:
    """Ingest-time duplicate check.

    An existing invoice is a duplicate only if all of these hold:
    the vendor matches (when the candidate has one), the totals differ by at
    most ``relative_tolerance`` of the candidate total, the dates fall within
    ``window_days`` (when both are known) and the invoice numbers are equal
    or missing on either side.

    Args:
        candidate: Newly analyzed invoice
        existing: Snapshot of stored invoices (the candidate itself is skipped)
        window_days: Maximum invoice date distance
        relative_tolerance: Allowed amount difference as a fraction of the total

    Returns:
        DuplicateCheckResult with the matching invoices
    """
    matches: list[InvoiceSnapshot] = []
    for other in existing:
        if other.id == candidate.id:
            continue
        if candidate.vendor_id and candidate.vendor_id != other.vendor_id:
            continue
        if candidate.total is None or other.total is None:
            continue
        if abs(candidate.total - other.total) > candidate.total * relative_tolerance:
            continue
        if not _within_window(candidate.invoice_date, other.invoice_date, window_days):
            continue
        if (
            candidate.invoice_number
            and other.invoice_number
            and candidate.invoice_number != other.invoice_number
        ):
            continue
        matches.append(other)

    return DuplicateCheckResult(is_duplicate=bool(matches), matches=matches)
