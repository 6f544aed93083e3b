"""Two-phase invoice intake pipeline.

Phase 1 (run_ocr) turns the attachment into raw text and persists it.
Phase 2 (analyze) reads only that persisted text, structures it with the
configured extraction provider and scores it. Analysis never runs on text
that has not been saved.

A failed extraction never blocks review: LLM failures fall back to the
regex extractor, the error is kept on the record, and whatever was
recovered is saved with its confidence.
"""

import logging
from pathlib import Path

from services.accounting.base import utcnow
from services.duplicates.detector import DuplicatePolicy, detect_duplicate_invoice
from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.confidence import ConfidencePolicy
from services.extraction.factory import create_extraction_service
from services.extraction.regex_provider import RegexExtractionProvider
from services.extraction.schema import ExtractedInvoice
from services.intake.records import InvoiceRecord, InvoiceRepository, InvoiceStatus
from services.ocr.service import OCRService
from services.shared.config import Settings
from services.shared.exceptions import (
    InvoiceNotFoundError,
    InvoiceStatusError,
    PipelineOrderError,
)
from services.shared.metrics import (
    extraction_confidence,
    extraction_requests_total,
    ocr_processing_duration_seconds,
    ocr_requests_total,
)

logger = logging.getLogger(__name__)

_REVIEWABLE = frozenset({InvoiceStatus.NEEDS_REVIEW, InvoiceStatus.DUPLICATE})


class IntakePipeline:
    """Orchestrates OCR, extraction, scoring, duplicate checks and review."""

    def __init__(
        self,
        settings: Settings,
        repository: InvoiceRepository,
        ocr_service: OCRService | None = None,
        provider: ExtractionProvider | None = None,
    ) -> None:
        """Initialize pipeline.

        Args:
            settings: Application settings
            repository: Invoice persistence
            ocr_service: OCR collaborator (defaults to Tesseract)
            provider: Extraction provider (defaults to settings.extraction_provider)
        """
        self.settings = settings
        self.repository = repository
        self.ocr_service = ocr_service or OCRService(settings)
        self.provider = provider or create_extraction_service(settings)
        self.fallback = RegexExtractionProvider(settings)
        self.confidence_policy = ConfidencePolicy.from_settings(settings)
        self.duplicate_policy = DuplicatePolicy.from_settings(settings)

    def create_invoice(
        self,
        company_id: str,
        attachment_path: Path | None = None,
        mime_type: str | None = None,
    ) -> InvoiceRecord:
        """Register an uploaded document in the inbox."""
        record = InvoiceRecord(
            company_id=company_id,
            attachment_path=str(attachment_path) if attachment_path else None,
            mime_type=mime_type,
        )
        self.repository.save(record)
        return record

    # =========================================================================
    # PHASE 1
    # =========================================================================

    def run_ocr(self, invoice_id: str, image_path: Path | None = None) -> InvoiceRecord:
        """Extract and persist the raw text of an invoice.

        Args:
            invoice_id: Invoice to process
            image_path: Image to read (defaults to the record's attachment)

        Returns:
            Saved record in needs_review status
        """
        record = self._get(invoice_id)
        path = image_path or (Path(record.attachment_path) if record.attachment_path else None)
        if path is None:
            raise InvoiceStatusError(invoice_id, record.status.value, "run OCR without attachment")

        with ocr_processing_duration_seconds.time():
            result = self.ocr_service.extract_text(path)

        if result.success:
            ocr_requests_total.labels(status="success").inc()
            record.raw_ocr = result.text
            record.ocr_confidence = result.confidence
        else:
            ocr_requests_total.labels(status="failed").inc()
            logger.warning(f"OCR failed for invoice {invoice_id}: {result.error}")
            record.extraction_error = result.error

        record.attachment_path = str(path)
        record.status = InvoiceStatus.NEEDS_REVIEW
        self.repository.save(record)
        return record

    # =========================================================================
    # PHASE 2
    # =========================================================================

    def analyze(self, invoice_id: str) -> InvoiceRecord:
        """Structure the persisted OCR text and score the result.

        Args:
            invoice_id: Invoice whose OCR text has been saved

        Returns:
            Saved record in needs_review, approved or duplicate status

        Raises:
            PipelineOrderError: If no OCR text has been persisted yet
        """
        record = self._get(invoice_id)
        if not record.raw_ocr or not record.raw_ocr.strip():
            raise PipelineOrderError(invoice_id)

        image, mime_type = self._load_image(record)
        result = self.provider.extract_invoice_fields(record.raw_ocr, image, mime_type)
        invoice = self._resolve_result(record, result)

        record.extracted = invoice
        extraction_confidence.labels(provider=record.extraction_provider or "unknown").observe(
            invoice.confidence.overall
        )

        status = self.confidence_policy.initial_status(
            invoice.confidence, self.settings.auto_approve_high_confidence
        )
        record.status = InvoiceStatus(status)

        others = [
            other.to_snapshot()
            for other in self.repository.list_invoices(record.company_id)
            if other.id != record.id and other.status is not InvoiceStatus.REJECTED
        ]
        check = detect_duplicate_invoice(
            record.to_snapshot(),
            others,
            window_days=self.duplicate_policy.window_days,
            relative_tolerance=self.duplicate_policy.ingest_relative_tolerance,
        )
        record.duplicate_of = [match.id for match in check.matches]
        if check.is_duplicate:
            logger.info(f"Invoice {invoice_id} duplicates {record.duplicate_of}")
            record.status = InvoiceStatus.DUPLICATE

        self.repository.save(record)
        logger.info(
            f"Analyzed invoice {invoice_id} with {record.extraction_provider} "
            f"(confidence={invoice.confidence.overall:.2f}, status={record.status.value})"
        )
        return record

    def _resolve_result(self, record: InvoiceRecord, result: ExtractionResult) -> ExtractedInvoice:
        if result.success and result.invoice_data is not None:
            extraction_requests_total.labels(provider=result.provider, status="success").inc()
            record.extraction_provider = result.provider
            record.extraction_error = None
            return result.invoice_data

        extraction_requests_total.labels(provider=result.provider, status="failed").inc()
        logger.warning(
            f"Extraction with {result.provider} failed for invoice {record.id}: {result.error}; "
            f"falling back to regex"
        )
        record.extraction_error = result.error

        fallback = self.fallback.extract_invoice_fields(record.raw_ocr or "")
        extraction_requests_total.labels(provider=fallback.provider, status="fallback").inc()
        record.extraction_provider = fallback.provider
        return fallback.invoice_data or ExtractedInvoice()

    def _load_image(self, record: InvoiceRecord) -> tuple[bytes | None, str | None]:
        if not record.attachment_path or not (record.mime_type or "").startswith("image/"):
            return None, None
        path = Path(record.attachment_path)
        if not path.exists():
            return None, None
        return path.read_bytes(), record.mime_type

    # =========================================================================
    # REVIEW
    # =========================================================================

    def approve(self, invoice_id: str, reviewer: str) -> InvoiceRecord:
        """Approve a reviewed invoice for accounting sync.

        Raises:
            InvoiceStatusError: Unless the invoice is awaiting review or flagged duplicate
        """
        return self._review(invoice_id, reviewer, InvoiceStatus.APPROVED, "approve")

    def reject(self, invoice_id: str, reviewer: str) -> InvoiceRecord:
        return self._review(invoice_id, reviewer, InvoiceStatus.REJECTED, "reject")

    def _review(
        self, invoice_id: str, reviewer: str, target: InvoiceStatus, operation: str
    ) -> InvoiceRecord:
        record = self._get(invoice_id)
        if record.status not in _REVIEWABLE:
            raise InvoiceStatusError(invoice_id, record.status.value, operation)
        record.status = target
        record.reviewed_by = reviewer
        record.reviewed_at = utcnow()
        self.repository.save(record)
        return record

    def _get(self, invoice_id: str) -> InvoiceRecord:
        record = self.repository.get(invoice_id)
        if record is None:
            raise InvoiceNotFoundError(invoice_id)
        return record
