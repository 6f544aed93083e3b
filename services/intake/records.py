"""Invoice records and their repository.

The repository is the durability boundary between the two pipeline phases:
OCR text must be saved before analysis reads it back.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field

from services.accounting.base import utcnow
from services.duplicates.detector import InvoiceSnapshot
from services.extraction.schema import ExtractedInvoice


class InvoiceStatus(str, Enum):
    INBOX = "inbox"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    SYNCED = "synced"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class InvoiceRecord(BaseModel):
    """Persisted invoice with its OCR text, extraction result and sync state."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    company_id: str
    vendor_id: str | None = None
    status: InvoiceStatus = InvoiceStatus.INBOX

    attachment_path: str | None = None
    mime_type: str | None = None

    raw_ocr: str | None = None
    ocr_confidence: float | None = None

    extracted: ExtractedInvoice | None = None
    extraction_provider: str | None = None
    extraction_error: str | None = None
    duplicate_of: list[str] = Field(default_factory=list)

    sync_error: str | None = None
    external_id: str | None = None
    external_url: str | None = None
    synced_at: datetime | None = None

    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_snapshot(self) -> InvoiceSnapshot:
        """Fields compared by duplicate detection."""
        extracted = self.extracted or ExtractedInvoice()
        return InvoiceSnapshot(
            id=self.id,
            vendor_id=self.vendor_id,
            invoice_number=extracted.invoice_number,
            total=extracted.total,
            invoice_date=extracted.invoice_date,
            raw_ocr=self.raw_ocr,
        )


class SyncLogEntry(BaseModel):
    """One accounting sync attempt."""

    invoice_id: str
    provider: str
    status: str  # success, failed, duplicate
    attempt: int = 1
    error_code: str | None = None
    message: str | None = None
    external_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class InvoiceRepository(Protocol):
    def get(self, invoice_id: str) -> InvoiceRecord | None: ...

    def save(self, record: InvoiceRecord) -> None: ...

    def list_invoices(self, company_id: str | None = None) -> list[InvoiceRecord]: ...

    def add_sync_log(self, entry: SyncLogEntry) -> None: ...

    def sync_logs(self, invoice_id: str) -> list[SyncLogEntry]: ...


class InMemoryInvoiceRepository:
    """Process-local repository.

    Stores deep copies so callers only see changes they explicitly save.
    """

    def __init__(self) -> None:
        self._records: dict[str, InvoiceRecord] = {}
        self._sync_logs: list[SyncLogEntry] = []

    def get(self, invoice_id: str) -> InvoiceRecord | None:
        record = self._records.get(invoice_id)
        return record.model_copy(deep=True) if record else None

    def save(self, record: InvoiceRecord) -> None:
        record.updated_at = utcnow()
        self._records[record.id] = record.model_copy(deep=True)

    def list_invoices(self, company_id: str | None = None) -> list[InvoiceRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if company_id is None or record.company_id == company_id
        ]

    def add_sync_log(self, entry: SyncLogEntry) -> None:
        self._sync_logs.append(entry)

    def sync_logs(self, invoice_id: str) -> list[SyncLogEntry]:
        return [entry for entry in self._sync_logs if entry.invoice_id == invoice_id]
