"""Sync approved invoices to an accounting provider.

Each attempt builds a fresh BillPayload from the stored record, resolves the
vendor and calls the adapter's create_bill(). Transient SyncErrors are
retried with tenacity, waiting the provider's retry_after when it sends one.
Every attempt is written to the sync log. A failed sync never marks the
invoice as synced; the error stays on the record for the next attempt.
"""

import logging
import time
from collections.abc import Callable
from datetime import date, timedelta
from decimal import Decimal

from pydantic import BaseModel
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from services.accounting.base import (
    AccountingAdapter,
    BillLineItem,
    BillPayload,
    ProviderCredentials,
    VendorPayload,
    utcnow,
)
from services.extraction.schema import ExtractedInvoice, VendorInfo
from services.intake.records import InvoiceRecord, InvoiceRepository, InvoiceStatus, SyncLogEntry
from services.shared.config import Settings
from services.shared.exceptions import (
    IdempotencyConflict,
    InvoiceNotFoundError,
    InvoiceStatusError,
    SyncError,
    TokenExpiredError,
)
from services.shared.metrics import accounting_sync_errors_total, accounting_sync_total

logger = logging.getLogger(__name__)

DEFAULT_DUE_DAYS = 30
UNKNOWN_VENDOR = "Unknown Vendor"

_backoff = wait_exponential(multiplier=1, min=1, max=30)


def fuzzy_match(first: str, second: str) -> float:
    """Case-insensitive Levenshtein similarity.

    Args:
        first: First string
        second: Second string

    Returns:
        1 - distance / length of the longer string, in [0, 1]
    """
    longer, shorter = first.lower(), second.lower()
    if len(longer) < len(shorter):
        longer, shorter = shorter, longer
    if not longer:
        return 1.0

    previous = list(range(len(shorter) + 1))
    for i, char_long in enumerate(longer, start=1):
        current = [i]
        for j, char_short in enumerate(shorter, start=1):
            cost = 0 if char_long == char_short else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current

    return (len(longer) - previous[-1]) / len(longer)


def build_bill_payload(
    record: InvoiceRecord,
    vendor_id: str,
    today: date | None = None,
) -> BillPayload:
    """Build the canonical bill for an invoice record.

    Missing invoice number, dates and line descriptions get defaults. A
    record without line items is billed as a single line for the total.

    Args:
        record: Approved invoice record
        vendor_id: Provider vendor id the bill is raised against
        today: Reference date for default invoice and due dates

    Returns:
        BillPayload ready for an adapter
    """
    today = today or date.today()
    extracted = record.extracted or ExtractedInvoice()

    invoice_number = extracted.invoice_number or f"INV-{record.id[:8]}"
    invoice_date = extracted.invoice_date or today
    due_date = extracted.due_date or today + timedelta(days=DEFAULT_DUE_DAYS)

    lines = [
        BillLineItem(
            description=item.description or "No description",
            amount=item.amount,
            quantity=item.quantity or Decimal("1"),
        )
        for item in extracted.line_items
    ]
    line_sum = sum((line.amount for line in lines), Decimal("0"))
    total = extracted.total if extracted.total is not None else line_sum
    if not lines:
        lines = [BillLineItem(description=f"Invoice {invoice_number}", amount=total)]

    return BillPayload(
        invoice_number=invoice_number,
        invoice_date=invoice_date,
        due_date=due_date,
        vendor_id=vendor_id,
        vendor_email=extracted.vendor.email,
        line_items=lines,
        subtotal=extracted.subtotal if extracted.subtotal is not None else total,
        tax_total=extracted.tax_total or Decimal("0"),
        total=total,
        currency=extracted.currency,
        notes=f"Imported from invoice intake, invoice #{invoice_number}",
    )


def resolve_vendor(adapter: AccountingAdapter, vendor: VendorInfo, threshold: float) -> str:
    """Find the provider vendor for an invoice, creating it when none matches.

    Args:
        adapter: Connected accounting adapter
        vendor: Vendor details extracted from the invoice
        threshold: Minimum fuzzy_match score to reuse an existing vendor

    Returns:
        Provider vendor id
    """
    name = (vendor.name or "").strip() or UNKNOWN_VENDOR

    best_id, best_score = None, 0.0
    for candidate in adapter.get_vendors(name):
        score = fuzzy_match(name, candidate.name)
        if score > best_score:
            best_id, best_score = candidate.external_id or candidate.id, score

    if best_id is not None and best_score >= threshold:
        logger.debug(f"Matched vendor '{name}' to {best_id} (score={best_score:.2f})")
        return best_id

    vendor_id = adapter.create_vendor(
        VendorPayload(name=name, email=vendor.email, address=vendor.address, tax_id=vendor.tax_id)
    )
    logger.info(f"Created {adapter.provider_name} vendor {vendor_id} for '{name}'")
    return vendor_id


class SyncOutcome(BaseModel):
    """Result of sync_invoice().

    ``credentials`` holds the adapter's credentials after the sync, which may
    have been refreshed; the caller persists them on the connection.
    """

    success: bool
    bill_id: str | None = None
    bill_url: str | None = None
    error: str | None = None
    error_code: str | None = None
    is_transient: bool = False
    needs_reconnection: bool = False
    attempts: int = 0
    credentials: ProviderCredentials | None = None


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, SyncError) and error.is_transient


def _wait_for_retry(retry_state: RetryCallState) -> float:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(error, SyncError) and error.retry_after:
        return float(error.retry_after)
    return _backoff(retry_state)


def sync_invoice(
    invoice_id: str,
    adapter: AccountingAdapter,
    repository: InvoiceRepository,
    settings: Settings | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncOutcome:
    """Create a bill for an approved invoice.

    Args:
        invoice_id: Invoice to sync
        adapter: Adapter for the company's default connection
        repository: Invoice persistence
        settings: Application settings
        sleep: Wait function between retries

    Returns:
        SyncOutcome; the record is saved as synced only on success

    Raises:
        InvoiceNotFoundError: If the invoice does not exist
        InvoiceStatusError: If the invoice is not approved
    """
    settings = settings or adapter.settings
    record = repository.get(invoice_id)
    if record is None:
        raise InvoiceNotFoundError(invoice_id)
    if record.status is not InvoiceStatus.APPROVED:
        raise InvoiceStatusError(invoice_id, record.status.value, "sync")

    provider = adapter.provider_name
    retrying = Retrying(
        retry=retry_if_exception(_is_retryable),
        wait=_wait_for_retry,
        stop=stop_after_attempt(settings.sync_max_attempts),
        sleep=sleep,
        reraise=True,
    )

    attempt_number = 0
    vendor_id = record.vendor_id
    try:
        for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                try:
                    if vendor_id is None:
                        vendor_id = resolve_vendor(
                            adapter,
                            (record.extracted or ExtractedInvoice()).vendor,
                            settings.vendor_match_threshold,
                        )
                    payload = build_bill_payload(record, vendor_id)
                    result = adapter.create_bill(payload)
                except SyncError as e:
                    _record_error(repository, record, provider, attempt_number, e)
                    raise
    except IdempotencyConflict as e:
        logger.info(f"Invoice {invoice_id} already has a {provider} bill; not creating another")
        accounting_sync_total.labels(provider=provider, status="duplicate").inc()
        return _fail(repository, record, adapter, e, attempt_number)
    except SyncError as e:
        logger.error(f"Sync of invoice {invoice_id} to {provider} failed: {e}")
        accounting_sync_total.labels(provider=provider, status="failed").inc()
        return _fail(repository, record, adapter, e, attempt_number)
    except TokenExpiredError as e:
        logger.warning(f"Sync of invoice {invoice_id} needs {provider} reconnection")
        accounting_sync_total.labels(provider=provider, status="failed").inc()
        repository.add_sync_log(
            SyncLogEntry(
                invoice_id=record.id,
                provider=provider,
                status="failed",
                attempt=attempt_number,
                error_code="TOKEN_EXPIRED",
                message=e.message,
            )
        )
        record.sync_error = e.message
        repository.save(record)
        return SyncOutcome(
            success=False,
            error=e.message,
            error_code="TOKEN_EXPIRED",
            needs_reconnection=True,
            attempts=attempt_number,
            credentials=adapter.credentials,
        )

    record.status = InvoiceStatus.SYNCED
    record.vendor_id = vendor_id
    record.external_id = result.bill_id
    record.external_url = result.bill_url
    record.synced_at = utcnow()
    record.sync_error = None
    repository.save(record)
    repository.add_sync_log(
        SyncLogEntry(
            invoice_id=record.id,
            provider=provider,
            status="success",
            attempt=attempt_number,
            external_id=result.bill_id,
        )
    )
    accounting_sync_total.labels(provider=provider, status="success").inc()
    logger.info(f"Synced invoice {invoice_id} to {provider} as bill {result.bill_id}")

    return SyncOutcome(
        success=True,
        bill_id=result.bill_id,
        bill_url=result.bill_url,
        attempts=attempt_number,
        credentials=adapter.credentials,
    )


def _record_error(
    repository: InvoiceRepository,
    record: InvoiceRecord,
    provider: str,
    attempt: int,
    error: SyncError,
) -> None:
    accounting_sync_errors_total.labels(
        provider=provider, code=error.code, transient=str(error.is_transient).lower()
    ).inc()
    repository.add_sync_log(
        SyncLogEntry(
            invoice_id=record.id,
            provider=provider,
            status="duplicate" if isinstance(error, IdempotencyConflict) else "failed",
            attempt=attempt,
            error_code=error.code,
            message=error.message,
        )
    )
    if error.is_transient:
        logger.warning(f"Transient {provider} error on attempt {attempt}: {error}")


def _fail(
    repository: InvoiceRepository,
    record: InvoiceRecord,
    adapter: AccountingAdapter,
    error: SyncError,
    attempts: int,
) -> SyncOutcome:
    record.sync_error = error.message
    repository.save(record)
    return SyncOutcome(
        success=False,
        error=error.message,
        error_code=error.code,
        is_transient=error.is_transient,
        attempts=attempts,
        credentials=adapter.credentials,
    )
