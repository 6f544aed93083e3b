"""Excel spreadsheet adapter.

File-based accounting provider for teams without an accounting backend.
Each synced bill is appended as a row to ``invoices_<company_id>.xlsx`` in
the configured export directory. There is no OAuth and no vendor directory.

Uses openpyxl for modern Excel format support.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from zipfile import BadZipFile

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.worksheet import Worksheet

from services.accounting.base import (
    AccountingAdapter,
    BillPayload,
    BillResult,
    ConnectionMetadata,
    ConnectionState,
    ConnectionStatus,
    OAuthCredentials,
    Vendor,
    VendorPayload,
)
from services.shared.exceptions import IdempotencyConflict, SyncError

logger = logging.getLogger(__name__)

SHEET_NAME = "Invoices"
_WORKBOOK_ERRORS = (OSError, KeyError, BadZipFile, InvalidFileException)

# (header, column width)
COLUMNS: list[tuple[str, int]] = [
    ("Invoice Number", 15),
    ("Vendor ID", 25),
    ("Invoice Date", 12),
    ("Due Date", 12),
    ("Line Items", 40),
    ("Subtotal", 12),
    ("Tax", 10),
    ("Total", 12),
    ("Currency", 10),
    ("Notes", 30),
    ("Synced At", 20),
]


class ExcelAdapter(AccountingAdapter):
    """Spreadsheet implementation of AccountingAdapter."""

    provider_name = "excel"

    @property
    def file_path(self) -> Path:
        return Path(self.settings.excel_output_dir) / f"invoices_{self.company_id}.xlsx"

    def connect(self, credentials: OAuthCredentials) -> ConnectionMetadata:
        """Register the spreadsheet connection; no network call is made."""
        self.state_machine.transition(ConnectionState.CONNECTING)
        self.state_machine.transition(ConnectionState.CONNECTED)
        return ConnectionMetadata(
            provider_company_id=self.company_id,
            provider_company_name="Excel",
            metadata={"type": "excel", "file_name": self.file_path.name},
        )

    def disconnect(self) -> None:
        if self.state is not ConnectionState.DISCONNECTED:
            self.state_machine.transition(ConnectionState.DISCONNECTED)

    def refresh_token_if_needed(self) -> None:
        """Spreadsheets have no tokens."""

    def get_connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            is_connected=True,
            provider_name="Excel",
            state=self.state,
            company_name="Excel",
            needs_reconnection=False,
        )

    def get_vendors(self, query: str) -> list[Vendor]:
        return []

    def get_vendor_by_id(self, external_id: str) -> Vendor | None:
        return None

    def create_vendor(self, payload: VendorPayload) -> str:
        # The vendor name is the spreadsheet's vendor key
        return payload.name

    def update_vendor(self, external_id: str, payload: VendorPayload) -> None:
        return None

    def create_bill(self, payload: BillPayload) -> BillResult:
        """Append the bill as a row, unless its invoice number is already present.

        Raises:
            IdempotencyConflict: If a row with the same invoice number exists
            SyncError: EXCEL_ERROR when the workbook cannot be read or written
        """
        key = payload.idempotency_key
        if self.check_idempotency(key):
            raise IdempotencyConflict(key, self.provider_name)

        row = self._map_bill_payload(payload)
        try:
            workbook = self._open_workbook()
            sheet = workbook[SHEET_NAME]
            sheet.append([row[header] for header, _ in COLUMNS])
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            workbook.save(self.file_path)
        except _WORKBOOK_ERRORS as e:
            raise self._handle_provider_error(e) from e

        logger.info(f"Appended invoice {key} to {self.file_path}")
        return BillResult(
            success=True,
            bill_id=key,
            bill_url="",
            vendor_id=payload.vendor_id or "N/A",
        )

    def get_bill(self, external_bill_id: str) -> dict[str, Any] | None:
        for row in self._read_rows():
            if str(row.get("Invoice Number")) == external_bill_id:
                return row
        return None

    def attach_file(self, external_bill_id: str, file_path: Path, file_name: str) -> None:
        logger.debug(f"Excel provider does not store attachments; skipping {file_name}")

    def check_idempotency(self, idempotency_key: str) -> bool:
        return self.get_bill(idempotency_key) is not None

    def _map_bill_payload(self, payload: BillPayload) -> dict[str, Any]:
        line_summary = []
        for item in payload.line_items:
            quantity = item.quantity or 1
            unit_price = item.amount / quantity
            line_summary.append(f"{item.description} ({quantity} x ${unit_price:.2f})")

        return {
            "Invoice Number": payload.invoice_number,
            "Vendor ID": payload.vendor_id or "N/A",
            "Invoice Date": payload.invoice_date,
            "Due Date": payload.due_date or "N/A",
            "Line Items": "; ".join(line_summary),
            "Subtotal": float(payload.subtotal),
            "Tax": float(payload.tax_total),
            "Total": float(payload.total),
            "Currency": payload.currency or "USD",
            "Notes": payload.notes or "",
            "Synced At": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        }

    def _handle_provider_error(self, error: object) -> SyncError:
        return SyncError(
            code="EXCEL_ERROR",
            message=str(error) or "Excel sync error",
            is_transient=False,
        )

    def _open_workbook(self) -> Workbook:
        if self.file_path.exists():
            return load_workbook(self.file_path)

        workbook = Workbook()
        sheet = workbook.active
        sheet.title = SHEET_NAME
        self._write_header(sheet)
        return workbook

    @staticmethod
    def _write_header(sheet: Worksheet) -> None:
        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color="217346", end_color="217346", fill_type="solid")
        for col, (header, width) in enumerate(COLUMNS, 1):
            cell = sheet.cell(row=1, column=col, value=header)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center", vertical="center")
            sheet.column_dimensions[cell.column_letter].width = width

    def _read_rows(self) -> list[dict[str, Any]]:
        if not self.file_path.exists():
            return []
        try:
            workbook = load_workbook(self.file_path, read_only=True)
        except _WORKBOOK_ERRORS as e:
            raise self._handle_provider_error(e) from e

        try:
            rows = workbook[SHEET_NAME].iter_rows(values_only=True)
            header = next(rows, None)
            if header is None:
                return []
            return [dict(zip(header, row, strict=False)) for row in rows]
        except KeyError as e:
            raise self._handle_provider_error(f"Sheet {SHEET_NAME!r} missing") from e
        finally:
            workbook.close()
