#!/usr/bin/env python3
"""Extract structured invoice data from OCR text files or invoice images.

Text files (.txt) are read as OCR output; anything else is run through
Tesseract first. Results are printed as JSON, optionally followed by the
duplicate groups found across the inputs.

Usage:
    python scripts/extract_invoice.py invoices/*.png
    python scripts/extract_invoice.py --provider ollama --duplicates scans/*.txt

Requirements:
    - Tesseract installed for image inputs
    - OPENAI_API_KEY set for --provider openai
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from services.duplicates.detector import InvoiceSnapshot, group_duplicates
from services.extraction.factory import ProviderRegistry, create_extraction_service
from services.extraction.validation import validate_totals
from services.ocr.service import OCRService
from services.shared.config import Settings, configure_logging

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".text"}


def read_ocr_text(path: Path, ocr: OCRService) -> str | None:
    """Return the OCR text of a file, or None if OCR failed."""
    if path.suffix.lower() in TEXT_SUFFIXES:
        return path.read_text(encoding="utf-8")
    result = ocr.extract_text(path)
    if not result.success:
        logger.error(f"OCR failed for {path}: {result.error}")
        return None
    return result.text


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Extract invoice fields from files")
    parser.add_argument("paths", type=Path, nargs="+", help="Invoice images or OCR text files")
    parser.add_argument(
        "--provider",
        choices=ProviderRegistry.list_providers(),
        default=None,
        help="Extraction provider (defaults to APP_EXTRACTION_PROVIDER)",
    )
    parser.add_argument(
        "--date-order",
        choices=["MDY", "DMY"],
        default=None,
        help="Order of ambiguous numeric dates (defaults to APP_DATE_ORDER)",
    )
    parser.add_argument(
        "--duplicates",
        action="store_true",
        help="Also group the inputs into duplicate sets",
    )
    args = parser.parse_args(argv)

    overrides = {}
    if args.provider:
        overrides["extraction_provider"] = args.provider
    if args.date_order:
        overrides["date_order"] = args.date_order
    settings = Settings(**overrides)
    configure_logging(settings)

    ocr = OCRService(settings)
    provider = create_extraction_service(settings)

    results = []
    snapshots = []
    failures = 0
    for path in args.paths:
        text = read_ocr_text(path, ocr)
        if text is None:
            failures += 1
            continue

        result = provider.extract_invoice_fields(text)
        if not result.success or result.invoice_data is None:
            logger.error(f"Extraction failed for {path}: {result.error}")
            failures += 1
            continue

        invoice = result.invoice_data
        totals = validate_totals(invoice)
        results.append(
            {
                "file": str(path),
                "provider": result.provider,
                "invoice": invoice.model_dump(mode="json"),
                "totals_valid": totals.is_valid,
                "totals_messages": totals.messages,
            }
        )
        snapshots.append(
            InvoiceSnapshot(
                id=str(path),
                invoice_number=invoice.invoice_number,
                total=invoice.total,
                invoice_date=invoice.invoice_date,
                raw_ocr=text,
            )
        )

    output: dict = {"invoices": results}
    if args.duplicates:
        groups = group_duplicates(snapshots, settings.duplicate_window_days)
        output["duplicate_groups"] = [
            {
                "original": group.original.id,
                "duplicates": [duplicate.id for duplicate in group.duplicates],
                "reason": group.reason.value,
                "similarity": group.similarity,
            }
            for group in groups
        ]

    print(json.dumps(output, indent=2))
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
