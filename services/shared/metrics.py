"""Prometheus metrics for the intake pipeline and accounting sync.

Exposes key metrics for monitoring:
- OCR processing duration
- Extraction outcomes and confidence distribution
- Duplicate detection results
- Accounting sync attempts and classified errors

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram

# OCR processing metrics
ocr_processing_duration_seconds = Histogram(
    "ocr_processing_duration_seconds",
    "OCR processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

ocr_requests_total = Counter(
    "ocr_requests_total",
    "Total OCR processing requests",
    ["status"],  # success, failed
)

# Extraction metrics
extraction_requests_total = Counter(
    "extraction_requests_total",
    "Total field extraction requests",
    ["provider", "status"],  # status: success, failed, fallback
)

extraction_confidence = Histogram(
    "extraction_confidence_overall",
    "Distribution of overall extraction confidence",
    ["provider"],
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0),
)

# Duplicate detection metrics
duplicate_groups_total = Counter(
    "duplicate_groups_total",
    "Total duplicate groups reported",
    ["reason"],
)

# Accounting sync metrics
accounting_sync_total = Counter(
    "accounting_sync_total",
    "Total bill sync attempts",
    ["provider", "status"],  # success, failed, duplicate
)

accounting_sync_errors_total = Counter(
    "accounting_sync_errors_total",
    "Classified accounting provider errors",
    ["provider", "code", "transient"],
)
