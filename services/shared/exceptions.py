"""Exception taxonomy for the invoice intake service.

Exception Hierarchy:
    InvoiceIntakeError (base)
    ├── ExtractionError
    │   ├── LLMResponseError
    │   └── PipelineOrderError
    ├── IntakeError
    │   ├── InvoiceNotFoundError
    │   └── InvoiceStatusError
    └── AccountingError
        ├── OAuthError
        ├── TokenExpiredError
        ├── InvalidStateTransition
        ├── UnsupportedProviderError
        └── SyncError
            └── IdempotencyConflict

Malformed input data (amounts, dates, OCR text) never raises; parsers degrade
to None or low confidence. These exceptions cover malformed control data and
accounting provider failures.
"""

from typing import Any


class InvoiceIntakeError(Exception):
    """Base exception for all invoice intake errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# EXTRACTION ERRORS
# =============================================================================


class ExtractionError(InvoiceIntakeError):
    """Base exception for extraction pipeline errors."""


class LLMResponseError(ExtractionError):
    """Raised when an LLM response does not contain a parseable JSON object."""

    def __init__(self, reason: str, response_excerpt: str = "") -> None:
        super().__init__(
            f"Unparseable LLM response: {reason}",
            {"response_excerpt": response_excerpt[:200]},
        )


class PipelineOrderError(ExtractionError):
    """Raised when analysis runs before OCR text has been persisted."""

    def __init__(self, invoice_id: str) -> None:
        super().__init__(
            "OCR text not available; run OCR before analysis",
            {"invoice_id": invoice_id},
        )


# =============================================================================
# INTAKE ERRORS
# =============================================================================


class IntakeError(InvoiceIntakeError):
    """Base exception for invoice record lifecycle errors."""


class InvoiceNotFoundError(IntakeError):
    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"Invoice not found: {invoice_id}", {"invoice_id": invoice_id})


class InvoiceStatusError(IntakeError):
    """Raised when an operation is not allowed in the invoice's current status."""

    def __init__(self, invoice_id: str, status: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} invoice in status '{status}'",
            {"invoice_id": invoice_id, "status": status, "operation": operation},
        )


# =============================================================================
# ACCOUNTING ERRORS
# =============================================================================


class AccountingError(InvoiceIntakeError):
    """Base exception for accounting adapter errors."""


class OAuthError(AccountingError):
    """Raised when the provider rejects an authorization code exchange.

    The caller must restart the OAuth handshake.
    """

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider} OAuth failed: {reason}", {"provider": provider})


class TokenExpiredError(AccountingError):
    """Raised when the refresh token itself is invalid or expired.

    Not retryable: the user has to reconnect the provider.
    """

    def __init__(self, provider: str, reason: str | None = None) -> None:
        super().__init__(
            f"{provider} refresh token expired; reconnection required",
            {"provider": provider, "reason": reason},
        )


class InvalidStateTransition(AccountingError):
    """Raised on an illegal connection state change."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Invalid connection state transition: {current} -> {target}",
            {"from": current, "to": target},
        )


class UnsupportedProviderError(AccountingError, ValueError):
    """Raised for unknown or unimplemented accounting provider names."""

    def __init__(self, provider: str, available: list[str]) -> None:
        super().__init__(
            f"Unsupported accounting provider: '{provider}'. "
            f"Available providers: {', '.join(available)}",
            {"provider": provider, "available": available},
        )


class SyncError(AccountingError):
    """Classified provider failure.

    Attributes:
        code: Provider or internal error code.
        is_transient: Whether the caller may retry.
        retry_after: Seconds to wait before retrying, if the provider says so.
    """

    def __init__(
        self,
        code: str,
        message: str,
        is_transient: bool,
        retry_after: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.is_transient = is_transient
        self.retry_after = retry_after
        super().__init__(message, details)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class IdempotencyConflict(SyncError):
    """Raised when a bill already exists for the invoice being synced."""

    def __init__(self, idempotency_key: str, provider: str) -> None:
        super().__init__(
            code="DUPLICATE_BILL",
            message=f"Bill already exists for invoice {idempotency_key}",
            is_transient=False,
            details={"idempotency_key": idempotency_key, "provider": provider},
        )
        self.idempotency_key = idempotency_key


__all__ = [
    "InvoiceIntakeError",
    "ExtractionError",
    "LLMResponseError",
    "PipelineOrderError",
    "IntakeError",
    "InvoiceNotFoundError",
    "InvoiceStatusError",
    "AccountingError",
    "OAuthError",
    "TokenExpiredError",
    "InvalidStateTransition",
    "UnsupportedProviderError",
    "SyncError",
    "IdempotencyConflict",
]
