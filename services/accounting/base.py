"""Provider-agnostic accounting adapter contract.

Every accounting backend (QuickBooks, Excel, ...) implements
AccountingAdapter. An adapter instance is short-lived: it is constructed per
sync operation with the connection's credentials injected, and exposes the
possibly refreshed credentials afterwards so the caller can persist them.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from services.shared.config import Settings
from services.shared.exceptions import InvalidStateTransition, SyncError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# MODELS
# =============================================================================


class OAuthCredentials(BaseModel):
    """Parameters of an OAuth callback.

    Attributes:
        code: Authorization code to exchange
        state: CSRF state echoed by the provider
        redirect_uri: Redirect URI used in the authorization request
        realm_id: Provider company id from the callback query (QuickBooks realmId)
    """

    code: str
    state: str
    redirect_uri: str
    realm_id: str | None = None


class ProviderCredentials(BaseModel):
    """Persistent tokens of one accounting connection."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    refresh_token_expires_at: datetime | None = None
    realm_id: str | None = None

    @field_validator("expires_at", "refresh_token_expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Stored timestamps may come back naive
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ConnectionMetadata(BaseModel):
    """Result of a successful connect()."""

    provider_company_id: str
    provider_company_name: str
    credentials: ProviderCredentials | None = None
    scopes: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TOKEN_EXPIRING = "token_expiring"
    REFRESHING = "refreshing"
    REFRESH_FAILED = "refresh_failed"
    NEEDS_RECONNECTION = "needs_reconnection"


class ConnectionStatus(BaseModel):
    """Health snapshot of a connection."""

    is_connected: bool
    provider_name: str
    state: ConnectionState
    company_name: str | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    token_expires_at: datetime | None = None
    needs_reconnection: bool = False


class Vendor(BaseModel):
    id: str
    name: str
    email: str | None = None
    address: str | None = None
    tax_id: str | None = None
    external_id: str | None = None


class VendorPayload(BaseModel):
    name: str
    email: str | None = None
    address: str | None = None
    tax_id: str | None = None
    phone: str | None = None


class BillLineItem(BaseModel):
    description: str
    amount: Decimal
    quantity: Decimal = Decimal("1")
    account_ref: str | None = Field(None, description="GL account; provider default if unset")
    tax_code: str | None = None


class BillPayload(BaseModel):
    """Normalized bill submitted to an adapter.

    Built fresh for every sync attempt from an approved invoice; never
    persisted. ``invoice_number`` doubles as the idempotency key.
    """

    invoice_number: str
    invoice_date: date
    due_date: date | None = None
    vendor_id: str
    vendor_email: str | None = None
    line_items: list[BillLineItem]
    subtotal: Decimal
    tax_total: Decimal = Decimal("0")
    total: Decimal
    currency: str = "USD"
    notes: str | None = None

    @property
    def idempotency_key(self) -> str:
        return self.invoice_number


class BillResult(BaseModel):
    success: bool
    bill_id: str | None = None
    bill_url: str | None = None
    vendor_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    error: str | None = None


# =============================================================================
# CONNECTION STATE MACHINE
# =============================================================================

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.TOKEN_EXPIRING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.TOKEN_EXPIRING: frozenset(
        {ConnectionState.REFRESHING, ConnectionState.DISCONNECTED}
    ),
    # A transient refresh failure leaves the token expiring so the next call retries
    ConnectionState.REFRESHING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.REFRESH_FAILED,
            ConnectionState.TOKEN_EXPIRING,
        }
    ),
    ConnectionState.REFRESH_FAILED: frozenset(
        {ConnectionState.NEEDS_RECONNECTION, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.NEEDS_RECONNECTION: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}
    ),
}


class ConnectionStateMachine:
    """Tracks the lifecycle of one accounting connection.

    disconnected -> connecting -> connected
    connected -> token_expiring -> refreshing -> connected
    refreshing -> refresh_failed -> needs_reconnection
    connected -> disconnected
    """

    def __init__(self, initial: ConnectionState = ConnectionState.DISCONNECTED) -> None:
        self._state = initial

    @property
    def state(self) -> ConnectionState:
        return self._state

    def can_transition(self, target: ConnectionState) -> bool:
        return target in _TRANSITIONS[self._state]

    def transition(self, target: ConnectionState) -> None:
        """Move to ``target``.

        Raises:
            InvalidStateTransition: If the move is not allowed from the current state
        """
        if not self.can_transition(target):
            raise InvalidStateTransition(self._state.value, target.value)
        logger.debug(f"Connection state {self._state.value} -> {target.value}")
        self._state = target


# =============================================================================
# ADAPTER CONTRACT
# =============================================================================


class AccountingAdapter(ABC):
    """Base class for accounting provider adapters.

    Contract highlights:
    - create_bill() checks idempotency before any mutating request and
      raises IdempotencyConflict when the bill already exists.
    - disconnect() is best effort; local deactivation is authoritative.
    - Failures surface as typed errors (OAuthError, TokenExpiredError,
      SyncError with is_transient).
    """

    provider_name: str = ""

    def __init__(
        self,
        connection_id: str,
        company_id: str,
        credentials: ProviderCredentials | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize adapter for one connection.

        Args:
            connection_id: Local connection identifier
            company_id: Owning company
            credentials: Stored tokens; None before the first connect()
            settings: Application settings
        """
        self.connection_id = connection_id
        self.company_id = company_id
        self.credentials = credentials
        self.settings = settings or Settings()
        self.state_machine = ConnectionStateMachine(
            ConnectionState.CONNECTED if credentials else ConnectionState.DISCONNECTED
        )

    @property
    def state(self) -> ConnectionState:
        return self.state_machine.state

    # Connection lifecycle

    @abstractmethod
    def connect(self, credentials: OAuthCredentials) -> ConnectionMetadata:
        """Exchange an authorization code for persistent credentials.

        Raises:
            OAuthError: If the provider rejects the code or redirect URI
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Revoke credentials where the provider supports it. Never raises."""

    @abstractmethod
    def refresh_token_if_needed(self) -> None:
        """Renew an expiring access token.

        Raises:
            TokenExpiredError: If the refresh token is invalid; reconnect instead of retrying
        """

    @abstractmethod
    def get_connection_status(self) -> ConnectionStatus:
        """Non-mutating health check."""

    # Vendors

    @abstractmethod
    def get_vendors(self, query: str) -> list[Vendor]: ...

    @abstractmethod
    def get_vendor_by_id(self, external_id: str) -> Vendor | None: ...

    @abstractmethod
    def create_vendor(self, payload: VendorPayload) -> str:
        """Create a vendor and return its provider id. Does not dedupe by name."""

    @abstractmethod
    def update_vendor(self, external_id: str, payload: VendorPayload) -> None: ...

    # Bills

    @abstractmethod
    def create_bill(self, payload: BillPayload) -> BillResult:
        """Create a bill unless one already exists for the invoice.

        Raises:
            IdempotencyConflict: If check_idempotency finds an existing bill
            SyncError: On classified provider failures
        """

    @abstractmethod
    def get_bill(self, external_bill_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def attach_file(self, external_bill_id: str, file_path: Path, file_name: str) -> None: ...

    @abstractmethod
    def check_idempotency(self, idempotency_key: str) -> bool:
        """Return True if a bill for this invoice already exists in the provider."""

    # Provider specifics

    @abstractmethod
    def _map_bill_payload(self, payload: BillPayload) -> dict[str, Any]:
        """Translate the canonical payload into the provider's native format."""

    @abstractmethod
    def _handle_provider_error(self, error: object) -> SyncError:
        """Classify a raw provider error into the SyncError taxonomy."""
