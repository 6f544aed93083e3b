"""QuickBooks Online adapter.

Implements the accounting adapter contract against the QuickBooks Online
REST API v3 with OAuth 2.0.

Idempotency: bills are created with ``DocNumber`` set to the source
invoice number, so check_idempotency() is a DocNumber lookup. QuickBooks'
own duplicate document number validation (fault 6140) is the final
backstop when two syncs race past the lookup.

API reference:
https://developer.intuit.com/app/developer/qbo/docs/api/accounting/all-entities/bill
"""

import json
import logging
import mimetypes
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any, NoReturn
from urllib.parse import urlencode

import httpx

from services.accounting.base import (
    AccountingAdapter,
    BillPayload,
    BillResult,
    ConnectionMetadata,
    ConnectionState,
    ConnectionStatus,
    OAuthCredentials,
    ProviderCredentials,
    Vendor,
    VendorPayload,
    utcnow,
)
from services.shared.config import Settings
from services.shared.exceptions import (
    IdempotencyConflict,
    OAuthError,
    SyncError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

AUTHORIZATION_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
SCOPES = ["com.intuit.quickbooks.accounting"]

API_BASE_URLS = {
    "sandbox": "https://sandbox-quickbooks.api.intuit.com/v3",
    "production": "https://quickbooks.api.intuit.com/v3",
}
APP_BASE_URLS = {
    "sandbox": "https://app.sandbox.qbo.intuit.com",
    "production": "https://app.qbo.intuit.com",
}

TRANSIENT_CODES = frozenset({"500", "503", "429"})
RATE_LIMIT_RETRY_AFTER = 60
DUPLICATE_DOC_NUMBER = "6140"


def generate_state() -> str:
    """Generate an unguessable OAuth state value for CSRF protection."""
    return secrets.token_urlsafe(32)


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class QuickBooksAdapter(AccountingAdapter):
    """QuickBooks Online implementation of AccountingAdapter."""

    provider_name = "quickbooks"

    def __init__(
        self,
        connection_id: str,
        company_id: str,
        credentials: ProviderCredentials | None = None,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize QuickBooks adapter.

        Args:
            connection_id: Local connection identifier
            company_id: Owning company
            credentials: Stored tokens including realm_id; None before connect()
            settings: Application settings (client id/secret, environment)
            client: Optional preconfigured HTTP client (tests inject a mock transport)
        """
        super().__init__(connection_id, company_id, credentials, settings)
        environment = self.settings.quickbooks_environment
        self._base_url = API_BASE_URLS[environment]
        self._app_url = APP_BASE_URLS[environment]
        self._client = client or httpx.Client(timeout=self.settings.provider_timeout_seconds)
        self._company_name: str | None = None

    # =========================================================================
    # OAUTH
    # =========================================================================

    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        """Build the Intuit consent URL.

        Args:
            state: CSRF state from generate_state(); verify it in the callback
            redirect_uri: Registered redirect URI (defaults to settings)

        Returns:
            URL to redirect the user to
        """
        params = {
            "client_id": self.settings.quickbooks_client_id,
            "scope": " ".join(SCOPES),
            "redirect_uri": redirect_uri or self.settings.quickbooks_redirect_uri,
            "response_type": "code",
            "state": state,
        }
        return f"{AUTHORIZATION_URL}?{urlencode(params)}"

    def connect(self, credentials: OAuthCredentials) -> ConnectionMetadata:
        """Exchange the authorization code for tokens.

        The realm (company) id comes from the callback query parameters, not
        from the token response.

        Args:
            credentials: OAuth callback parameters

        Returns:
            ConnectionMetadata with the new credentials

        Raises:
            OAuthError: If the code exchange is rejected or realmId is missing
        """
        if not credentials.realm_id:
            raise OAuthError(self.provider_name, "callback is missing realmId")

        self.state_machine.transition(ConnectionState.CONNECTING)
        try:
            tokens = self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": credentials.code,
                    "redirect_uri": credentials.redirect_uri,
                }
            )
            if tokens is None:
                raise OAuthError(self.provider_name, "authorization code rejected")

            self.credentials = self._credentials_from_tokens(tokens, credentials.realm_id)
            company_info = self._request(
                "GET", f"/companyinfo/{credentials.realm_id}", refresh=False
            ).get("CompanyInfo", {})
        except (OAuthError, SyncError):
            self.credentials = None
            self.state_machine.transition(ConnectionState.DISCONNECTED)
            raise

        self._company_name = company_info.get("CompanyName") or credentials.realm_id
        self.state_machine.transition(ConnectionState.CONNECTED)
        logger.info(f"Connected QuickBooks realm {credentials.realm_id} ({self._company_name})")

        return ConnectionMetadata(
            provider_company_id=credentials.realm_id,
            provider_company_name=self._company_name,
            credentials=self.credentials,
            scopes=list(SCOPES),
            metadata={
                "refresh_token_expires_at": (
                    self.credentials.refresh_token_expires_at.isoformat()
                    if self.credentials.refresh_token_expires_at
                    else None
                )
            },
        )

    def disconnect(self) -> None:
        """Revoke the refresh token. Revocation failures are logged, never raised."""
        token = None
        if self.credentials:
            token = self.credentials.refresh_token or self.credentials.access_token
        if token:
            try:
                response = self._client.post(
                    REVOKE_URL,
                    auth=(
                        self.settings.quickbooks_client_id,
                        self.settings.quickbooks_client_secret,
                    ),
                    headers={"Accept": "application/json"},
                    json={"token": token},
                )
                if response.is_error:
                    logger.warning(
                        f"QuickBooks token revocation returned {response.status_code}; "
                        f"deactivating locally"
                    )
            except httpx.HTTPError as e:
                logger.warning(f"QuickBooks token revocation failed: {e}; deactivating locally")

        self.credentials = None
        if self.state is not ConnectionState.DISCONNECTED:
            self.state_machine.transition(ConnectionState.DISCONNECTED)
        logger.info(f"QuickBooks connection {self.connection_id} disconnected")

    def refresh_token_if_needed(self) -> None:
        """Refresh the access token when it expires within the configured margin.

        Raises:
            TokenExpiredError: If not connected or the refresh token is rejected
            SyncError: On transient refresh failures (network, throttling, 5xx)
        """
        if self.state is ConnectionState.NEEDS_RECONNECTION:
            raise TokenExpiredError(self.provider_name, "connection needs reconnection")
        if self.credentials is None:
            raise TokenExpiredError(self.provider_name, "not connected")

        now = utcnow()
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        expires_at = self.credentials.expires_at
        if expires_at is None or expires_at - now > margin:
            return

        if self.state is ConnectionState.CONNECTED:
            self.state_machine.transition(ConnectionState.TOKEN_EXPIRING)

        refresh_expires_at = self.credentials.refresh_token_expires_at
        if not self.credentials.refresh_token or (
            refresh_expires_at is not None and refresh_expires_at <= now
        ):
            self._fail_refresh("refresh token missing or expired")

        self.state_machine.transition(ConnectionState.REFRESHING)
        try:
            tokens = self._token_request(
                {"grant_type": "refresh_token", "refresh_token": self.credentials.refresh_token}
            )
        except SyncError:
            self.state_machine.transition(ConnectionState.TOKEN_EXPIRING)
            raise

        if tokens is None:
            self._fail_refresh("refresh token rejected")

        self.credentials = self._credentials_from_tokens(tokens, self.credentials.realm_id)
        self.state_machine.transition(ConnectionState.CONNECTED)
        logger.info(f"Refreshed QuickBooks access token for connection {self.connection_id}")

    def _fail_refresh(self, reason: str) -> NoReturn:
        if self.state is ConnectionState.TOKEN_EXPIRING:
            self.state_machine.transition(ConnectionState.REFRESHING)
        self.state_machine.transition(ConnectionState.REFRESH_FAILED)
        self.state_machine.transition(ConnectionState.NEEDS_RECONNECTION)
        logger.warning(f"QuickBooks token refresh failed: {reason}")
        raise TokenExpiredError(self.provider_name, reason)

    def get_connection_status(self) -> ConnectionStatus:
        credentials = self.credentials
        refresh_expired = bool(
            credentials
            and credentials.refresh_token_expires_at
            and credentials.refresh_token_expires_at <= utcnow()
        )
        needs_reconnection = self.state is ConnectionState.NEEDS_RECONNECTION or refresh_expired
        return ConnectionStatus(
            is_connected=credentials is not None and not needs_reconnection,
            provider_name="QuickBooks",
            state=self.state,
            company_name=self._company_name,
            token_expires_at=credentials.expires_at if credentials else None,
            needs_reconnection=needs_reconnection,
        )

    # =========================================================================
    # VENDORS
    # =========================================================================

    def get_vendors(self, query: str) -> list[Vendor]:
        statement = (
            f"SELECT * FROM Vendor WHERE DisplayName LIKE '%{_escape_query_value(query)}%' "
            f"MAXRESULTS 10"
        )
        data = self._query(statement)
        return [self._to_vendor(v) for v in data.get("QueryResponse", {}).get("Vendor", [])]

    def get_vendor_by_id(self, external_id: str) -> Vendor | None:
        """Fetch one vendor; None when QuickBooks reports it missing or invalid."""
        try:
            data = self._request("GET", f"/vendor/{external_id}")
        except SyncError as e:
            if e.is_transient:
                raise
            logger.debug(f"QuickBooks vendor {external_id} not found: {e}")
            return None
        return self._to_vendor(data["Vendor"])

    def create_vendor(self, payload: VendorPayload) -> str:
        data = self._request("POST", "/vendor", json=self._vendor_body(payload))
        vendor_id: str = data["Vendor"]["Id"]
        logger.info(f"Created QuickBooks vendor {vendor_id} ({payload.name})")
        return vendor_id

    def update_vendor(self, external_id: str, payload: VendorPayload) -> None:
        """Sparse-update a vendor; QuickBooks requires the current SyncToken."""
        current = self._request("GET", f"/vendor/{external_id}")["Vendor"]
        body = {
            "Id": external_id,
            "SyncToken": current["SyncToken"],
            "sparse": True,
            **self._vendor_body(payload),
        }
        self._request("POST", "/vendor", json=body)

    @staticmethod
    def _vendor_body(payload: VendorPayload) -> dict[str, Any]:
        body: dict[str, Any] = {"DisplayName": payload.name}
        if payload.email:
            body["PrimaryEmailAddr"] = {"Address": payload.email}
        if payload.address:
            body["BillAddr"] = {"Line1": payload.address}
        if payload.phone:
            body["PrimaryPhone"] = {"FreeFormNumber": payload.phone}
        if payload.tax_id:
            body["TaxIdentifier"] = payload.tax_id
        return body

    @staticmethod
    def _to_vendor(raw: dict[str, Any]) -> Vendor:
        return Vendor(
            id=raw["Id"],
            name=raw.get("DisplayName", ""),
            email=(raw.get("PrimaryEmailAddr") or {}).get("Address"),
            address=(raw.get("BillAddr") or {}).get("Line1"),
            external_id=raw["Id"],
        )

    # =========================================================================
    # BILLS
    # =========================================================================

    def create_bill(self, payload: BillPayload) -> BillResult:
        key = payload.idempotency_key
        if self.check_idempotency(key):
            logger.info(f"Skipping bill creation: DocNumber {key} already exists")
            raise IdempotencyConflict(key, self.provider_name)

        try:
            data = self._request("POST", "/bill", json=self._map_bill_payload(payload))
        except SyncError as e:
            if e.code == DUPLICATE_DOC_NUMBER:
                raise IdempotencyConflict(key, self.provider_name) from e
            raise

        bill_id = data["Bill"]["Id"]
        logger.info(f"Created QuickBooks bill {bill_id} for invoice {key}")
        return BillResult(
            success=True,
            bill_id=bill_id,
            bill_url=f"{self._app_url}/app/bill?txnId={bill_id}",
            vendor_id=payload.vendor_id,
        )

    def get_bill(self, external_bill_id: str) -> dict[str, Any] | None:
        bill: dict[str, Any] | None = self._request("GET", f"/bill/{external_bill_id}").get("Bill")
        return bill

    def attach_file(self, external_bill_id: str, file_path: Path, file_name: str) -> None:
        """Upload a file and link it to a bill as an Attachable."""
        content_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        metadata = {
            "AttachableRef": [{"EntityRef": {"type": "Bill", "value": external_bill_id}}],
            "FileName": file_name,
            "ContentType": content_type,
        }
        files = {
            "file_metadata_01": (None, json.dumps(metadata), "application/json"),
            "file_content_01": (file_name, file_path.read_bytes(), content_type),
        }
        self._request("POST", "/upload", files=files)
        logger.info(f"Attached {file_name} to QuickBooks bill {external_bill_id}")

    def check_idempotency(self, idempotency_key: str) -> bool:
        statement = (
            f"SELECT * FROM Bill WHERE DocNumber = '{_escape_query_value(idempotency_key)}' "
            f"MAXRESULTS 1"
        )
        data = self._query(statement)
        return len(data.get("QueryResponse", {}).get("Bill", [])) > 0

    def _map_bill_payload(self, payload: BillPayload) -> dict[str, Any]:
        """Map a BillPayload onto a QuickBooks Bill.

        Each line becomes an AccountBasedExpenseLineDetail. Lines without an
        account use the configured default GL account.
        """
        lines = []
        for index, item in enumerate(payload.line_items, start=1):
            detail: dict[str, Any] = {
                "AccountRef": {"value": item.account_ref or self.settings.default_gl_account},
                "BillableStatus": "NotBillable",
            }
            if item.tax_code:
                detail["TaxCodeRef"] = {"value": item.tax_code}
            lines.append(
                {
                    "Id": str(index),
                    "Amount": float(item.amount),
                    "DetailType": "AccountBasedExpenseLineDetail",
                    "Description": item.description,
                    "AccountBasedExpenseLineDetail": detail,
                }
            )

        bill: dict[str, Any] = {
            "VendorRef": {"value": payload.vendor_id},
            "TxnDate": payload.invoice_date.isoformat(),
            "DocNumber": payload.idempotency_key,
            "Line": lines,
            "TotalAmt": float(payload.total),
        }
        if payload.due_date:
            bill["DueDate"] = payload.due_date.isoformat()
        if payload.notes:
            bill["PrivateNote"] = payload.notes
        return bill

    # =========================================================================
    # ERRORS
    # =========================================================================

    def _handle_provider_error(self, error: object, status_code: int | None = None) -> SyncError:
        """Classify a QuickBooks error.

        Accepts a QuickBooks fault body (``{"Fault": {"Error": [...]}}``) or an
        httpx exception. Codes 500, 503 and 429 are transient, 429 with a
        60 second retry_after; every other code is permanent. Timeouts and
        transport errors are transient.

        Args:
            error: Fault body or exception
            status_code: HTTP status, used as the code when the body has no fault

        Returns:
            Classified SyncError
        """
        if isinstance(error, httpx.TimeoutException):
            return SyncError("TIMEOUT", f"QuickBooks request timed out: {error}", True)
        if isinstance(error, httpx.HTTPError):
            return SyncError("NETWORK_ERROR", f"QuickBooks request failed: {error}", True)

        fault: dict[str, Any] = {}
        if isinstance(error, dict):
            errors = (error.get("Fault") or {}).get("Error") or []
            if errors and isinstance(errors[0], dict):
                fault = errors[0]

        if not fault and status_code is None:
            message = error.get("message") if isinstance(error, dict) else None
            return SyncError(
                "UNKNOWN_ERROR",
                str(message or error or "Unknown error occurred"),
                False,
            )

        status = str(status_code) if status_code is not None else None
        code = str(fault.get("code") or status)
        message = (
            fault.get("Message")
            or fault.get("message")
            or f"QuickBooks request failed with HTTP {status_code}"
        )
        return SyncError(
            code=code,
            message=message,
            is_transient=code in TRANSIENT_CODES or status in TRANSIENT_CODES,
            retry_after=RATE_LIMIT_RETRY_AFTER if "429" in (code, status) else None,
            details={"detail": fault.get("Detail"), "http_status": status_code},
        )

    # =========================================================================
    # HTTP HELPERS
    # =========================================================================

    def _query(self, statement: str) -> dict[str, Any]:
        return self._request("GET", "/query", params={"query": statement})

    def _request(
        self,
        method: str,
        path: str,
        refresh: bool = True,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Make an authenticated request against the company endpoint.

        Raises:
            TokenExpiredError: If not connected or the token cannot be refreshed
            SyncError: On any provider failure
        """
        if refresh:
            self.refresh_token_if_needed()
        if self.credentials is None or not self.credentials.realm_id:
            raise TokenExpiredError(self.provider_name, "not connected")

        url = f"{self._base_url}/company/{self.credentials.realm_id}{path}"
        headers = {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Accept": "application/json",
        }
        try:
            response = self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise self._handle_provider_error(e) from e

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            sync_error = self._handle_provider_error(body, response.status_code)
            logger.warning(f"QuickBooks {method} {path} failed: {sync_error}")
            raise sync_error

        data: dict[str, Any] = response.json()
        return data

    def _token_request(self, form: dict[str, str]) -> dict[str, Any] | None:
        """POST to the Intuit token endpoint with HTTP Basic client credentials.

        Returns:
            Token response, or None if Intuit rejected the grant

        Raises:
            SyncError: On transport errors, throttling, timeouts or 5xx responses
        """
        try:
            response = self._client.post(
                TOKEN_URL,
                auth=(self.settings.quickbooks_client_id, self.settings.quickbooks_client_secret),
                headers={"Accept": "application/json"},
                data=form,
            )
        except httpx.HTTPError as e:
            raise self._handle_provider_error(e) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise self._handle_provider_error({}, response.status_code)
        if response.status_code == 408:
            raise SyncError("TIMEOUT", "Intuit token endpoint timed out", True)
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            reason = body.get("error_description") or body.get("error") or response.status_code
            logger.warning(f"Intuit token endpoint rejected {form['grant_type']}: {reason}")
            return None

        tokens: dict[str, Any] = response.json()
        return tokens

    @staticmethod
    def _credentials_from_tokens(
        tokens: dict[str, Any], realm_id: str | None
    ) -> ProviderCredentials:
        now = utcnow()
        refresh_expires_in = tokens.get("x_refresh_token_expires_in")
        return ProviderCredentials(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
            expires_at=now + timedelta(seconds=int(tokens.get("expires_in", 3600))),
            refresh_token_expires_at=(
                now + timedelta(seconds=int(refresh_expires_in)) if refresh_expires_in else None
            ),
            realm_id=realm_id,
        )
