"""Unit tests for the QuickBooks Online adapter.

Runs the adapter against an in-process fake of the QuickBooks API served
through httpx.MockTransport.

Tests cover:
- OAuth code exchange and disconnect
- Bill idempotency end to end
- Error classification
- Token refresh and the reconnection path
"""

import base64
import json
import logging
import re
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import httpx
import pytest

from services.accounting.base import (
    BillLineItem,
    BillPayload,
    ConnectionState,
    OAuthCredentials,
    ProviderCredentials,
    VendorPayload,
    utcnow,
)
from services.accounting.quickbooks import REVOKE_URL, QuickBooksAdapter, generate_state
from services.shared.config import Settings
from services.shared.exceptions import (
    IdempotencyConflict,
    InvalidStateTransition,
    OAuthError,
    SyncError,
    TokenExpiredError,
)

REALM = "9130350000000000"
API_PREFIX = f"/v3/company/{REALM}"
DOC_NUMBER = re.compile(r"DocNumber = '([^']*)'")


def _fault(code: str, message: str) -> dict[str, Any]:
    return {"Fault": {"Error": [{"Message": message, "Detail": message, "code": code}]}}


class FakeQuickBooks:
    """Minimal QuickBooks Online API: token endpoint, company info, vendors, bills."""

    def __init__(self) -> None:
        self.bills: dict[str, dict[str, Any]] = {}
        self.vendors: list[dict[str, Any]] = [
            {"Id": "56", "DisplayName": "Acme Supplies Ltd", "SyncToken": "0"}
        ]
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self.token_count = 0
        self.hide_bills_from_query = False
        self.bill_fault: tuple[int, str] | None = None
        self.revoke_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url.startswith("https://oauth.platform.intuit.com"):
            return self._token(request)
        if url.startswith(REVOKE_URL):
            return httpx.Response(self.revoke_status, json={})

        path = request.url.path.removeprefix(API_PREFIX)
        if path == f"/companyinfo/{REALM}":
            return httpx.Response(200, json={"CompanyInfo": {"CompanyName": "Sandbox Company"}})
        if path == "/query":
            return self._query(request.url.params["query"])
        if path == "/bill" and request.method == "POST":
            return self._create_bill(json.loads(request.content))
        if path.startswith("/bill/"):
            bill = self.bills.get(path.removeprefix("/bill/"))
            if bill is None:
                return httpx.Response(400, json=_fault("610", "Object Not Found"))
            return httpx.Response(200, json={"Bill": bill})
        if path == "/vendor" and request.method == "POST":
            body = json.loads(request.content)
            vendor = {"Id": str(100 + len(self.vendors)), "SyncToken": "0", **body}
            self.vendors.append(vendor)
            return httpx.Response(200, json={"Vendor": vendor})
        if path.startswith("/vendor/"):
            vendor_id = path.removeprefix("/vendor/")
            for vendor in self.vendors:
                if vendor["Id"] == vendor_id:
                    return httpx.Response(200, json={"Vendor": vendor})
            return httpx.Response(400, json=_fault("610", "Object Not Found"))
        if path == "/upload":
            return httpx.Response(200, json={"AttachableResponse": [{"Attachable": {"Id": "1"}}]})
        return httpx.Response(404, json={})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        form = dict(httpx.QueryParams(request.content.decode()))
        if form.get("code") == "bad-code":
            return httpx.Response(400, json={"error": "invalid_grant"})
        self.token_count += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.token_count}",
                "refresh_token": f"refresh-{self.token_count}",
                "expires_in": 3600,
                "x_refresh_token_expires_in": 8726400,
                "token_type": "bearer",
            },
        )

    def _query(self, statement: str) -> httpx.Response:
        if "FROM Bill" in statement:
            match = DOC_NUMBER.search(statement)
            found = [
                bill
                for bill in self.bills.values()
                if match and bill["DocNumber"] == match.group(1)
            ]
            if self.hide_bills_from_query:
                found = []
            return httpx.Response(200, json={"QueryResponse": {"Bill": found} if found else {}})
        if "FROM Vendor" in statement:
            return httpx.Response(200, json={"QueryResponse": {"Vendor": self.vendors}})
        return httpx.Response(400, json=_fault("4000", "Invalid query"))

    def _create_bill(self, body: dict[str, Any]) -> httpx.Response:
        if self.bill_fault is not None:
            status, code = self.bill_fault
            return httpx.Response(status, json=_fault(code, "Provider error"))
        if any(bill["DocNumber"] == body["DocNumber"] for bill in self.bills.values()):
            return httpx.Response(400, json=_fault("6140", "Duplicate Document Number Error"))
        bill_id = f"B{len(self.bills) + 1}"
        self.bills[bill_id] = {"Id": bill_id, **body}
        return httpx.Response(200, json={"Bill": self.bills[bill_id]})

    def count(self, method: str, path_suffix: str) -> int:
        return sum(
            1
            for request in self.requests
            if request.method == method and request.url.path.endswith(path_suffix)
        )


@pytest.fixture
def settings() -> Settings:
    """Create settings with QuickBooks client credentials."""
    return Settings(
        _env_file=None,
        quickbooks_client_id="client-id",
        quickbooks_client_secret="client-secret",
        default_gl_account="7",
    )


@pytest.fixture
def fake() -> FakeQuickBooks:
    return FakeQuickBooks()


@pytest.fixture
def client(fake: FakeQuickBooks) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(fake.handler))


def _credentials(
    expires_in: int = 3600, refresh_expires_in: int | None = 86400
) -> ProviderCredentials:
    now = utcnow()
    return ProviderCredentials(
        access_token="stored-access",
        refresh_token="stored-refresh",
        expires_at=now + timedelta(seconds=expires_in),
        refresh_token_expires_at=(
            now + timedelta(seconds=refresh_expires_in) if refresh_expires_in is not None else None
        ),
        realm_id=REALM,
    )


def _callback(code: str = "good-code", realm_id: str | None = REALM) -> OAuthCredentials:
    return OAuthCredentials(
        code=code, state="s", redirect_uri="https://app/cb", realm_id=realm_id
    )


@pytest.fixture
def adapter(settings: Settings, client: httpx.Client) -> QuickBooksAdapter:
    """Adapter for an existing connection with a valid access token."""
    return QuickBooksAdapter("conn-1", "company-1", _credentials(), settings, client=client)


@pytest.fixture
def payload() -> BillPayload:
    return BillPayload(
        invoice_number="INV-2024-001",
        invoice_date=date(2024, 3, 15),
        due_date=date(2024, 4, 14),
        vendor_id="56",
        line_items=[BillLineItem(description="Widgets", amount=Decimal("1000.00"))],
        subtotal=Decimal("1000.00"),
        tax_total=Decimal("80.00"),
        total=Decimal("1080.00"),
        notes="Imported",
    )


class TestOAuth:
    """Authorization URL, code exchange and disconnect."""

    def test_authorization_url(self, settings: Settings, client: httpx.Client) -> None:
        """The consent URL carries client id, scope and the caller's state."""
        adapter = QuickBooksAdapter("conn-1", "company-1", settings=settings, client=client)
        state = generate_state()

        url = httpx.URL(adapter.authorization_url(state))

        assert url.host == "appcenter.intuit.com"
        assert url.params["client_id"] == "client-id"
        assert url.params["scope"] == "com.intuit.quickbooks.accounting"
        assert url.params["response_type"] == "code"
        assert url.params["state"] == state

    def test_generate_state_is_random(self) -> None:
        """Every OAuth state value is unique."""
        assert generate_state() != generate_state()

    def test_connect(self, settings: Settings, client: httpx.Client, fake: FakeQuickBooks) -> None:
        """A valid code yields credentials for the callback's realm."""
        adapter = QuickBooksAdapter("conn-1", "company-1", settings=settings, client=client)
        assert adapter.state is ConnectionState.DISCONNECTED

        metadata = adapter.connect(_callback())

        assert adapter.state is ConnectionState.CONNECTED
        assert metadata.provider_company_id == REALM
        assert metadata.provider_company_name == "Sandbox Company"
        assert metadata.credentials is not None
        assert metadata.credentials.access_token == "access-1"
        assert metadata.credentials.realm_id == REALM
        assert metadata.scopes == ["com.intuit.quickbooks.accounting"]

        token_request = fake.requests[0]
        expected = base64.b64encode(b"client-id:client-secret").decode()
        assert token_request.headers["authorization"] == f"Basic {expected}"

    def test_connect_requires_realm(self, settings: Settings, client: httpx.Client) -> None:
        """The realm id must come with the callback."""
        adapter = QuickBooksAdapter("conn-1", "company-1", settings=settings, client=client)

        with pytest.raises(OAuthError, match="realmId"):
            adapter.connect(_callback(realm_id=None))

    def test_connect_rejected_code(self, settings: Settings, client: httpx.Client) -> None:
        """A rejected code raises OAuthError and leaves the adapter disconnected."""
        adapter = QuickBooksAdapter("conn-1", "company-1", settings=settings, client=client)

        with pytest.raises(OAuthError, match="rejected"):
            adapter.connect(_callback("bad-code"))

        assert adapter.state is ConnectionState.DISCONNECTED
        assert adapter.credentials is None

    def test_connect_when_connected_is_invalid(self, adapter: QuickBooksAdapter) -> None:
        """A connected adapter cannot start another handshake."""
        with pytest.raises(InvalidStateTransition):
            adapter.connect(_callback())

    def test_disconnect_revokes(self, adapter: QuickBooksAdapter, fake: FakeQuickBooks) -> None:
        """Disconnect revokes the refresh token and drops credentials."""
        adapter.disconnect()

        revoke = [r for r in fake.requests if str(r.url).startswith(REVOKE_URL)]
        assert json.loads(revoke[0].content) == {"token": "stored-refresh"}
        assert adapter.credentials is None
        assert adapter.state is ConnectionState.DISCONNECTED

    def test_disconnect_tolerates_revoke_failure(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Revocation failures are logged and local disconnect still happens."""
        fake.revoke_status = 500

        with caplog.at_level(logging.WARNING):
            adapter.disconnect()

        assert "revocation returned 500" in caplog.text
        assert adapter.state is ConnectionState.DISCONNECTED


class TestBills:
    """Bill creation and idempotency."""

    def test_create_bill_then_duplicate_rejected_before_mutation(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks, payload: BillPayload
    ) -> None:
        """The second create_bill is refused by check_idempotency without any POST."""
        assert adapter.check_idempotency(payload.idempotency_key) is False

        result = adapter.create_bill(payload)

        assert result.success is True
        assert result.bill_id == "B1"
        assert result.bill_url == "https://app.sandbox.qbo.intuit.com/app/bill?txnId=B1"
        assert adapter.check_idempotency(payload.idempotency_key) is True

        with pytest.raises(IdempotencyConflict) as exc_info:
            adapter.create_bill(payload)

        assert exc_info.value.is_transient is False
        assert fake.count("POST", "/bill") == 1
        assert len(fake.bills) == 1

    def test_provider_unique_doc_number_is_backstop(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks, payload: BillPayload
    ) -> None:
        """A racing duplicate that slips past the lookup maps fault 6140 to IdempotencyConflict."""
        adapter.create_bill(payload)
        fake.hide_bills_from_query = True

        with pytest.raises(IdempotencyConflict):
            adapter.create_bill(payload)

        assert len(fake.bills) == 1

    def test_bill_body(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks, payload: BillPayload
    ) -> None:
        """Bills carry DocNumber and account-based expense lines."""
        adapter.create_bill(payload)

        bill = fake.bills["B1"]
        assert bill["DocNumber"] == "INV-2024-001"
        assert bill["VendorRef"] == {"value": "56"}
        assert bill["TxnDate"] == "2024-03-15"
        assert bill["DueDate"] == "2024-04-14"
        assert bill["TotalAmt"] == 1080.0
        line = bill["Line"][0]
        assert line["DetailType"] == "AccountBasedExpenseLineDetail"
        assert line["Amount"] == 1000.0
        assert line["AccountBasedExpenseLineDetail"]["AccountRef"] == {"value": "7"}

    def test_rate_limited_create(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks, payload: BillPayload
    ) -> None:
        """A 429 response is a transient error with a 60 second retry_after."""
        fake.bill_fault = (429, "429")

        with pytest.raises(SyncError) as exc_info:
            adapter.create_bill(payload)

        assert exc_info.value.is_transient is True
        assert exc_info.value.retry_after == 60

    def test_validation_error_create(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks, payload: BillPayload
    ) -> None:
        """A 400 validation fault is permanent."""
        fake.bill_fault = (400, "2020")

        with pytest.raises(SyncError) as exc_info:
            adapter.create_bill(payload)

        assert exc_info.value.code == "2020"
        assert exc_info.value.is_transient is False

    def test_get_bill(self, adapter: QuickBooksAdapter, payload: BillPayload) -> None:
        """Created bills can be read back."""
        adapter.create_bill(payload)

        bill = adapter.get_bill("B1")

        assert bill is not None
        assert bill["DocNumber"] == "INV-2024-001"

    def test_attach_file(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks, tmp_path: Path
    ) -> None:
        """Attachments are uploaded as multipart to the upload endpoint."""
        document = tmp_path / "invoice.pdf"
        document.write_bytes(b"%PDF-1.4")

        adapter.attach_file("B1", document, "invoice.pdf")

        upload = [r for r in fake.requests if r.url.path.endswith("/upload")][0]
        assert upload.headers["content-type"].startswith("multipart/form-data")
        assert b"%PDF-1.4" in upload.content


class TestVendors:
    """Vendor lookup and creation."""

    def test_get_vendors(self, adapter: QuickBooksAdapter, fake: FakeQuickBooks) -> None:
        """Vendors are searched by display name."""
        vendors = adapter.get_vendors("Acme")

        assert [v.name for v in vendors] == ["Acme Supplies Ltd"]
        assert vendors[0].external_id == "56"
        assert "LIKE '%Acme%'" in fake.requests[-1].url.params["query"]

    def test_query_value_escaped(self, adapter: QuickBooksAdapter, fake: FakeQuickBooks) -> None:
        """Quotes in names cannot break out of the query literal."""
        adapter.get_vendors("O'Brien")

        assert "O\\'Brien" in fake.requests[-1].url.params["query"]

    def test_create_vendor(self, adapter: QuickBooksAdapter, fake: FakeQuickBooks) -> None:
        """New vendors are posted with their contact details."""
        vendor_id = adapter.create_vendor(VendorPayload(name="Globex", email="ap@globex.example"))

        assert vendor_id == "101"
        assert fake.vendors[-1]["PrimaryEmailAddr"] == {"Address": "ap@globex.example"}

    def test_get_vendor_by_id_missing(self, adapter: QuickBooksAdapter) -> None:
        """A missing vendor is None, not an error."""
        assert adapter.get_vendor_by_id("999") is None
        assert adapter.get_vendor_by_id("56") is not None

    def test_update_vendor_uses_sync_token(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks
    ) -> None:
        """Updates are sparse and carry the current SyncToken."""
        adapter.update_vendor("56", VendorPayload(name="Acme Supplies Limited"))

        body = json.loads(fake.requests[-1].content)
        assert body["Id"] == "56"
        assert body["SyncToken"] == "0"
        assert body["sparse"] is True


class TestErrorClassification:
    """_handle_provider_error taxonomy."""

    @pytest.fixture
    def adapter_only(self, settings: Settings) -> QuickBooksAdapter:
        return QuickBooksAdapter("conn-1", "company-1", settings=settings)

    def test_429_is_transient_with_retry_after(self, adapter_only: QuickBooksAdapter) -> None:
        """Rate limits are retryable after 60 seconds."""
        error = adapter_only._handle_provider_error(_fault("429", "Too many requests"))

        assert error.code == "429"
        assert error.is_transient is True
        assert error.retry_after == 60

    def test_400_is_permanent(self, adapter_only: QuickBooksAdapter) -> None:
        """Validation errors are not retried."""
        error = adapter_only._handle_provider_error(_fault("400", "Bad request"))

        assert error.is_transient is False
        assert error.retry_after is None
        assert error.message == "Bad request"

    def test_http_429_with_throttle_fault(self, adapter_only: QuickBooksAdapter) -> None:
        """An HTTP 429 is a rate limit whatever code the fault body carries."""
        error = adapter_only._handle_provider_error(_fault("003001", "ThrottleExceeded"), 429)

        assert error.code == "003001"
        assert error.is_transient is True
        assert error.retry_after == 60

    @pytest.mark.parametrize("status", [500, 503])
    def test_server_errors_transient(self, adapter_only: QuickBooksAdapter, status: int) -> None:
        """5xx statuses without a fault body are transient."""
        error = adapter_only._handle_provider_error({}, status)

        assert error.code == str(status)
        assert error.is_transient is True

    def test_timeout_and_network(self, adapter_only: QuickBooksAdapter) -> None:
        """Timeouts and transport failures are transient."""
        timeout = adapter_only._handle_provider_error(httpx.ReadTimeout("slow"))
        network = adapter_only._handle_provider_error(httpx.ConnectError("refused"))

        assert (timeout.code, timeout.is_transient) == ("TIMEOUT", True)
        assert (network.code, network.is_transient) == ("NETWORK_ERROR", True)

    def test_unknown_error(self, adapter_only: QuickBooksAdapter) -> None:
        """Unrecognized errors are permanent."""
        error = adapter_only._handle_provider_error({"message": "boom"})

        assert error.code == "UNKNOWN_ERROR"
        assert error.message == "boom"
        assert error.is_transient is False


class TestTokenRefresh:
    """Access token renewal and the reconnection path."""

    def test_valid_token_not_refreshed(
        self, adapter: QuickBooksAdapter, fake: FakeQuickBooks
    ) -> None:
        """Tokens outside the refresh margin are used as they are."""
        adapter.get_vendors("Acme")

        assert fake.token_count == 0
        assert fake.requests[-1].headers["authorization"] == "Bearer stored-access"

    def test_expiring_token_refreshed(
        self, settings: Settings, client: httpx.Client, fake: FakeQuickBooks
    ) -> None:
        """A token expiring within the margin is refreshed before the call."""
        adapter = QuickBooksAdapter(
            "conn-1", "company-1", _credentials(expires_in=60), settings, client=client
        )

        adapter.get_vendors("Acme")

        assert adapter.state is ConnectionState.CONNECTED
        assert adapter.credentials is not None
        assert adapter.credentials.access_token == "access-1"
        assert adapter.credentials.refresh_token == "refresh-1"
        assert fake.requests[-1].headers["authorization"] == "Bearer access-1"

    def test_rejected_refresh_needs_reconnection(
        self, settings: Settings, client: httpx.Client, fake: FakeQuickBooks
    ) -> None:
        """An invalid refresh token moves the connection to needs_reconnection."""
        fake.token_status = 400
        adapter = QuickBooksAdapter(
            "conn-1", "company-1", _credentials(expires_in=-10), settings, client=client
        )

        with pytest.raises(TokenExpiredError):
            adapter.get_vendors("Acme")

        assert adapter.state is ConnectionState.NEEDS_RECONNECTION
        status = adapter.get_connection_status()
        assert status.needs_reconnection is True
        assert status.is_connected is False

        request_count = len(fake.requests)
        with pytest.raises(TokenExpiredError):
            adapter.get_vendors("Acme")
        assert len(fake.requests) == request_count

    def test_expired_refresh_token(
        self, settings: Settings, client: httpx.Client, fake: FakeQuickBooks
    ) -> None:
        """An expired refresh token fails without calling Intuit."""
        adapter = QuickBooksAdapter(
            "conn-1",
            "company-1",
            _credentials(expires_in=-10, refresh_expires_in=-10),
            settings,
            client=client,
        )

        with pytest.raises(TokenExpiredError):
            adapter.refresh_token_if_needed()

        assert fake.requests == []
        assert adapter.state is ConnectionState.NEEDS_RECONNECTION

    def test_transient_refresh_failure(
        self, settings: Settings, client: httpx.Client, fake: FakeQuickBooks
    ) -> None:
        """A 5xx from the token endpoint is transient and leaves the token expiring."""
        fake.token_status = 503
        adapter = QuickBooksAdapter(
            "conn-1", "company-1", _credentials(expires_in=10), settings, client=client
        )

        with pytest.raises(SyncError) as exc_info:
            adapter.refresh_token_if_needed()

        assert exc_info.value.is_transient is True
        assert adapter.state is ConnectionState.TOKEN_EXPIRING

        fake.token_status = 200
        adapter.refresh_token_if_needed()
        assert adapter.state is ConnectionState.CONNECTED

    def test_throttled_refresh_is_transient(
        self, settings: Settings, client: httpx.Client, fake: FakeQuickBooks
    ) -> None:
        """A rate-limited refresh is retried later instead of forcing a reconnect."""
        fake.token_status = 429
        adapter = QuickBooksAdapter(
            "conn-1", "company-1", _credentials(expires_in=10), settings, client=client
        )

        with pytest.raises(SyncError) as exc_info:
            adapter.refresh_token_if_needed()

        assert exc_info.value.is_transient is True
        assert exc_info.value.retry_after == 60
        assert adapter.state is ConnectionState.TOKEN_EXPIRING
        assert adapter.get_connection_status().needs_reconnection is False

        fake.token_status = 200
        adapter.refresh_token_if_needed()
        assert adapter.state is ConnectionState.CONNECTED

    def test_refresh_timeout_is_transient(
        self, settings: Settings, client: httpx.Client, fake: FakeQuickBooks
    ) -> None:
        """A 408 from the token endpoint leaves the refresh token usable."""
        fake.token_status = 408
        adapter = QuickBooksAdapter(
            "conn-1", "company-1", _credentials(expires_in=10), settings, client=client
        )

        with pytest.raises(SyncError) as exc_info:
            adapter.refresh_token_if_needed()

        assert exc_info.value.code == "TIMEOUT"
        assert adapter.state is ConnectionState.TOKEN_EXPIRING

    def test_not_connected(self, settings: Settings, client: httpx.Client) -> None:
        """Calls without credentials require a connection first."""
        adapter = QuickBooksAdapter("conn-1", "company-1", settings=settings, client=client)

        with pytest.raises(TokenExpiredError):
            adapter.get_vendors("Acme")

    def test_connection_status(self, adapter: QuickBooksAdapter) -> None:
        """Status reflects the injected credentials without a network call."""
        status = adapter.get_connection_status()

        assert status.is_connected is True
        assert status.provider_name == "QuickBooks"
        assert status.state is ConnectionState.CONNECTED
        assert status.token_expires_at is not None
