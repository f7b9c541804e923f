"""
Unit tests for the Daraja API client.
"""
import base64
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List

import httpx
import pytest

from mpesa_checkout.config import Settings
from mpesa_checkout.integrations.daraja_client import (
    AuthFailureReason,
    DarajaClient,
    GatewayAuthError,
    GatewayTransportError,
)

TOKEN_RESPONSE = {"access_token": "test_token", "expires_in": "3599"}


def make_client(
    settings: Settings,
    routes: Dict[str, Callable[[httpx.Request], httpx.Response]],
    seen: List[httpx.Request],
) -> DarajaClient:
    """Client whose HTTP calls are answered by ``routes`` keyed on URL path."""

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return routes[request.url.path](request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DarajaClient(settings=settings, http_client=http_client)


def token_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=TOKEN_RESPONSE)


class TestRequestHelpers:
    """Phone normalisation, password, timestamp and rounding."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw",
        ["0712345678", "+254712345678", "254712345678", "712345678", "0712 345 678", "+254-712-345-678"],
    )
    def test_normalize_phone_number_equivalent_forms(self, raw: str) -> None:
        """Every accepted form of the same number normalises identically."""
        assert DarajaClient.normalize_phone_number(raw) == "254712345678"

    @pytest.mark.unit
    def test_normalize_phone_number_safaricom_01_prefix(self) -> None:
        """Test 01x numbers are handled like 07x numbers."""
        assert DarajaClient.normalize_phone_number("0112345678") == "254112345678"

    @pytest.mark.unit
    def test_normalize_phone_number_passes_through_unknown_shapes(self) -> None:
        """Unrecognised input comes back as digits only."""
        assert DarajaClient.normalize_phone_number("12-34") == "1234"

    @pytest.mark.unit
    def test_generate_timestamp_format(self) -> None:
        """Timestamp is YYYYMMDDHHmmss."""
        stamp = DarajaClient.generate_timestamp(datetime(2024, 3, 5, 7, 8, 9))
        assert stamp == "20240305070809"

    @pytest.mark.unit
    def test_build_request_password(self, test_settings: Settings) -> None:
        """Password is base64 of short code, passkey and timestamp."""
        client = DarajaClient(settings=test_settings)
        password = client.build_request_password("20240305070809")

        decoded = base64.b64decode(password).decode()
        assert decoded == f"174379{test_settings.mpesa_passkey}20240305070809"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "amount,expected",
        [(Decimal("1000.00"), 1000), (Decimal("99.5"), 100), (Decimal("99.49"), 99), (1, 1), (10.5, 11)],
    )
    def test_round_amount(self, amount: Any, expected: int) -> None:
        """Amounts are rounded half up to whole shillings."""
        assert DarajaClient.round_amount(amount) == expected


class TestAccessToken:
    """Test suite for OAuth token acquisition."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acquire_access_token_success(self, test_settings: Settings) -> None:
        """Test token request uses basic auth with key and secret."""
        seen: List[httpx.Request] = []
        client = make_client(test_settings, {"/oauth/v1/generate": token_ok}, seen)

        token = await client.acquire_access_token()

        assert token == "test_token"
        expected = base64.b64encode(b"test_consumer_key:test_consumer_secret").decode()
        assert seen[0].headers["Authorization"] == f"Basic {expected}"
        assert seen[0].url.params["grant_type"] == "client_credentials"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,reason",
        [
            (400, AuthFailureReason.CREDENTIALS),
            (401, AuthFailureReason.CREDENTIALS),
            (500, AuthFailureReason.PROVIDER_UNAVAILABLE),
            (503, AuthFailureReason.PROVIDER_UNAVAILABLE),
        ],
    )
    async def test_acquire_access_token_http_errors(
        self, test_settings: Settings, status_code: int, reason: AuthFailureReason
    ) -> None:
        """4xx means bad credentials, 5xx means the provider is down."""
        seen: List[httpx.Request] = []
        client = make_client(
            test_settings,
            {"/oauth/v1/generate": lambda request: httpx.Response(status_code, text="error")},
            seen,
        )

        with pytest.raises(GatewayAuthError) as exc_info:
            await client.acquire_access_token()

        assert exc_info.value.reason is reason
        assert exc_info.value.status_code == status_code

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acquire_access_token_connectivity_error(self, test_settings: Settings) -> None:
        """No response at all is a connectivity failure."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(test_settings, {"/oauth/v1/generate": refuse}, [])

        with pytest.raises(GatewayAuthError) as exc_info:
            await client.acquire_access_token()

        assert exc_info.value.reason is AuthFailureReason.CONNECTIVITY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acquire_access_token_missing_token(self, test_settings: Settings) -> None:
        """A 2xx without access_token is a malformed response."""
        client = make_client(
            test_settings,
            {"/oauth/v1/generate": lambda request: httpx.Response(200, json={"expires_in": "3599"})},
            [],
        )

        with pytest.raises(GatewayAuthError) as exc_info:
            await client.acquire_access_token()

        assert exc_info.value.reason is AuthFailureReason.MALFORMED_RESPONSE


class TestSubmitPushPayment:
    """Test suite for STK push submission."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_push_payment_success(self, test_settings: Settings) -> None:
        """Test accepted push returns provider identifiers and a well-formed payload."""
        seen: List[httpx.Request] = []
        client = make_client(
            test_settings,
            {
                "/oauth/v1/generate": token_ok,
                "/mpesa/stkpush/v1/processrequest": lambda request: httpx.Response(
                    200,
                    json={
                        "MerchantRequestID": "29115-34620561-1",
                        "CheckoutRequestID": "ws_CO_191220191020363925",
                        "ResponseCode": "0",
                        "ResponseDescription": "Success. Request accepted for processing",
                        "CustomerMessage": "Success. Request accepted for processing",
                    },
                ),
            },
            seen,
        )

        result = await client.submit_push_payment("0712345678", Decimal("999.50"), 42)

        assert result.success is True
        assert result.checkout_request_id == "ws_CO_191220191020363925"
        assert result.merchant_request_id == "29115-34620561-1"
        assert result.customer_message == "Success. Request accepted for processing"

        push_request = seen[1]
        assert push_request.headers["Authorization"] == "Bearer test_token"
        payload = json.loads(push_request.content)
        assert payload["BusinessShortCode"] == "174379"
        assert payload["PartyB"] == "174379"
        assert payload["PartyA"] == "254712345678"
        assert payload["PhoneNumber"] == "254712345678"
        assert payload["Amount"] == 1000
        assert payload["TransactionType"] == "CustomerPayBillOnline"
        assert payload["CallBackURL"] == "https://shop.example.com/mpesa/callback"
        assert payload["AccountReference"] == "TechWave"
        assert payload["TransactionDesc"] == "Payment for Order 42"
        assert len(payload["Timestamp"]) == 14
        assert base64.b64decode(payload["Password"]).decode().endswith(payload["Timestamp"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_push_payment_custom_reference(self, test_settings: Settings) -> None:
        """Test account reference override."""
        seen: List[httpx.Request] = []
        client = make_client(
            test_settings,
            {
                "/oauth/v1/generate": token_ok,
                "/mpesa/stkpush/v1/processrequest": lambda request: httpx.Response(
                    200, json={"ResponseCode": "0", "CheckoutRequestID": "ws_1", "MerchantRequestID": "m_1"}
                ),
            },
            seen,
        )

        await client.submit_push_payment("0712345678", 10, 7, reference="INV-7")

        assert json.loads(seen[1].content)["AccountReference"] == "INV-7"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_push_payment_rejected(self, test_settings: Settings) -> None:
        """Test provider rejection is returned, not raised."""
        client = make_client(
            test_settings,
            {
                "/oauth/v1/generate": token_ok,
                "/mpesa/stkpush/v1/processrequest": lambda request: httpx.Response(
                    400,
                    json={
                        "requestId": "1234-5678",
                        "errorCode": "400.002.02",
                        "errorMessage": "Bad Request - Invalid PhoneNumber",
                    },
                ),
            },
            [],
        )

        result = await client.submit_push_payment("0712345678", 10, 7)

        assert result.success is False
        assert result.error == "Bad Request - Invalid PhoneNumber"
        assert result.response_code == "400.002.02"
        assert result.checkout_request_id is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_push_payment_nonzero_response_code(self, test_settings: Settings) -> None:
        """Test HTTP 200 with a non-zero ResponseCode is a rejection."""
        client = make_client(
            test_settings,
            {
                "/oauth/v1/generate": token_ok,
                "/mpesa/stkpush/v1/processrequest": lambda request: httpx.Response(
                    200, json={"ResponseCode": "1", "ResponseDescription": "Rejected"}
                ),
            },
            [],
        )

        result = await client.submit_push_payment("0712345678", 10, 7)

        assert result.success is False
        assert result.response_code == "1"
        assert result.error == "Rejected"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_push_payment_transport_error(self, test_settings: Settings) -> None:
        """Test timeout on the push request raises a transport error."""

        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(
            test_settings,
            {"/oauth/v1/generate": token_ok, "/mpesa/stkpush/v1/processrequest": timeout},
            [],
        )

        with pytest.raises(GatewayTransportError) as exc_info:
            await client.submit_push_payment("0712345678", 10, 7)

        assert exc_info.value.operation == "stk_push"
        assert isinstance(exc_info.value.original_error, httpx.ReadTimeout)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_push_payment_auth_failure_skips_push(self, test_settings: Settings) -> None:
        """Test no push is sent when the token cannot be obtained."""
        seen: List[httpx.Request] = []
        client = make_client(
            test_settings,
            {"/oauth/v1/generate": lambda request: httpx.Response(401, text="Unauthorized")},
            seen,
        )

        with pytest.raises(GatewayAuthError):
            await client.submit_push_payment("0712345678", 10, 7)

        assert len(seen) == 1


class TestQueryStatus:
    """Test suite for STK push status queries."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_status_success(self, test_settings: Settings) -> None:
        """Test provider result code and description are returned verbatim."""
        seen: List[httpx.Request] = []
        client = make_client(
            test_settings,
            {
                "/oauth/v1/generate": token_ok,
                "/mpesa/stkpushquery/v1/query": lambda request: httpx.Response(
                    200,
                    json={
                        "ResponseCode": "0",
                        "MerchantRequestID": "29115-34620561-1",
                        "CheckoutRequestID": "ws_1",
                        "ResultCode": "1032",
                        "ResultDesc": "Request cancelled by user",
                    },
                ),
            },
            seen,
        )

        result = await client.query_status("ws_1")

        assert result.success is True
        assert result.result_code == "1032"
        assert result.result_desc == "Request cancelled by user"
        assert json.loads(seen[1].content)["CheckoutRequestID"] == "ws_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_status_rejected(self, test_settings: Settings) -> None:
        """Test a provider error body yields a failed result."""
        client = make_client(
            test_settings,
            {
                "/oauth/v1/generate": token_ok,
                "/mpesa/stkpushquery/v1/query": lambda request: httpx.Response(
                    500,
                    json={"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
                ),
            },
            [],
        )

        result = await client.query_status("ws_1")

        assert result.success is False
        assert result.error == "The transaction is being processed"
        assert result.response_code == "500.001.1001"
