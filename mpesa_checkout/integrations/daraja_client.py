"""
Safaricom Daraja (M-Pesa) API client.

Implements:
- OAuth access token acquisition (not cached, one per operation)
- Lipa Na M-Pesa Online (STK push) submission
- STK push status query
- Error classification into auth, transport and business rejection

Provider rejections are returned as failed results so the caller can decide
what to persist. Only transport failures and auth failures raise. There is no
retry loop here; callers retry at a higher layer.
"""
import base64
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog

from mpesa_checkout.config import Settings, get_settings
from mpesa_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_NON_DIGITS = re.compile(r"\D")


class AuthFailureReason(Enum):
    """Why an access token could not be obtained."""

    CREDENTIALS = "credentials"  # 4xx: key/secret misconfigured
    PROVIDER_UNAVAILABLE = "provider_unavailable"  # 5xx from the OAuth endpoint
    CONNECTIVITY = "connectivity"  # no response at all
    MALFORMED_RESPONSE = "malformed_response"  # 2xx without access_token


class DarajaError(Exception):
    """Base exception for Daraja-related errors."""

    pass


class GatewayAuthError(DarajaError):
    """Raised when an access token cannot be acquired."""

    def __init__(
        self,
        message: str,
        reason: AuthFailureReason,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code


class GatewayTransportError(DarajaError):
    """Raised on timeouts, DNS, TLS and connection failures. Retryable by the caller."""

    def __init__(
        self,
        message: str,
        operation: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.original_error = original_error


@dataclass
class PushResult:
    """Outcome of an STK push submission."""

    success: bool
    checkout_request_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    response_code: Optional[str] = None
    response_description: Optional[str] = None
    customer_message: Optional[str] = None
    error: Optional[str] = None


@dataclass
class StatusQueryResult:
    """Outcome of an STK push status query."""

    success: bool
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    response_code: Optional[str] = None


class DarajaClient:
    """
    Async wrapper for the Daraja API.

    Every request carries the configured timeout. An ``httpx.AsyncClient`` may
    be injected (tests use one backed by ``httpx.MockTransport``); otherwise a
    short-lived client is opened per call.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._http_client = http_client

        logger.info(
            "daraja_client_initialized",
            environment=self.settings.mpesa_environment,
            short_code=self.settings.mpesa_short_code,
        )

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient() as client:
                yield client

    @staticmethod
    def normalize_phone_number(raw: str) -> str:
        """
        Convert a Kenyan phone number to the ``2547XXXXXXXX`` form Daraja expects.

        Accepts ``07…``/``01…``, ``+254…``, ``254…`` and bare 9-digit
        subscriber numbers. Anything else comes back as its digits only and is
        left for the provider to reject.
        """
        cleaned = _NON_DIGITS.sub("", raw or "")

        if cleaned.startswith("0"):
            return "254" + cleaned[1:]
        if cleaned.startswith("254"):
            return cleaned
        if len(cleaned) == 9:
            return "254" + cleaned
        return cleaned

    @staticmethod
    def generate_timestamp(now: Optional[datetime] = None) -> str:
        """Timestamp in ``YYYYMMDDHHmmss`` form from local time."""
        return (now or datetime.now()).strftime("%Y%m%d%H%M%S")

    def build_request_password(self, timestamp: str) -> str:
        """Password = base64(short code + passkey + timestamp)."""
        raw = f"{self.settings.mpesa_short_code}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @staticmethod
    def round_amount(amount: Decimal | float | int) -> int:
        """Daraja only accepts whole shillings; round half up."""
        return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def acquire_access_token(self) -> str:
        """
        Fetch a bearer token using the consumer key and secret.

        Returns:
            str: Access token

        Raises:
            GatewayAuthError: If the token cannot be obtained
        """
        credentials = base64.b64encode(
            f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}".encode()
        ).decode("ascii")
        start_time = time.time()

        try:
            async with self._client() as client:
                response = await client.get(
                    self.settings.daraja_url("oauth"),
                    headers={"Authorization": f"Basic {credentials}"},
                    timeout=self.settings.mpesa_timeout_seconds,
                )
        except httpx.TransportError as e:
            metrics.record_daraja_error("auth")
            logger.error(
                "daraja_oauth_unreachable",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GatewayAuthError(
                f"Could not reach Daraja OAuth endpoint: {e}",
                AuthFailureReason.CONNECTIVITY,
            ) from e

        duration = time.time() - start_time
        metrics.record_daraja_call("oauth", str(response.status_code), duration)

        if response.is_error:
            reason = (
                AuthFailureReason.CREDENTIALS
                if response.is_client_error
                else AuthFailureReason.PROVIDER_UNAVAILABLE
            )
            metrics.record_daraja_error("auth")
            logger.error(
                "daraja_oauth_rejected",
                status_code=response.status_code,
                reason=reason.value,
                body=response.text,
            )
            raise GatewayAuthError(
                f"Daraja OAuth request failed with HTTP {response.status_code}",
                reason,
                status_code=response.status_code,
            )

        token = self._json_body(response).get("access_token")
        if not token:
            metrics.record_daraja_error("auth")
            logger.error(
                "daraja_oauth_malformed_response",
                status_code=response.status_code,
                body=response.text,
            )
            raise GatewayAuthError(
                "Daraja OAuth response did not contain an access token",
                AuthFailureReason.MALFORMED_RESPONSE,
                status_code=response.status_code,
            )

        return token

    async def _post(
        self,
        operation: str,
        payload: Dict[str, Any],
        access_token: str,
        **log_context: Any,
    ) -> httpx.Response:
        start_time = time.time()
        try:
            async with self._client() as client:
                response = await client.post(
                    self.settings.daraja_url(operation),
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                    },
                    timeout=self.settings.mpesa_timeout_seconds,
                )
        except httpx.TransportError as e:
            metrics.record_daraja_error("transport")
            logger.error(
                "daraja_transport_error",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **log_context,
            )
            raise GatewayTransportError(
                f"Daraja {operation} request failed: {e}",
                operation=operation,
                original_error=e,
            ) from e

        metrics.record_daraja_call(operation, str(response.status_code), time.time() - start_time)
        return response

    async def submit_push_payment(
        self,
        phone: str,
        amount: Decimal | float | int,
        order_id: int | str,
        reference: Optional[str] = None,
    ) -> PushResult:
        """
        Send an STK push prompt to the payer's phone.

        Args:
            phone: Payer phone number in any accepted format
            amount: Amount in shillings (rounded to a whole number)
            order_id: Order being paid, used in the transaction description
            reference: Optional account reference shown to the payer

        Returns:
            PushResult: Provider identifiers on success, error on rejection

        Raises:
            GatewayAuthError: If no access token could be obtained
            GatewayTransportError: If the push request got no response
        """
        access_token = await self.acquire_access_token()

        formatted_phone = self.normalize_phone_number(phone)
        timestamp = self.generate_timestamp()
        short_code = self.settings.mpesa_short_code

        payload = {
            "BusinessShortCode": short_code,
            "Password": self.build_request_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": self.round_amount(amount),
            "PartyA": formatted_phone,
            "PartyB": short_code,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": reference or self.settings.mpesa_account_reference,
            "TransactionDesc": f"Payment for Order {order_id}",
        }

        logger.info(
            "initiating_stk_push",
            phone=formatted_phone,
            amount=str(amount),
            order_id=order_id,
        )

        response = await self._post("stk_push", payload, access_token, order_id=order_id)
        data = self._json_body(response)
        response_code = data.get("ResponseCode")

        if response.is_success and str(response_code) == "0":
            logger.info(
                "stk_push_accepted",
                order_id=order_id,
                checkout_request_id=data.get("CheckoutRequestID"),
                merchant_request_id=data.get("MerchantRequestID"),
            )
            return PushResult(
                success=True,
                checkout_request_id=data.get("CheckoutRequestID"),
                merchant_request_id=data.get("MerchantRequestID"),
                response_code=str(response_code),
                response_description=data.get("ResponseDescription"),
                customer_message=data.get("CustomerMessage"),
            )

        metrics.record_daraja_error("rejected")
        logger.error(
            "stk_push_rejected",
            order_id=order_id,
            phone=formatted_phone,
            status_code=response.status_code,
            body=data or response.text,
        )
        code = response_code if response_code is not None else data.get("errorCode")
        return PushResult(
            success=False,
            response_code=str(code) if code is not None else None,
            response_description=data.get("ResponseDescription"),
            error=data.get("errorMessage")
            or data.get("ResponseDescription")
            or "Failed to initiate payment",
        )

    async def query_status(self, checkout_request_id: str) -> StatusQueryResult:
        """
        Ask Daraja for the outcome of an STK push.

        Args:
            checkout_request_id: Provider checkout request ID

        Returns:
            StatusQueryResult: Provider result code and description verbatim

        Raises:
            GatewayAuthError: If no access token could be obtained
            GatewayTransportError: If the query got no response
        """
        access_token = await self.acquire_access_token()
        timestamp = self.generate_timestamp()

        payload = {
            "BusinessShortCode": self.settings.mpesa_short_code,
            "Password": self.build_request_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        logger.info("querying_stk_push_status", checkout_request_id=checkout_request_id)

        response = await self._post(
            "stk_query", payload, access_token, checkout_request_id=checkout_request_id
        )
        data = self._json_body(response)

        if response.is_success and "ResultCode" in data:
            return StatusQueryResult(
                success=True,
                result_code=str(data["ResultCode"]),
                result_desc=data.get("ResultDesc"),
                data=data,
            )

        metrics.record_daraja_error("rejected")
        logger.error(
            "stk_query_rejected",
            checkout_request_id=checkout_request_id,
            status_code=response.status_code,
            body=data or response.text,
        )
        error_code = data.get("errorCode")
        return StatusQueryResult(
            success=False,
            data=data,
            error=data.get("errorMessage") or "Failed to query payment status",
            response_code=str(error_code) if error_code is not None else None,
        )
