"""
Pydantic schemas for API request/response models.

Field aliases follow the storefront client's camelCase names.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InitiatePaymentRequest(BaseModel):
    """
    Request schema for starting an STK push.

    Fields are optional here so that missing values reach the engine and are
    reported as validation errors with the offending field name.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"phoneNumber": "0712345678", "amount": 1000, "orderId": 42},
            ]
        },
    )

    phone_number: Optional[str] = Field(
        default=None, alias="phoneNumber", description="Payer phone (07XXXXXXXX or 254XXXXXXXXX)"
    )
    amount: Optional[Decimal] = Field(default=None, description="Amount in shillings")
    order_id: Optional[int] = Field(default=None, alias="orderId", description="Order being paid")
    account_reference: Optional[str] = Field(
        default=None, alias="accountReference", description="Account reference shown to the payer"
    )


class InitiatePaymentResponse(BaseModel):
    """Response schema for an accepted STK push."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(default=True, description="Push was accepted by Daraja")
    message: str = Field(..., description="Status message")
    checkout_request_id: str = Field(..., alias="checkoutRequestID")
    merchant_request_id: Optional[str] = Field(default=None, alias="merchantRequestID")
    customer_message: Optional[str] = Field(default=None, alias="customerMessage")


class QueryPaymentRequest(BaseModel):
    """Request schema for a status query."""

    model_config = ConfigDict(populate_by_name=True)

    checkout_request_id: Optional[str] = Field(default=None, alias="checkoutRequestID")


class PaymentStatusResponse(BaseModel):
    """Response schema for a status query."""

    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(..., description="pending, completed, failed or cancelled")
    result_code: Optional[str] = Field(default=None, alias="resultCode")
    result_desc: Optional[str] = Field(default=None, alias="resultDesc")
    mpesa_receipt_number: Optional[str] = Field(default=None, alias="mpesaReceiptNumber")
    source: str = Field(default="ledger", description="Where the answer came from")
    data: Optional[Dict[str, Any]] = Field(
        default=None, description="Raw Daraja query response when answered by the provider"
    )


class CallbackAck(BaseModel):
    """Acknowledgement returned to Daraja."""

    model_config = ConfigDict(populate_by_name=True)

    result_code: int = Field(..., alias="ResultCode")
    result_desc: str = Field(..., alias="ResultDesc")


class PendingSummaryResponse(BaseModel):
    """Response schema for the pending ledger summary."""

    count: int = Field(..., description="Pending ledger entries")
    total_amount: Decimal = Field(..., description="Sum of pending amounts")
    oldest_pending_seconds: Optional[float] = Field(
        default=None, description="Age of the oldest pending entry"
    )


class ExpireResponse(BaseModel):
    """Response schema for a manual sweep."""

    expired: int = Field(..., description="Entries moved from pending to failed")


class ReconciliationResponse(BaseModel):
    """Response schema for the discrepancy report."""

    since: str = Field(..., description="Start of the window (ISO 8601)")
    discrepancy_count: int = Field(..., description="Number of discrepancies")
    discrepancies: List[Dict[str, Any]] = Field(..., description="Completed payments with unpaid orders")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
