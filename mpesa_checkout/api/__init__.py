"""FastAPI application and routes."""
from .main import app
from .schemas import (
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusResponse,
    QueryPaymentRequest,
)

__all__ = [
    "app",
    "InitiatePaymentRequest",
    "InitiatePaymentResponse",
    "PaymentStatusResponse",
    "QueryPaymentRequest",
]
