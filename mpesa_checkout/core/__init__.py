"""Ledger, order store and reconciliation engine."""
from mpesa_checkout.core.ledger import TransactionLedger
from mpesa_checkout.core.order_store import OrderPaymentStore
from mpesa_checkout.core.reconciliation import (
    AmountMismatch,
    CheckoutError,
    CheckoutInitiation,
    CheckoutValidationError,
    GatewayBusinessRejection,
    OrderNotFound,
    PaymentStatus,
    PersistenceError,
    ReconcileOutcome,
    ReconcileResult,
    ReconciliationEngine,
    UnknownTransaction,
)

__all__ = [
    "AmountMismatch",
    "CheckoutError",
    "CheckoutInitiation",
    "CheckoutValidationError",
    "GatewayBusinessRejection",
    "OrderNotFound",
    "OrderPaymentStore",
    "PaymentStatus",
    "PersistenceError",
    "ReconcileOutcome",
    "ReconcileResult",
    "ReconciliationEngine",
    "TransactionLedger",
    "UnknownTransaction",
]
