"""Database package for the M-Pesa checkout service."""
from .connection import close_db, create_session_factory, get_engine, get_session_factory, init_db
from .models import (
    TERMINAL_STATUSES,
    Base,
    MpesaTransaction,
    Order,
    PaymentRecord,
)

__all__ = [
    "Base",
    "MpesaTransaction",
    "Order",
    "PaymentRecord",
    "TERMINAL_STATUSES",
    "create_session_factory",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
