"""FastAPI dependencies for the checkout services."""
from functools import lru_cache

from fastapi import Depends

from mpesa_checkout.core.reconciliation import ReconciliationEngine
from mpesa_checkout.database.connection import get_session_factory
from mpesa_checkout.integrations.callback_handler import CallbackHandler
from mpesa_checkout.monitoring.health import HealthCheck


@lru_cache()
def get_reconciliation_engine() -> ReconciliationEngine:
    """Process-wide engine bound to the default session factory."""
    return ReconciliationEngine(session_factory=get_session_factory())


def get_callback_handler(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> CallbackHandler:
    return CallbackHandler(engine)


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()
