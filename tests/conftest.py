"""
Pytest configuration and fixtures.

Unit and integration tests run against a file-backed SQLite database through
aiosqlite. Row locks are a no-op there; the race tests use PostgreSQL.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from mpesa_checkout.api.dependencies import get_health_check, get_reconciliation_engine
from mpesa_checkout.api.main import app
from mpesa_checkout.config import Settings
from mpesa_checkout.core.reconciliation import ReconciliationEngine
from mpesa_checkout.database.connection import create_session_factory, init_db
from mpesa_checkout.database.models import MpesaTransaction, Order, PaymentRecord
from mpesa_checkout.integrations.daraja_client import DarajaClient, PushResult
from mpesa_checkout.monitoring.health import HealthCheck

CHECKOUT_REQUEST_ID = "ws_CO_191220191020363925"
MERCHANT_REQUEST_ID = "29115-34620561-1"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        mpesa_consumer_key="test_consumer_key",
        mpesa_consumer_secret="test_consumer_secret",
        mpesa_short_code="174379",
        mpesa_passkey="bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919",
        mpesa_environment="sandbox",
        mpesa_callback_url="https://shop.example.com/mpesa/callback",
        mpesa_timeout_seconds=5.0,
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="mpesa-checkout-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def seed_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Factory inserting an order and its unconfirmed M-Pesa payment row."""

    async def _seed(total: Decimal = Decimal("1000.00"), with_payment: bool = True) -> int:
        async with session_factory() as db:
            async with db.begin():
                order = Order(user_id=1, total_amount=total, status="pending")
                db.add(order)
                await db.flush()
                if with_payment:
                    db.add(PaymentRecord(order_id=order.order_id, method="mpesa", amount=total))
            return order.order_id

    return _seed


@pytest.fixture
def seed_pending(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Factory inserting a pending ledger entry for an order."""

    async def _seed(
        order_id: int,
        checkout_request_id: str = CHECKOUT_REQUEST_ID,
        amount: Decimal = Decimal("1000.00"),
        created_at: Optional[Any] = None,
    ) -> None:
        async with session_factory() as db:
            async with db.begin():
                entry = MpesaTransaction(
                    order_id=order_id,
                    checkout_request_id=checkout_request_id,
                    merchant_request_id=MERCHANT_REQUEST_ID,
                    phone_number="254712345678",
                    amount=amount,
                    status="pending",
                )
                if created_at is not None:
                    entry.created_at = created_at
                db.add(entry)

    return _seed


@pytest.fixture
def load_state(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Read back the ledger entry, order and payment row for assertions."""

    async def _load(order_id: int, checkout_request_id: str = CHECKOUT_REQUEST_ID) -> Dict[str, Any]:
        async with session_factory() as db:
            entry = (
                await db.execute(
                    select(MpesaTransaction).where(
                        MpesaTransaction.checkout_request_id == checkout_request_id
                    )
                )
            ).scalar_one_or_none()
            order = (
                await db.execute(select(Order).where(Order.order_id == order_id))
            ).scalar_one()
            payment = (
                await db.execute(select(PaymentRecord).where(PaymentRecord.order_id == order_id))
            ).scalar_one_or_none()
        return {"entry": entry, "order": order, "payment": payment}

    return _load


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Daraja client double that accepts every push."""
    gateway = AsyncMock(spec=DarajaClient)
    gateway.submit_push_payment.return_value = PushResult(
        success=True,
        checkout_request_id=CHECKOUT_REQUEST_ID,
        merchant_request_id=MERCHANT_REQUEST_ID,
        response_code="0",
        response_description="Success. Request accepted for processing",
        customer_message="Success. Request accepted for processing",
    )
    return gateway


@pytest.fixture
def engine(
    session_factory: async_sessionmaker[AsyncSession],
    mock_gateway: AsyncMock,
    test_settings: Settings,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        session_factory=session_factory,
        gateway=mock_gateway,
        settings=test_settings,
    )


@pytest.fixture
def callback_payload() -> Callable[..., Dict[str, Any]]:
    """Factory for Daraja callback bodies."""

    def _build(
        checkout_request_id: str = CHECKOUT_REQUEST_ID,
        result_code: int = 0,
        result_desc: Optional[str] = None,
        receipt: str = "NLJ7RT61SV",
        amount: Any = 1000,
    ) -> Dict[str, Any]:
        stk_callback: Dict[str, Any] = {
            "MerchantRequestID": MERCHANT_REQUEST_ID,
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc
            or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
        }
        if result_code == 0:
            stk_callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": 20191219102115},
                    {"Name": "PhoneNumber", "Value": 254712345678},
                ]
            }
        return {"Body": {"stkCallback": stk_callback}}

    return _build


@pytest_asyncio.fixture
async def client(
    engine: ReconciliationEngine,
    session_factory: async_sessionmaker[AsyncSession],
    mock_gateway: AsyncMock,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client wired to the test database."""
    app.dependency_overrides[get_reconciliation_engine] = lambda: engine
    app.dependency_overrides[get_health_check] = lambda: HealthCheck(
        session_factory=session_factory, gateway=mock_gateway
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
