"""
Reconciliation engine for M-Pesa STK push checkouts.

Binds a checkout intent to its eventual order outcome:
1. initiate: validate, check the order total, send the push, record a
   pending ledger entry
2. reconcile: apply a provider callback to ledger, payment and order in one
   transaction, holding a row lock on the ledger entry
3. query_and_sync: report status without writing anything
4. expire_stale_transactions: fail entries the provider never called back on

A ledger entry leaves ``pending`` exactly once. Callbacks for terminal or
unknown entries are acknowledged and change nothing.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_checkout.config import Settings, get_settings
from mpesa_checkout.core.ledger import TransactionLedger
from mpesa_checkout.core.order_store import OrderPaymentStore
from mpesa_checkout.database.models import MpesaTransaction, utcnow
from mpesa_checkout.integrations.callbacks import StkCallback
from mpesa_checkout.integrations.daraja_client import DarajaClient
from mpesa_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PHONE_PATTERN = re.compile(r"^(\+?254|0)[17]\d{8}$")
MINIMUM_AMOUNT = Decimal("1")

TIMEOUT_RESULT_CODE = "TIMEOUT"
TIMEOUT_RESULT_DESC = "Transaction timeout - no response from M-Pesa"


class CheckoutError(Exception):
    """Base exception for checkout errors surfaced to the paying client."""

    pass


class CheckoutValidationError(CheckoutError):
    """Raised when initiation input is invalid. No I/O has happened."""

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


class OrderNotFound(CheckoutError):
    """Raised when the order being paid does not exist."""

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class AmountMismatch(CheckoutError):
    """Raised when the requested amount differs from the order total."""

    def __init__(self, requested: Decimal, expected: Decimal):
        super().__init__(
            f"Payment amount {requested} does not match order total {expected}"
        )
        self.requested = requested
        self.expected = expected


class GatewayBusinessRejection(CheckoutError):
    """Raised when Daraja explicitly declines a push or status query."""

    def __init__(self, message: str, response_code: Optional[str] = None):
        super().__init__(message)
        self.response_code = response_code


class UnknownTransaction(CheckoutError):
    """Raised when a checkout request ID is not in the ledger."""

    def __init__(self, checkout_request_id: str):
        super().__init__(f"Transaction {checkout_request_id} not found")
        self.checkout_request_id = checkout_request_id


class PersistenceError(CheckoutError):
    """Raised when an accepted push could not be recorded in the ledger."""

    pass


class ReconcileOutcome(Enum):
    """What applying a callback did."""

    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN_TRANSACTION = "unknown_transaction"
    ALREADY_TERMINAL = "already_terminal"
    PERSISTENCE_ERROR = "persistence_error"


@dataclass
class ReconcileResult:
    """Result of ``ReconciliationEngine.reconcile``."""

    outcome: ReconcileOutcome
    checkout_request_id: str
    order_id: Optional[int] = None
    status: Optional[str] = None


@dataclass
class CheckoutInitiation:
    """A push the provider accepted. Says nothing about payment completion."""

    checkout_request_id: str
    merchant_request_id: str
    customer_message: Optional[str]
    order_id: int


@dataclass
class PaymentStatus:
    """Answer to a status query."""

    status: str
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    source: str = "ledger"  # ledger or provider
    data: Dict[str, Any] = field(default_factory=dict)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value)) if value is not None else None
    except InvalidOperation:
        return None


class ReconciliationEngine:
    """
    State machine from checkout intent to order outcome.

    The storage handle is injected as a session factory; each operation opens
    its own session and transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Optional[DarajaClient] = None,
        ledger: Optional[TransactionLedger] = None,
        order_store: Optional[OrderPaymentStore] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            session_factory: Factory for database sessions
            gateway: Optional Daraja client
            ledger: Optional ledger repository
            order_store: Optional orders/payments repository
            settings: Optional settings (defaults to environment)
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.gateway = gateway or DarajaClient(self.settings)
        self.ledger = ledger or TransactionLedger()
        self.order_store = order_store or OrderPaymentStore()

        logger.info("reconciliation_engine_initialized")

    @staticmethod
    def _validate_initiation(
        phone_number: Optional[str],
        amount: Any,
        order_id: Optional[int],
    ) -> Decimal:
        """
        Validate initiation input.

        Returns:
            Decimal: The amount as a Decimal

        Raises:
            CheckoutValidationError: If validation fails
        """
        if not phone_number:
            raise CheckoutValidationError("Phone number is required", field="phoneNumber")
        if amount is None or amount == "":
            raise CheckoutValidationError("Amount is required", field="amount")
        if not order_id:
            raise CheckoutValidationError("Order ID is required", field="orderId")

        if not PHONE_PATTERN.match(phone_number):
            raise CheckoutValidationError(
                "Invalid phone number format. Use 254XXXXXXXXX or 07XXXXXXXX",
                field="phoneNumber",
            )

        parsed_amount = _as_decimal(amount)
        if parsed_amount is None or not parsed_amount.is_finite():
            raise CheckoutValidationError("Amount must be a number", field="amount")
        if parsed_amount < MINIMUM_AMOUNT:
            raise CheckoutValidationError("Amount must be at least KSh 1", field="amount")

        return parsed_amount

    async def initiate(
        self,
        phone_number: Optional[str],
        amount: Any,
        order_id: Optional[int],
        account_reference: Optional[str] = None,
    ) -> CheckoutInitiation:
        """
        Send an STK push for an order and record it as pending.

        Args:
            phone_number: Payer phone number
            amount: Amount in shillings, must match the order total
            order_id: Order being paid
            account_reference: Optional account reference for the prompt

        Returns:
            CheckoutInitiation: Provider identifiers and customer message

        Raises:
            CheckoutValidationError: If input validation fails
            OrderNotFound: If the order does not exist
            AmountMismatch: If the amount differs from the order total
            GatewayBusinessRejection: If Daraja declined the push
            GatewayAuthError: If no access token could be obtained
            GatewayTransportError: If Daraja could not be reached
            PersistenceError: If the accepted push could not be recorded
        """
        try:
            requested = self._validate_initiation(phone_number, amount, order_id)
        except CheckoutValidationError as e:
            metrics.record_push_request("invalid")
            logger.warning("checkout_validation_failed", field=e.field, error=str(e))
            raise

        logger.info(
            "checkout_initiation_started",
            order_id=order_id,
            amount=str(requested),
        )

        async with self.session_factory() as db:
            order = await self.order_store.get_order(db, order_id)
            if order is None:
                metrics.record_push_request("order_not_found")
                logger.warning("checkout_order_not_found", order_id=order_id)
                raise OrderNotFound(order_id)

            expected = Decimal(str(order.total_amount))
            if abs(requested - expected) > self.settings.amount_tolerance:
                metrics.record_push_request("amount_mismatch")
                logger.warning(
                    "checkout_amount_mismatch",
                    order_id=order_id,
                    requested=str(requested),
                    expected=str(expected),
                )
                raise AmountMismatch(requested, expected)

            existing = await self.ledger.find_pending_for_order(db, order_id)
            if existing is not None:
                logger.warning(
                    "checkout_pending_entry_exists",
                    order_id=order_id,
                    checkout_request_id=existing.checkout_request_id,
                )

        # No database connection is held across the provider call
        result = await self.gateway.submit_push_payment(
            phone_number, requested, order_id, account_reference
        )

        if not result.success:
            metrics.record_push_request("rejected", float(requested))
            logger.warning(
                "checkout_push_rejected",
                order_id=order_id,
                response_code=result.response_code,
                error=result.error,
            )
            raise GatewayBusinessRejection(
                result.error or "Failed to initiate payment", result.response_code
            )

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    await self.ledger.record_pending(
                        db,
                        order_id=order_id,
                        checkout_request_id=result.checkout_request_id,
                        merchant_request_id=result.merchant_request_id or "",
                        phone_number=DarajaClient.normalize_phone_number(phone_number),
                        amount=requested,
                    )
        except SQLAlchemyError as e:
            metrics.record_push_request("error", float(requested))
            logger.error(
                "checkout_ledger_write_failed",
                order_id=order_id,
                checkout_request_id=result.checkout_request_id,
                merchant_request_id=result.merchant_request_id,
                error=str(e),
                exc_info=True,
            )
            raise PersistenceError(
                f"Push {result.checkout_request_id} was sent but could not be recorded"
            ) from e

        metrics.record_push_request("accepted", float(requested))
        logger.info(
            "checkout_initiated",
            order_id=order_id,
            checkout_request_id=result.checkout_request_id,
        )

        return CheckoutInitiation(
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            customer_message=result.customer_message,
            order_id=order_id,
        )

    async def _apply_success(
        self, db: AsyncSession, entry: MpesaTransaction, callback: StkCallback
    ) -> bool:
        receipt = callback.metadata_value("MpesaReceiptNumber")
        receipt = str(receipt) if receipt is not None else None
        transaction_date = _as_int(callback.metadata_value("TransactionDate"))
        paid_amount = _as_decimal(callback.metadata_value("Amount"))

        if paid_amount is not None and abs(paid_amount - entry.amount) >= Decimal("1"):
            # Daraja charges the rounded amount, so anything under a shilling is expected
            logger.warning(
                "callback_amount_differs",
                checkout_request_id=entry.checkout_request_id,
                recorded=str(entry.amount),
                paid=str(paid_amount),
            )

        if not await self.ledger.mark_completed(
            db,
            entry,
            receipt_number=receipt,
            transaction_date=transaction_date,
            result_code=str(callback.result_code),
            result_desc=callback.result_desc,
        ):
            return False

        await self.order_store.confirm_payment(db, entry.order_id, receipt, utcnow())
        await self.order_store.mark_order_processing(db, entry.order_id)

        logger.info(
            "payment_completed",
            checkout_request_id=entry.checkout_request_id,
            order_id=entry.order_id,
            mpesa_receipt_number=receipt,
            transaction_date=transaction_date,
            phone_number=callback.metadata_value("PhoneNumber"),
        )
        return True

    async def _apply_failure(
        self,
        db: AsyncSession,
        entry: MpesaTransaction,
        result_code: str,
        result_desc: Optional[str],
    ) -> bool:
        if not await self.ledger.mark_failed(db, entry, result_code, result_desc):
            return False

        await self.order_store.mark_order_failed(db, entry.order_id, result_desc or result_code)

        logger.warning(
            "payment_failed",
            checkout_request_id=entry.checkout_request_id,
            order_id=entry.order_id,
            result_code=result_code,
            result_desc=result_desc,
        )
        return True

    async def reconcile(self, callback: StkCallback) -> ReconcileResult:
        """
        Apply a shape-valid callback.

        The ledger entry is read with ``SELECT ... FOR UPDATE`` and the
        ledger, payment and order writes commit together or not at all.

        Args:
            callback: Parsed ``stkCallback`` object

        Returns:
            ReconcileResult: Outcome of the callback
        """
        checkout_request_id = callback.checkout_request_id
        log = logger.bind(
            checkout_request_id=checkout_request_id,
            merchant_request_id=callback.merchant_request_id,
            result_code=callback.result_code,
        )

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    entry = await self.ledger.get(db, checkout_request_id, for_update=True)

                    if entry is None:
                        log.warning("callback_unknown_transaction")
                        return ReconcileResult(
                            ReconcileOutcome.UNKNOWN_TRANSACTION, checkout_request_id
                        )

                    order_id = entry.order_id

                    if entry.is_terminal:
                        log.info("callback_already_terminal", status=entry.status)
                        return ReconcileResult(
                            ReconcileOutcome.ALREADY_TERMINAL,
                            checkout_request_id,
                            order_id=order_id,
                            status=entry.status,
                        )

                    if callback.is_success:
                        applied = await self._apply_success(db, entry, callback)
                        outcome = ReconcileOutcome.COMPLETED
                    else:
                        applied = await self._apply_failure(
                            db, entry, str(callback.result_code), callback.result_desc
                        )
                        outcome = ReconcileOutcome.FAILED

                    if not applied:
                        log.info("callback_lost_transition_race")
                        outcome = ReconcileOutcome.ALREADY_TERMINAL

                    status = entry.status

        except SQLAlchemyError as e:
            log.error("callback_persistence_error", error=str(e), exc_info=True)
            return ReconcileResult(ReconcileOutcome.PERSISTENCE_ERROR, checkout_request_id)

        return ReconcileResult(outcome, checkout_request_id, order_id=order_id, status=status)

    async def query_and_sync(self, checkout_request_id: str) -> PaymentStatus:
        """
        Report the status of a push without writing anything.

        Terminal entries are answered from the ledger. Pending entries are
        looked up with Daraja; the callback path stays the only writer.

        Raises:
            UnknownTransaction: If the ID is not in the ledger
            GatewayBusinessRejection: If Daraja declined the query
        """
        async with self.session_factory() as db:
            entry = await self.ledger.get(db, checkout_request_id)

        if entry is None:
            raise UnknownTransaction(checkout_request_id)

        if entry.is_terminal:
            return PaymentStatus(
                status=entry.status,
                result_code=entry.result_code,
                result_desc=entry.result_desc,
                receipt_number=entry.mpesa_receipt_number,
            )

        result = await self.gateway.query_status(checkout_request_id)
        if not result.success:
            raise GatewayBusinessRejection(
                result.error or "Failed to query payment status", result.response_code
            )

        return PaymentStatus(
            status="completed" if result.result_code == "0" else "pending",
            result_code=result.result_code,
            result_desc=result.result_desc,
            source="provider",
            data=result.data,
        )

    async def expire_stale_transactions(
        self, older_than: Optional[timedelta] = None, batch_size: int = 100
    ) -> int:
        """
        Fail pending entries the provider never called back on.

        Each expired entry gets the ``TIMEOUT`` result code and its order is
        failed, exactly as a failure callback would. A callback arriving
        afterwards is an already-terminal no-op.

        Returns:
            int: Number of entries expired
        """
        older_than = older_than or timedelta(minutes=self.settings.mpesa_pending_timeout_minutes)
        cutoff = utcnow() - older_than
        expired = 0

        async with self.session_factory() as db:
            async with db.begin():
                entries = await self.ledger.list_stale_pending(db, cutoff, limit=batch_size)
                for entry in entries:
                    if await self._apply_failure(
                        db, entry, TIMEOUT_RESULT_CODE, TIMEOUT_RESULT_DESC
                    ):
                        expired += 1

        metrics.record_sweep(expired)
        logger.info(
            "stale_transactions_expired",
            expired=expired,
            cutoff=cutoff.isoformat(),
        )
        return expired

    async def pending_summary(self) -> Dict[str, Any]:
        """Pending ledger depth, total amount and age of the oldest entry."""
        async with self.session_factory() as db:
            summary = await self.ledger.pending_summary(db)

        oldest = summary["oldest_created_at"]
        if oldest is not None and oldest.tzinfo is None:
            oldest = oldest.replace(tzinfo=utcnow().tzinfo)

        metrics.set_pending_depth(summary["count"])
        return {
            "count": summary["count"],
            "total_amount": summary["total_amount"],
            "oldest_pending_seconds": (
                (utcnow() - oldest).total_seconds() if oldest is not None else None
            ),
        }

    async def find_discrepancies(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Completed payments whose order was never moved to a paid status.

        Args:
            since: Start of the window (defaults to 24 hours ago)

        Returns:
            Dict[str, Any]: Window start and the discrepancies found
        """
        since = since or utcnow() - timedelta(days=1)

        async with self.session_factory() as db:
            discrepancies: List[Dict[str, Any]] = await self.order_store.find_unsynced_orders(
                db, since
            )

        if discrepancies:
            logger.warning(
                "reconciliation_discrepancies_detected",
                since=since.isoformat(),
                discrepancy_count=len(discrepancies),
            )

        return {
            "since": since.isoformat(),
            "discrepancy_count": len(discrepancies),
            "discrepancies": discrepancies,
        }
