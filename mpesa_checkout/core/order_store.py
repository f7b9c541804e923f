"""
Access to the storefront's orders and payments tables.

These tables belong to the storefront; the checkout core reads order totals
and writes only payment confirmation and order status/notes.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_checkout.database.models import MpesaTransaction, Order, PaymentRecord, utcnow

logger = structlog.get_logger(__name__)

# Order statuses that mean payment has already been applied
PAID_ORDER_STATUSES = ("processing", "shipped", "delivered")


class OrderPaymentStore:
    """Repository over ``orders`` and ``payments``. Never commits."""

    async def get_order(self, db: AsyncSession, order_id: int) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.order_id == order_id))
        return result.scalar_one_or_none()

    async def confirm_payment(
        self,
        db: AsyncSession,
        order_id: int,
        receipt_number: Optional[str],
        confirmed_at: datetime,
    ) -> int:
        """
        Mark the order's M-Pesa payment record confirmed.

        Returns:
            int: Number of payment rows updated
        """
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.order_id == order_id, PaymentRecord.method == "mpesa")
            .values(is_confirmed=True, mpesa_code=receipt_number, confirmed_at=confirmed_at)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)

        if result.rowcount == 0:
            logger.warning("payment_record_not_found", order_id=order_id)
        return result.rowcount

    async def mark_order_processing(self, db: AsyncSession, order_id: int) -> None:
        await db.execute(
            update(Order)
            .where(Order.order_id == order_id)
            .values(status="processing", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def mark_order_failed(self, db: AsyncSession, order_id: int, reason: str) -> int:
        """
        Set the order to ``failed`` and append the reason to its notes.

        Orders already in a paid status are left alone, so a stale or failed
        push cannot undo a later successful one.

        Returns:
            int: Number of order rows updated
        """
        note = f" | Payment failed: {reason}"
        result = await db.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.status.notin_(PAID_ORDER_STATUSES))
            .values(
                status="failed",
                notes=func.coalesce(Order.notes, "") + note,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.info("order_already_paid_not_failed", order_id=order_id, reason=reason)
        return result.rowcount

    async def find_unsynced_orders(
        self, db: AsyncSession, since: datetime
    ) -> List[Dict[str, Any]]:
        """
        Completed ledger entries whose order never moved to a paid status.

        Args:
            db: Database session
            since: Only consider entries created after this time

        Returns:
            List[Dict[str, Any]]: One discrepancy per entry
        """
        stmt = (
            select(MpesaTransaction, Order.status)
            .join(Order, Order.order_id == MpesaTransaction.order_id)
            .where(
                MpesaTransaction.status == "completed",
                MpesaTransaction.created_at >= since,
                Order.status.notin_(PAID_ORDER_STATUSES),
            )
            .order_by(MpesaTransaction.created_at.desc())
        )
        result = await db.execute(stmt)

        return [
            {
                "type": "order_not_updated",
                "checkout_request_id": entry.checkout_request_id,
                "order_id": entry.order_id,
                "mpesa_receipt_number": entry.mpesa_receipt_number,
                "amount": str(entry.amount),
                "order_status": order_status,
            }
            for entry, order_status in result.all()
        ]
