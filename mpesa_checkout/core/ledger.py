"""
Transaction ledger for STK push attempts.

Each method works inside the caller's session and transaction; none of them
commit. The terminal transitions are conditional on ``status = 'pending'`` so
that a writer which lost a race updates nothing.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from mpesa_checkout.database.models import MpesaTransaction, utcnow

logger = structlog.get_logger(__name__)


class TransactionLedger:
    """Repository over the ``mpesa_transactions`` table."""

    async def record_pending(
        self,
        db: AsyncSession,
        order_id: int,
        checkout_request_id: str,
        merchant_request_id: str,
        phone_number: str,
        amount: Decimal,
    ) -> MpesaTransaction:
        """Insert a new pending entry for an accepted push."""
        entry = MpesaTransaction(
            order_id=order_id,
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            phone_number=phone_number,
            amount=amount,
            status="pending",
        )
        db.add(entry)
        await db.flush()

        logger.info(
            "ledger_entry_recorded",
            checkout_request_id=checkout_request_id,
            order_id=order_id,
            amount=str(amount),
        )
        return entry

    async def get(
        self, db: AsyncSession, checkout_request_id: str, for_update: bool = False
    ) -> Optional[MpesaTransaction]:
        """
        Look up an entry by checkout request ID.

        Args:
            db: Database session
            checkout_request_id: Provider checkout request ID
            for_update: Take a row lock held until the transaction ends

        Returns:
            Optional[MpesaTransaction]: The entry, or None
        """
        stmt = select(MpesaTransaction).where(
            MpesaTransaction.checkout_request_id == checkout_request_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_pending_for_order(
        self, db: AsyncSession, order_id: int
    ) -> Optional[MpesaTransaction]:
        """Most recent pending entry for an order, if any."""
        stmt = (
            select(MpesaTransaction)
            .where(
                MpesaTransaction.order_id == order_id,
                MpesaTransaction.status == "pending",
            )
            .order_by(MpesaTransaction.created_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _transition(
        self, db: AsyncSession, entry: MpesaTransaction, values: Dict[str, Any]
    ) -> bool:
        stmt = (
            update(MpesaTransaction)
            .where(
                MpesaTransaction.transaction_id == entry.transaction_id,
                MpesaTransaction.status == "pending",
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            return False

        # Row is already written; keep the instance in step without dirtying it
        for key, value in values.items():
            set_committed_value(entry, key, value)
        return True

    async def mark_completed(
        self,
        db: AsyncSession,
        entry: MpesaTransaction,
        receipt_number: Optional[str],
        transaction_date: Optional[int],
        result_code: str,
        result_desc: Optional[str],
    ) -> bool:
        """
        Move a pending entry to ``completed``.

        Returns:
            bool: False when the entry was no longer pending
        """
        return await self._transition(
            db,
            entry,
            {
                "status": "completed",
                "mpesa_receipt_number": receipt_number,
                "transaction_date": transaction_date,
                "result_code": result_code,
                "result_desc": result_desc,
            },
        )

    async def mark_failed(
        self,
        db: AsyncSession,
        entry: MpesaTransaction,
        result_code: str,
        result_desc: Optional[str],
        status: str = "failed",
    ) -> bool:
        """
        Move a pending entry to ``failed`` (or ``cancelled``).

        Returns:
            bool: False when the entry was no longer pending
        """
        if status not in ("failed", "cancelled"):
            raise ValueError(f"Not a failure status: {status}")
        return await self._transition(
            db,
            entry,
            {"status": status, "result_code": result_code, "result_desc": result_desc},
        )

    async def list_stale_pending(
        self, db: AsyncSession, cutoff: datetime, limit: int = 100
    ) -> List[MpesaTransaction]:
        """
        Pending entries created before ``cutoff``, oldest first.

        Rows already locked by a concurrent callback are skipped.
        """
        stmt = (
            select(MpesaTransaction)
            .where(
                MpesaTransaction.status == "pending",
                MpesaTransaction.created_at < cutoff,
            )
            .order_by(MpesaTransaction.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def pending_summary(self, db: AsyncSession) -> Dict[str, Any]:
        """Count, total amount and oldest creation time of pending entries."""
        stmt = select(
            func.count(MpesaTransaction.transaction_id).label("count"),
            func.sum(MpesaTransaction.amount).label("total_amount"),
            func.min(MpesaTransaction.created_at).label("oldest_created_at"),
        ).where(MpesaTransaction.status == "pending")

        row = (await db.execute(stmt)).one()
        return {
            "count": row.count or 0,
            "total_amount": Decimal(str(row.total_amount or 0)),
            "oldest_created_at": row.oldest_created_at,
        }
