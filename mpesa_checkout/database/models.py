"""SQLAlchemy database models for the M-Pesa checkout service."""
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Storefront orders table.

    Owned by the storefront service; this service only reads the total and
    writes ``status`` and ``notes``.
    """

    __tablename__ = "orders"

    order_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="positive_total_amount"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return f"<Order(order_id={self.order_id}, total={self.total_amount}, status={self.status})>"


class PaymentRecord(Base):
    """
    Storefront payment confirmation table (one row per order).

    Distinct from the ledger: it records that an order has been paid, not
    each push attempt.
    """

    __tablename__ = "payments"

    payment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.order_id", ondelete="CASCADE"), unique=True, nullable=False
    )
    method: Mapped[str] = mapped_column(String(20), nullable=False, default="mpesa")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    mpesa_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    mpesa_phone: Mapped[str | None] = mapped_column(String(13), nullable=True)
    transaction_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of PaymentRecord."""
        return (
            f"<PaymentRecord(payment_id={self.payment_id}, order_id={self.order_id}, "
            f"confirmed={self.is_confirmed})>"
        )


class MpesaTransaction(Base):
    """
    STK push ledger table.

    One row per push attempt, keyed by the provider-issued checkout request
    ID. Rows are created ``pending`` and move to a terminal status once.
    """

    __tablename__ = "mpesa_transactions"

    transaction_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False, index=True
    )
    checkout_request_id: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, index=True
    )
    merchant_request_id: Mapped[str] = mapped_column(String(100), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(15), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Provider timestamp, YYYYMMDDHHmmss as an integer
    transaction_date: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    result_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    result_desc: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_mpesa_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="valid_mpesa_status",
        ),
        Index("idx_mpesa_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        """String representation of MpesaTransaction."""
        return (
            f"<MpesaTransaction(checkout_request_id={self.checkout_request_id}, "
            f"order_id={self.order_id}, status={self.status})>"
        )
