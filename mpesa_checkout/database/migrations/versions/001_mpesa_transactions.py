"""M-Pesa transactions ledger

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

The orders and payments tables belong to the storefront schema and are not
managed here.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "mpesa_transactions",
        sa.Column("transaction_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("checkout_request_id", sa.String(length=100), nullable=False),
        sa.Column("merchant_request_id", sa.String(length=100), nullable=False),
        sa.Column("phone_number", sa.String(length=15), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("mpesa_receipt_number", sa.String(length=50), nullable=True),
        sa.Column("transaction_date", sa.BigInteger(), nullable=True),
        sa.Column(
            "status", sa.String(length=20), server_default="pending", nullable=False
        ),
        sa.Column("result_code", sa.String(length=10), nullable=True),
        sa.Column("result_desc", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.CheckConstraint("amount > 0", name="positive_mpesa_amount"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="valid_mpesa_status",
        ),
        sa.ForeignKeyConstraint(["order_id"], ["orders.order_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("transaction_id"),
    )
    op.create_index(
        op.f("ix_mpesa_transactions_checkout_request_id"),
        "mpesa_transactions",
        ["checkout_request_id"],
        unique=True,
    )
    op.create_index(
        op.f("ix_mpesa_transactions_order_id"), "mpesa_transactions", ["order_id"], unique=False
    )
    op.create_index(
        op.f("ix_mpesa_transactions_phone_number"),
        "mpesa_transactions",
        ["phone_number"],
        unique=False,
    )
    op.create_index(
        "idx_mpesa_status_created",
        "mpesa_transactions",
        ["status", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_mpesa_status_created", table_name="mpesa_transactions")
    op.drop_index(op.f("ix_mpesa_transactions_phone_number"), table_name="mpesa_transactions")
    op.drop_index(op.f("ix_mpesa_transactions_order_id"), table_name="mpesa_transactions")
    op.drop_index(
        op.f("ix_mpesa_transactions_checkout_request_id"), table_name="mpesa_transactions"
    )
    op.drop_table("mpesa_transactions")
