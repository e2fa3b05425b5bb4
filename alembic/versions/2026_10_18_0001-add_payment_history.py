"""add payment history and refund retry tracking

Revision ID: 2026_10_18_0001
Revises: 2026_10_18_0000
Create Date: 2026-10-18 16:00:00.000000

Adds:
- payment_history: append-only audit trail of ledger changes
- refund_requests.attempts / last_error: provider attempts with unknown outcome
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_18_0001"
down_revision: str | None = "2026_10_18_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Refund retry tracking
    op.add_column(
        "refund_requests",
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column("refund_requests", sa.Column("last_error", sa.Text(), nullable=True))
    op.create_index(
        "idx_refunds_status_created", "refund_requests", ["status", "created_at"]
    )

    # Create payment_history table
    op.create_table(
        "payment_history",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("invoice_id", UUID(as_uuid=True), nullable=False),
        sa.Column("payment_id", UUID(as_uuid=True), nullable=False),
        sa.Column("refund_id", UUID(as_uuid=True), nullable=True),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("amount_paid_before", sa.BigInteger(), nullable=False),
        sa.Column("amount_paid_after", sa.BigInteger(), nullable=False),
        sa.Column("previous_status", sa.String(32), nullable=True),
        sa.Column("new_status", sa.String(32), nullable=True),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column(
            "event_timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "event_type IN ('payment_recorded', 'refund_processed', 'refund_failed')",
            name="ck_history_event_type",
        ),
        sa.ForeignKeyConstraint(
            ["invoice_id"], ["invoices.id"], name="fk_history_invoice", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["payment_id"], ["payments.id"], name="fk_history_payment", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["refund_id"], ["refund_requests.id"], name="fk_history_refund", ondelete="SET NULL"
        ),
    )

    # Create indexes
    op.create_index(
        "idx_history_payment_timestamp", "payment_history", ["payment_id", "event_timestamp"]
    )
    op.create_index("idx_history_invoice", "payment_history", ["invoice_id"])


def downgrade() -> None:
    # Drop indexes
    op.drop_index("idx_history_invoice", table_name="payment_history")
    op.drop_index("idx_history_payment_timestamp", table_name="payment_history")

    # Drop table
    op.drop_table("payment_history")

    op.drop_index("idx_refunds_status_created", table_name="refund_requests")
    op.drop_column("refund_requests", "last_error")
    op.drop_column("refund_requests", "attempts")
