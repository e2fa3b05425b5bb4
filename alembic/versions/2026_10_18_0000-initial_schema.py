"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ACTIVE_INTENT_PREDICATE = "status IN ('created', 'awaiting_confirmation')"


def upgrade() -> None:
    """Create invoices, intents, payments, refunds and idempotency tables."""

    # ========================================================================
    # Create invoices table
    # ========================================================================
    op.create_table(
        'invoices',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_number', sa.String(64), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('total_minor', sa.BigInteger(), nullable=False),
        sa.Column('amount_paid_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='unpaid'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('total_minor >= 0', name='ck_invoices_total_non_negative'),
        sa.CheckConstraint('amount_paid_minor >= 0', name='ck_invoices_paid_non_negative'),
        sa.CheckConstraint(
            "status IN ('draft', 'unpaid', 'partial', 'paid', 'overdue', 'void')",
            name='ck_invoices_status',
        ),
        sa.UniqueConstraint('invoice_number', name='uq_invoices_number'),
    )

    # ========================================================================
    # Create payment_intents table
    # ========================================================================
    op.create_table(
        'payment_intents',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_id', UUID(as_uuid=True), nullable=False),
        sa.Column('gateway', sa.String(32), nullable=False),
        sa.Column('requested_amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('provider_session_ref', sa.String(255), nullable=True),
        sa.Column('redirect_url', sa.Text(), nullable=True),
        sa.Column('payment_id', UUID(as_uuid=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('requested_amount_minor > 0', name='ck_intents_amount_positive'),
        sa.UniqueConstraint('gateway', 'provider_session_ref', name='uq_intents_gateway_session'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], name='fk_intents_invoice', ondelete='CASCADE'),
    )

    # At most one non-terminal intent per (invoice, gateway)
    op.create_index(
        'uq_intents_active_per_invoice_gateway',
        'payment_intents',
        ['invoice_id', 'gateway'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_INTENT_PREDICATE),
    )
    op.create_index('idx_intents_status_expires', 'payment_intents', ['status', 'expires_at'])

    # ========================================================================
    # Create payments table
    # ========================================================================
    op.create_table(
        'payments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('invoice_id', UUID(as_uuid=True), nullable=False),
        sa.Column('payment_intent_id', UUID(as_uuid=True), nullable=True),
        sa.Column('gateway', sa.String(32), nullable=True),
        sa.Column('provider_transaction_ref', sa.String(255), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('refunded_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='completed'),
        sa.Column('out_of_band', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount_minor > 0', name='ck_payments_amount_positive'),
        sa.CheckConstraint('refunded_minor >= 0', name='ck_payments_refunded_non_negative'),
        sa.CheckConstraint('refunded_minor <= amount_minor', name='ck_payments_refund_bound'),
        sa.UniqueConstraint('gateway', 'provider_transaction_ref', name='uq_payments_gateway_transaction'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], name='fk_payments_invoice', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['payment_intent_id'], ['payment_intents.id'], name='fk_payments_intent', ondelete='SET NULL'
        ),
    )

    op.create_index('idx_payments_invoice', 'payments', ['invoice_id'])

    # ========================================================================
    # Create refund_requests table
    # ========================================================================
    op.create_table(
        'refund_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('payment_id', UUID(as_uuid=True), nullable=False),
        sa.Column('invoice_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('provider_refund_ref', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('amount_minor > 0', name='ck_refunds_amount_positive'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], name='fk_refunds_payment', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], name='fk_refunds_invoice', ondelete='CASCADE'),
    )

    op.create_index('idx_refunds_payment_status', 'refund_requests', ['payment_id', 'status'])

    # ========================================================================
    # Create idempotency_records table
    # ========================================================================
    op.create_table(
        'idempotency_records',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('state', sa.String(20), nullable=False),
        sa.Column('owner_token', sa.String(64), nullable=False),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('result_snapshot', JSONB(), nullable=True),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('committed_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint("state IN ('reserved', 'committed')", name='ck_idempotency_state'),
    )

    op.create_index('idx_idempotency_first_seen', 'idempotency_records', ['first_seen_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('idempotency_records')
    op.drop_table('refund_requests')
    op.drop_table('payments')
    op.drop_table('payment_intents')
    op.drop_table('invoices')
