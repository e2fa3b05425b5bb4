"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from paygate.models.api import InvoiceStatus, PaymentStatus, RefundStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """
    Timezone-aware timestamp that always round-trips as UTC.

    Backends without native timezone support hand back naive values; those
    are stored as UTC and re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


JSONType = JSON().with_variant(JSONB(), "postgresql")

ACTIVE_INTENT_PREDICATE = "status IN ('created', 'awaiting_confirmation')"


class Invoice(Base):
    """
    ORM model for invoices table.

    Only the payment-derived columns (amount_paid_minor, status) are written by
    this service; the rest belongs to the invoicing system.
    """

    __tablename__ = "invoices"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_paid_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.UNPAID.value
    )
    due_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("total_minor >= 0", name="ck_invoices_total_non_negative"),
        CheckConstraint("amount_paid_minor >= 0", name="ck_invoices_paid_non_negative"),
        CheckConstraint(
            "status IN ('draft', 'unpaid', 'partial', 'paid', 'overdue', 'void')",
            name="ck_invoices_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Invoice(id={self.id}, number={self.invoice_number}, "
            f"paid={self.amount_paid_minor}/{self.total_minor}, status={self.status})>"
        )


class PaymentIntent(Base):
    """
    ORM model for payment_intents table.

    One row per payment attempt; at most one non-terminal row per
    (invoice, gateway).
    """

    __tablename__ = "payment_intents"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    invoice_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    requested_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_session_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("requested_amount_minor > 0", name="ck_intents_amount_positive"),
        UniqueConstraint("gateway", "provider_session_ref", name="uq_intents_gateway_session"),
        Index(
            "uq_intents_active_per_invoice_gateway",
            "invoice_id",
            "gateway",
            unique=True,
            postgresql_where=text(ACTIVE_INTENT_PREDICATE),
            sqlite_where=text(ACTIVE_INTENT_PREDICATE),
        ),
        Index("idx_intents_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentIntent(id={self.id}, gateway={self.gateway}, "
            f"amount={self.requested_amount_minor}, status={self.status})>"
        )


class Payment(Base):
    """
    ORM model for payments table.

    provider_transaction_ref is stored exactly as received and is unique per
    gateway, so one provider transaction maps to at most one payment row.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    invoice_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    payment_intent_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("payment_intents.id", ondelete="SET NULL"), nullable=True
    )
    gateway: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_transaction_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentStatus.COMPLETED.value
    )
    out_of_band: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_payments_amount_positive"),
        CheckConstraint("refunded_minor >= 0", name="ck_payments_refunded_non_negative"),
        CheckConstraint("refunded_minor <= amount_minor", name="ck_payments_refund_bound"),
        UniqueConstraint(
            "gateway", "provider_transaction_ref", name="uq_payments_gateway_transaction"
        ),
        Index("idx_payments_invoice", "invoice_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, invoice_id={self.invoice_id}, "
            f"amount={self.amount_minor}, refunded={self.refunded_minor})>"
        )


class RefundRequest(Base):
    """ORM model for refund_requests table."""

    __tablename__ = "refund_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    invoice_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RefundStatus.PENDING.value
    )
    provider_refund_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provider attempts whose outcome is unknown; the refund stays pending
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_refunds_amount_positive"),
        Index("idx_refunds_payment_status", "payment_id", "status"),
        Index("idx_refunds_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RefundRequest(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount_minor}, status={self.status})>"
        )


class PaymentHistory(Base):
    """
    ORM model for payment_history table.

    Append-only audit trail of ledger changes. Rows are written in the same
    transaction as the change they describe, with the invoice's amount paid
    before and after.
    """

    __tablename__ = "payment_history"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    invoice_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    refund_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("refund_requests.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Balance snapshots (denormalized for auditing)
    amount_paid_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_paid_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    event_timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "event_type IN ('payment_recorded', 'refund_processed', 'refund_failed')",
            name="ck_history_event_type",
        ),
        Index("idx_history_payment_timestamp", "payment_id", "event_timestamp"),
        Index("idx_history_invoice", "invoice_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentHistory(id={self.id}, payment_id={self.payment_id}, "
            f"event={self.event_type}, amount={self.amount_minor})>"
        )


class IdempotencyRecord(Base):
    """
    ORM model for idempotency_records table.

    A row is inserted as a lease-bound reservation and becomes immutable once
    committed with its result snapshot.
    """

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    owner_token: Mapped[str] = mapped_column(String(64), nullable=False)
    lease_expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    result_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    committed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("state IN ('reserved', 'committed')", name="ck_idempotency_state"),
        Index("idx_idempotency_first_seen", "first_seen_at"),
    )

    def __repr__(self) -> str:
        return f"<IdempotencyRecord(key={self.key}, state={self.state})>"
