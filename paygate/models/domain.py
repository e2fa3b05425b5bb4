"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
The only mappings are the JSON snapshots persisted by the idempotency store,
history entry details and the payloads handed to the event publisher.
"""

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from paygate.models.api import (
    AttemptStatus,
    GatewayName,
    HistoryEventType,
    IntentStatus,
    InvoiceStatus,
    PaymentStatus,
    RefundStatus,
    VerificationStatus,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _validate_currency(currency: str) -> None:
    if len(currency) != 3 or not currency.isupper():
        raise ValueError(f"Invalid currency code: {currency}")


# ============================================================================
# Gateway Boundary
# ============================================================================


@dataclass(frozen=True)
class ReturnContext:
    """Client hints passed through to the gateway on initiate."""

    success_url: str | None = None
    cancel_url: str | None = None
    phone_number: str | None = None
    customer_email: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class PaymentChallenge:
    """Parameters for a client-side widget that completes an order payment."""

    key_id: str
    order_id: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class ProviderSession:
    """Session created by a gateway for one payment attempt."""

    session_ref: str
    redirect_url: str | None = None
    challenge: PaymentChallenge | None = None
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.session_ref:
            raise ValueError("session_ref cannot be empty")


@dataclass(frozen=True)
class PaymentProof:
    """Client-supplied evidence of payment."""

    order_id: str | None = None
    payment_id: str | None = None
    signature: str | None = None
    amount_minor: int | None = None
    currency: str | None = None

    def fingerprint(self) -> str:
        """Stable digest of the proof, used to build idempotency keys."""
        canonical = "|".join(
            [
                self.order_id or "",
                self.payment_id or "",
                self.signature or "",
                str(self.amount_minor or ""),
                self.currency or "",
            ]
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class WebhookRequest:
    """Raw webhook delivery: body bytes plus transport metadata."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def fingerprint(self) -> str:
        """Digest of the raw body."""
        return hashlib.sha256(self.body).hexdigest()


@dataclass(frozen=True)
class PaymentAttemptResult:
    """Normalized outcome of verify or parse_webhook, whatever the provider."""

    gateway: GatewayName
    session_ref: str | None
    status: AttemptStatus
    amount_minor: int | None
    currency: str | None
    provider_transaction_ref: str | None
    raw_status: str
    event_id: str | None = None
    failure_reason: str | None = None

    def __post_init__(self) -> None:
        """A success must name what was paid and how to find it again."""
        if self.status == AttemptStatus.SUCCEEDED:
            if self.amount_minor is None or self.amount_minor <= 0:
                raise ValueError(f"Succeeded attempt needs a positive amount: {self.amount_minor}")
            if not self.currency:
                raise ValueError("Succeeded attempt needs a currency")
            _validate_currency(self.currency)
            if not self.provider_transaction_ref:
                raise ValueError("Succeeded attempt needs a provider_transaction_ref")

    @property
    def success(self) -> bool:
        return self.status == AttemptStatus.SUCCEEDED


@dataclass(frozen=True)
class RefundOutcome:
    """Provider answer to a refund request."""

    success: bool
    provider_refund_ref: str | None
    raw_status: str


# ============================================================================
# Ledger Data
# ============================================================================


@dataclass(frozen=True)
class InvoiceData:
    """Ledger view of an invoice."""

    invoice_id: UUID
    invoice_number: str
    currency: str
    total_minor: int
    amount_paid_minor: int
    status: InvoiceStatus
    due_date: datetime | None

    @property
    def balance_due_minor(self) -> int:
        return self.total_minor - self.amount_paid_minor

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "invoice_id": str(self.invoice_id),
            "invoice_number": self.invoice_number,
            "currency": self.currency,
            "total_minor": self.total_minor,
            "amount_paid_minor": self.amount_paid_minor,
            "status": self.status.value,
            "due_date": _iso(self.due_date),
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> "InvoiceData":
        return cls(
            invoice_id=UUID(data["invoice_id"]),
            invoice_number=data["invoice_number"],
            currency=data["currency"],
            total_minor=data["total_minor"],
            amount_paid_minor=data["amount_paid_minor"],
            status=InvoiceStatus(data["status"]),
            due_date=_parse_iso(data["due_date"]),
        )


@dataclass(frozen=True)
class PaymentData:
    """A recorded payment."""

    payment_id: UUID
    invoice_id: UUID
    payment_intent_id: UUID | None
    gateway: GatewayName | None
    provider_transaction_ref: str | None
    amount_minor: int
    refunded_minor: int
    currency: str
    status: PaymentStatus
    out_of_band: bool
    created_at: datetime

    @property
    def refundable_minor(self) -> int:
        return self.amount_minor - self.refunded_minor

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "payment_id": str(self.payment_id),
            "invoice_id": str(self.invoice_id),
            "payment_intent_id": str(self.payment_intent_id) if self.payment_intent_id else None,
            "gateway": self.gateway.value if self.gateway else None,
            "provider_transaction_ref": self.provider_transaction_ref,
            "amount_minor": self.amount_minor,
            "refunded_minor": self.refunded_minor,
            "currency": self.currency,
            "status": self.status.value,
            "out_of_band": self.out_of_band,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> "PaymentData":
        intent_id = data["payment_intent_id"]
        gateway = data["gateway"]
        return cls(
            payment_id=UUID(data["payment_id"]),
            invoice_id=UUID(data["invoice_id"]),
            payment_intent_id=UUID(intent_id) if intent_id else None,
            gateway=GatewayName(gateway) if gateway else None,
            provider_transaction_ref=data["provider_transaction_ref"],
            amount_minor=data["amount_minor"],
            refunded_minor=data["refunded_minor"],
            currency=data["currency"],
            status=PaymentStatus(data["status"]),
            out_of_band=data["out_of_band"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class IntentData:
    """A payment intent as stored."""

    intent_id: UUID
    invoice_id: UUID
    gateway: GatewayName
    status: IntentStatus
    requested_amount_minor: int
    currency: str
    provider_session_ref: str | None
    redirect_url: str | None
    payment_id: UUID | None
    failure_reason: str | None
    expires_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class RefundData:
    """A refund request as stored."""

    refund_id: UUID
    payment_id: UUID
    invoice_id: UUID
    amount_minor: int
    reason: str | None
    status: RefundStatus
    provider_refund_ref: str | None
    failure_reason: str | None
    created_at: datetime
    completed_at: datetime | None
    attempts: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class PaymentMeta:
    """Provenance of a payment handed to the reconciler."""

    gateway: GatewayName | None = None
    provider_transaction_ref: str | None = None
    payment_intent_id: UUID | None = None
    out_of_band: bool = False
    notes: str | None = None

    def __post_init__(self) -> None:
        if self.gateway is not None and not self.provider_transaction_ref:
            raise ValueError("Gateway payments need a provider_transaction_ref")


@dataclass(frozen=True)
class LedgerResult:
    """Result of applying a payment to an invoice."""

    payment: PaymentData
    invoice: InvoiceData
    previous_status: InvoiceStatus

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.invoice.status


@dataclass(frozen=True)
class PendingRefund:
    """A refund opened against a payment but not yet applied to the ledger."""

    refund: RefundData
    payment: PaymentData
    resumed: bool = False


@dataclass(frozen=True)
class RefundResult:
    """Result of applying a refund to the ledger."""

    refund: RefundData
    payment: PaymentData
    invoice: InvoiceData
    previous_status: InvoiceStatus
    applied: bool = True

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.invoice.status


@dataclass(frozen=True)
class LedgerView:
    """Invoice plus every payment recorded against it."""

    invoice: InvoiceData
    payments: tuple[PaymentData, ...]


@dataclass(frozen=True)
class PaymentHistoryEntry:
    """One audited ledger change on a payment."""

    history_id: UUID
    payment_id: UUID
    invoice_id: UUID
    refund_id: UUID | None
    event_type: HistoryEventType
    amount_minor: int
    amount_paid_before: int
    amount_paid_after: int
    previous_status: str | None
    new_status: str | None
    details: Mapping[str, Any]
    event_timestamp: datetime


@dataclass(frozen=True)
class PaymentDetail:
    """A payment with its history, oldest first."""

    payment: PaymentData
    history: tuple[PaymentHistoryEntry, ...]


# ============================================================================
# Coordinator Results
# ============================================================================


@dataclass(frozen=True)
class InitiatedPayment:
    """Result of initiate: the stored intent and the provider session."""

    intent: IntentData
    session: ProviderSession


@dataclass(frozen=True)
class ConfirmOutcome:
    """What a confirmation resolved to. Identical for every duplicate delivery."""

    status: VerificationStatus
    intent_id: UUID | None = None
    payment: PaymentData | None = None
    invoice: InvoiceData | None = None
    error_code: str | None = None
    message: str | None = None
    duplicate: bool = False

    @property
    def is_final(self) -> bool:
        """Final outcomes are cached; pending ones are retried."""
        return self.status not in (VerificationStatus.PENDING, VerificationStatus.PROCESSING)

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "intent_id": str(self.intent_id) if self.intent_id else None,
            "payment": self.payment.to_snapshot() if self.payment else None,
            "invoice": self.invoice.to_snapshot() if self.invoice else None,
            "error_code": self.error_code,
            "message": self.message,
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any], duplicate: bool = True) -> "ConfirmOutcome":
        intent_id = data.get("intent_id")
        payment = data.get("payment")
        invoice = data.get("invoice")
        return cls(
            status=VerificationStatus(data["status"]),
            intent_id=UUID(intent_id) if intent_id else None,
            payment=PaymentData.from_snapshot(payment) if payment else None,
            invoice=InvoiceData.from_snapshot(invoice) if invoice else None,
            error_code=data.get("error_code"),
            message=data.get("message"),
            duplicate=duplicate,
        )


# ============================================================================
# Events
# ============================================================================


@dataclass(frozen=True)
class PaymentEvent:
    """Notification handed to the event publisher after a ledger commit."""

    event_type: str
    invoice_id: UUID
    occurred_at: datetime
    payment_id: UUID | None = None
    intent_id: UUID | None = None
    refund_id: UUID | None = None
    gateway: GatewayName | None = None
    amount_minor: int | None = None
    currency: str | None = None
    previous_status: str | None = None
    new_status: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.event_type,
            "invoice_id": str(self.invoice_id),
            "occurred_at": self.occurred_at.isoformat(),
        }
        optional = {
            "payment_id": str(self.payment_id) if self.payment_id else None,
            "intent_id": str(self.intent_id) if self.intent_id else None,
            "refund_id": str(self.refund_id) if self.refund_id else None,
            "gateway": self.gateway.value if self.gateway else None,
            "amount_minor": self.amount_minor,
            "currency": self.currency,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload
