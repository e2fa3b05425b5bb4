"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class GatewayName(str, Enum):
    """Supported payment gateways."""

    CARD_HOSTED = "card-hosted"
    ORDER_SIGNATURE = "order-signature"
    MOBILE_MONEY = "mobile-money"


class IntentStatus(str, Enum):
    """Payment intent lifecycle."""

    CREATED = "created"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_active(self) -> bool:
        """Non-terminal states."""
        return self in (IntentStatus.CREATED, IntentStatus.AWAITING_CONFIRMATION)


ACTIVE_INTENT_STATUSES = (IntentStatus.CREATED.value, IntentStatus.AWAITING_CONFIRMATION.value)


class InvoiceStatus(str, Enum):
    """Invoice status enumeration."""

    DRAFT = "draft"
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


class PaymentStatus(str, Enum):
    """Recorded payment status."""

    COMPLETED = "completed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    """Refund request status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class HistoryEventType(str, Enum):
    """Ledger changes recorded in payment history."""

    PAYMENT_RECORDED = "payment_recorded"
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "refund_failed"


class AttemptStatus(str, Enum):
    """Normalized provider outcome."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class AmountPolicy(str, Enum):
    """How a confirmed amount is compared with the requested amount."""

    EXACT = "exact"
    PARTIAL = "partial"


class ConfirmSource(str, Enum):
    """Where a confirmation came from."""

    CLIENT_VERIFY = "client_verify"
    WEBHOOK = "webhook"


class VerificationStatus(str, Enum):
    """Outcome of a confirmation as reported to callers."""

    VERIFIED = "verified"
    FAILED = "failed"
    PENDING = "pending"
    EXPIRED = "expired"
    PROCESSING = "processing"
    IGNORED = "ignored"


# ============================================================================
# Initiate Models
# ============================================================================


class ReturnContextModel(BaseModel):
    """Gateway-specific hints supplied by the client."""

    success_url: str | None = Field(None, max_length=2048)
    cancel_url: str | None = Field(None, max_length=2048)
    phone_number: str | None = Field(None, max_length=20)
    customer_email: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=255)


class InitiatePaymentRequest(BaseModel):
    """POST /payments/initiate request body."""

    invoice_id: UUID
    gateway: GatewayName
    amount_minor: int | None = Field(
        None, gt=0, description="Amount in minor units; defaults to the balance due"
    )
    return_context: ReturnContextModel = Field(default_factory=ReturnContextModel)


class PaymentChallengeModel(BaseModel):
    """Parameters the browser widget needs to complete an order payment."""

    key_id: str
    order_id: str
    amount_minor: int
    currency: str


class InitiatePaymentResponse(BaseModel):
    """POST /payments/initiate response."""

    intent_id: UUID
    invoice_id: UUID
    gateway: GatewayName
    status: IntentStatus
    amount_minor: int
    currency: str
    session_ref: str
    redirect_url: str | None = None
    challenge: PaymentChallengeModel | None = None
    expires_at: str | None = None


# ============================================================================
# Verify Models
# ============================================================================


class PaymentProofModel(BaseModel):
    """Client-supplied evidence of payment."""

    order_id: str | None = Field(None, max_length=255)
    payment_id: str | None = Field(None, max_length=255)
    signature: str | None = Field(None, max_length=512)
    amount_minor: int | None = Field(None, gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class VerifyPaymentRequest(BaseModel):
    """POST /payments/verify request body."""

    gateway: GatewayName
    session_ref: str = Field(..., min_length=1, max_length=255)
    proof: PaymentProofModel = Field(default_factory=PaymentProofModel)


# ============================================================================
# Ledger Models
# ============================================================================


class PaymentResponse(BaseModel):
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
    created_at: str


class InvoiceResponse(BaseModel):
    """Ledger view of an invoice."""

    invoice_id: UUID
    invoice_number: str
    currency: str
    total_minor: int
    amount_paid_minor: int
    balance_due_minor: int
    status: InvoiceStatus
    due_date: str | None


class VerifyPaymentResponse(BaseModel):
    """POST /payments/verify response."""

    status: VerificationStatus
    intent_id: UUID | None = None
    payment: PaymentResponse | None = None
    invoice: InvoiceResponse | None = None
    error_code: str | None = None
    message: str | None = None


class WebhookAckResponse(BaseModel):
    """POST /webhooks/{gateway} response."""

    received: bool = True
    status: VerificationStatus
    duplicate: bool = False


class IntentResponse(BaseModel):
    """GET /payments/intents/{intent_id} response."""

    intent_id: UUID
    invoice_id: UUID
    gateway: GatewayName
    status: IntentStatus
    amount_minor: int
    currency: str
    session_ref: str | None
    payment_id: UUID | None
    failure_reason: str | None
    expires_at: str | None
    created_at: str
    updated_at: str


class LedgerResponse(BaseModel):
    """GET /invoices/{invoice_id}/ledger response."""

    invoice: InvoiceResponse
    payments: list[PaymentResponse]


class PaymentHistoryResponse(BaseModel):
    """One entry of a payment's history."""

    history_id: UUID
    event_type: HistoryEventType
    refund_id: UUID | None
    amount_minor: int
    amount_paid_before: int
    amount_paid_after: int
    previous_status: str | None
    new_status: str | None
    details: dict[str, str | int | bool | None]
    event_timestamp: str


class PaymentDetailResponse(BaseModel):
    """GET /payments/{payment_id} response."""

    payment: PaymentResponse
    history: list[PaymentHistoryResponse]


class ManualPaymentRequest(BaseModel):
    """POST /invoices/{invoice_id}/payments request body."""

    amount_minor: int = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    reference: str | None = Field(None, max_length=255)
    notes: str | None = Field(None, max_length=1000)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()


class ManualPaymentResponse(BaseModel):
    """POST /invoices/{invoice_id}/payments response."""

    payment: PaymentResponse
    invoice: InvoiceResponse


# ============================================================================
# Refund Models
# ============================================================================


class RefundPaymentRequest(BaseModel):
    """POST /payments/{payment_id}/refund request body."""

    amount_minor: int = Field(..., gt=0)
    reason: str | None = Field(None, max_length=500)


class RefundResponse(BaseModel):
    """POST /payments/{payment_id}/refund response."""

    refund_id: UUID
    payment_id: UUID
    invoice_id: UUID
    amount_minor: int
    status: RefundStatus
    provider_refund_ref: str | None
    payment: PaymentResponse
    invoice: InvoiceResponse


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    version: str
    gateways: list[GatewayName]
