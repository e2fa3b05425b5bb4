"""
API Routes - FastAPI endpoints for payment operations.

NO DICTIONARIES - All requests/responses use Pydantic models.

Errors raised by the engine are PaymentError subclasses and are rendered by the
exception handler in main.py; routes only translate models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.dependencies import get_coordinator
from paygate.config import settings
from paygate.db.session import get_db
from paygate.models.api import (
    GatewayName,
    HealthResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    IntentResponse,
    InvoiceResponse,
    LedgerResponse,
    ManualPaymentRequest,
    ManualPaymentResponse,
    PaymentChallengeModel,
    PaymentDetailResponse,
    PaymentHistoryResponse,
    PaymentResponse,
    RefundPaymentRequest,
    RefundResponse,
    VerificationStatus,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAckResponse,
)
from paygate.models.domain import (
    InvoiceData,
    PaymentData,
    PaymentProof,
    ReturnContext,
    WebhookRequest,
)
from paygate.observability.logging import get_logger
from paygate.services.coordinator import PaymentCoordinator

logger = get_logger(__name__)

router = APIRouter()

# Seconds a provider should wait before redelivering a webhook that is in flight
WEBHOOK_RETRY_AFTER_SECONDS = 5


def _payment_response(payment: PaymentData) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.payment_id,
        invoice_id=payment.invoice_id,
        payment_intent_id=payment.payment_intent_id,
        gateway=payment.gateway,
        provider_transaction_ref=payment.provider_transaction_ref,
        amount_minor=payment.amount_minor,
        refunded_minor=payment.refunded_minor,
        currency=payment.currency,
        status=payment.status,
        out_of_band=payment.out_of_band,
        created_at=payment.created_at.isoformat(),
    )


def _invoice_response(invoice: InvoiceData) -> InvoiceResponse:
    return InvoiceResponse(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        currency=invoice.currency,
        total_minor=invoice.total_minor,
        amount_paid_minor=invoice.amount_paid_minor,
        balance_due_minor=invoice.balance_due_minor,
        status=invoice.status,
        due_date=invoice.due_date.isoformat() if invoice.due_date else None,
    )


# =============================================================================
# Payments
# =============================================================================


@router.post("/payments/initiate", response_model=InitiatePaymentResponse)
async def initiate_payment(
    request: InitiatePaymentRequest,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> InitiatePaymentResponse:
    """
    Start a payment attempt against an invoice.

    Returns where to send the customer (redirect_url), the widget parameters
    (challenge), or neither when the customer is prompted out of band.
    """
    initiated = await coordinator.initiate(
        invoice_id=request.invoice_id,
        gateway=request.gateway,
        amount_minor=request.amount_minor,
        return_context=ReturnContext(**request.return_context.model_dump()),
    )
    intent = initiated.intent
    challenge = initiated.session.challenge

    return InitiatePaymentResponse(
        intent_id=intent.intent_id,
        invoice_id=intent.invoice_id,
        gateway=intent.gateway,
        status=intent.status,
        amount_minor=intent.requested_amount_minor,
        currency=intent.currency,
        session_ref=initiated.session.session_ref,
        redirect_url=initiated.session.redirect_url,
        challenge=(
            PaymentChallengeModel(
                key_id=challenge.key_id,
                order_id=challenge.order_id,
                amount_minor=challenge.amount_minor,
                currency=challenge.currency,
            )
            if challenge
            else None
        ),
        expires_at=intent.expires_at.isoformat() if intent.expires_at else None,
    )


@router.post("/payments/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    request: VerifyPaymentRequest,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> VerifyPaymentResponse:
    """
    Confirm a payment from client-supplied proof.

    Answers 200 with the outcome in status/error_code; only malformed requests
    and unknown sessions are errors.
    """
    outcome = await coordinator.confirm_client(
        request.gateway,
        request.session_ref,
        PaymentProof(**request.proof.model_dump()),
    )
    return VerifyPaymentResponse(
        status=outcome.status,
        intent_id=outcome.intent_id,
        payment=_payment_response(outcome.payment) if outcome.payment else None,
        invoice=_invoice_response(outcome.invoice) if outcome.invoice else None,
        error_code=outcome.error_code,
        message=outcome.message,
    )


@router.get("/payments/intents/{intent_id}", response_model=IntentResponse)
async def get_payment_intent(
    intent_id: UUID,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> IntentResponse:
    """Current state of a payment intent."""
    intent = await coordinator.get_intent(intent_id)
    return IntentResponse(
        intent_id=intent.intent_id,
        invoice_id=intent.invoice_id,
        gateway=intent.gateway,
        status=intent.status,
        amount_minor=intent.requested_amount_minor,
        currency=intent.currency,
        session_ref=intent.provider_session_ref,
        payment_id=intent.payment_id,
        failure_reason=intent.failure_reason,
        expires_at=intent.expires_at.isoformat() if intent.expires_at else None,
        created_at=intent.created_at.isoformat(),
        updated_at=intent.updated_at.isoformat(),
    )


@router.get("/payments/{payment_id}", response_model=PaymentDetailResponse)
async def get_payment(
    payment_id: UUID,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> PaymentDetailResponse:
    """A payment with its ledger history, oldest first."""
    detail = await coordinator.get_payment_detail(payment_id)
    return PaymentDetailResponse(
        payment=_payment_response(detail.payment),
        history=[
            PaymentHistoryResponse(
                history_id=entry.history_id,
                event_type=entry.event_type,
                refund_id=entry.refund_id,
                amount_minor=entry.amount_minor,
                amount_paid_before=entry.amount_paid_before,
                amount_paid_after=entry.amount_paid_after,
                previous_status=entry.previous_status,
                new_status=entry.new_status,
                details=dict(entry.details),
                event_timestamp=entry.event_timestamp.isoformat(),
            )
            for entry in detail.history
        ],
    )


@router.post("/payments/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: UUID,
    request: RefundPaymentRequest,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> RefundResponse:
    """Refund part or all of a payment through its gateway."""
    result = await coordinator.refund(payment_id, request.amount_minor, request.reason)
    return RefundResponse(
        refund_id=result.refund.refund_id,
        payment_id=result.payment.payment_id,
        invoice_id=result.invoice.invoice_id,
        amount_minor=result.refund.amount_minor,
        status=result.refund.status,
        provider_refund_ref=result.refund.provider_refund_ref,
        payment=_payment_response(result.payment),
        invoice=_invoice_response(result.invoice),
    )


# =============================================================================
# Webhooks
# =============================================================================


@router.post("/webhooks/{gateway}", response_model=None)
async def receive_webhook(
    gateway: GatewayName,
    request: Request,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> JSONResponse | WebhookAckResponse:
    """
    Receive a provider notification.

    The raw body is handed to the adapter untouched; signature checks need the
    exact bytes. Deliveries that are still being processed elsewhere get 503
    with Retry-After so the provider redelivers.
    """
    webhook = WebhookRequest(
        body=await request.body(),
        headers=dict(request.headers),
        query=dict(request.query_params),
    )
    outcome = await coordinator.confirm_webhook(gateway, webhook)

    if outcome.status == VerificationStatus.PROCESSING:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": {
                    "code": "WEBHOOK_IN_FLIGHT",
                    "message": "Delivery is being processed, retry later",
                    "retryable": True,
                }
            },
            headers={"Retry-After": str(WEBHOOK_RETRY_AFTER_SECONDS)},
        )

    if gateway == GatewayName.MOBILE_MONEY:
        # The callback sender expects its own acknowledgement shape
        return JSONResponse(content={"ResultCode": 0, "ResultDesc": "Accepted"})

    return WebhookAckResponse(status=outcome.status, duplicate=outcome.duplicate)


# =============================================================================
# Invoices
# =============================================================================


@router.get("/invoices/{invoice_id}/ledger", response_model=LedgerResponse)
async def get_invoice_ledger(
    invoice_id: UUID,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> LedgerResponse:
    """Invoice totals with every payment recorded against it."""
    ledger = await coordinator.get_ledger(invoice_id)
    return LedgerResponse(
        invoice=_invoice_response(ledger.invoice),
        payments=[_payment_response(p) for p in ledger.payments],
    )


@router.post(
    "/invoices/{invoice_id}/payments",
    response_model=ManualPaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_manual_payment(
    invoice_id: UUID,
    request: ManualPaymentRequest,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> ManualPaymentResponse:
    """Record a payment received outside any gateway."""
    ledger = await coordinator.record_manual_payment(
        invoice_id,
        request.amount_minor,
        request.currency,
        reference=request.reference,
        notes=request.notes,
    )
    return ManualPaymentResponse(
        payment=_payment_response(ledger.payment),
        invoice=_invoice_response(ledger.invoice),
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    coordinator: PaymentCoordinator = Depends(get_coordinator),
) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database disconnected",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        version=settings.api_version,
        gateways=coordinator.gateways.gateways,
    )
