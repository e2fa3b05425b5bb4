"""
Card-hosted gateway - Stripe Checkout implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar
from uuid import UUID

import stripe

from paygate.exceptions import (
    GatewayError,
    GatewayUnavailableError,
    InvalidRequestError,
    SignatureMismatchError,
)
from paygate.models.api import AmountPolicy, AttemptStatus, GatewayName
from paygate.models.domain import (
    PaymentAttemptResult,
    PaymentProof,
    ProviderSession,
    RefundOutcome,
    ReturnContext,
    WebhookRequest,
)
from paygate.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SUCCESS_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)
FAILURE_EVENTS = frozenset(
    {"checkout.session.async_payment_failed", "checkout.session.expired"}
)


def _transaction_ref(session: Any) -> str | None:
    """PaymentIntent id of a checkout session, expanded or not."""
    payment_intent = getattr(session, "payment_intent", None)
    if payment_intent is None or isinstance(payment_intent, str):
        return payment_intent
    return getattr(payment_intent, "id", None)


class StripeCheckoutAdapter:
    """
    Stripe Checkout adapter.

    initiate creates a hosted Checkout Session; verify retrieves it; webhooks
    are authenticated with the Stripe-Signature header. Amounts must match
    exactly.
    """

    gateway = GatewayName.CARD_HOSTED
    amount_policy = AmountPolicy.EXACT

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        """
        Initialize Stripe adapter.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            success_url: Default redirect after a completed checkout
            cancel_url: Default redirect after an abandoned checkout
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        stripe.api_key = api_key

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking Stripe SDK call off the event loop and classify its errors."""
        try:
            return await asyncio.to_thread(func)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("stripe_unavailable", operation=operation, error=str(exc))
            raise GatewayUnavailableError(self.gateway.value, str(exc)) from exc
        except (stripe.AuthenticationError, stripe.PermissionError) as exc:
            logger.error("stripe_credentials_rejected", operation=operation, error=str(exc))
            raise GatewayError(self.gateway.value, f"credentials rejected: {exc}") from exc
        except (stripe.InvalidRequestError, stripe.CardError) as exc:
            logger.error(
                "stripe_request_rejected",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise InvalidRequestError(f"Stripe rejected {operation}: {exc}") from exc
        except stripe.StripeError as exc:
            # APIError and friends carry 5xx responses
            logger.error(
                "stripe_call_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise GatewayUnavailableError(self.gateway.value, str(exc)) from exc

    async def initiate(
        self,
        invoice_id: UUID,
        amount_minor: int,
        currency: str,
        return_context: ReturnContext,
    ) -> ProviderSession:
        """Create a Checkout Session in payment mode for the invoice."""
        logger.info(
            "creating_stripe_checkout_session",
            invoice_id=str(invoice_id),
            amount_minor=amount_minor,
            currency=currency,
        )

        def _create() -> Any:
            return stripe.checkout.Session.create(
                mode="payment",
                client_reference_id=str(invoice_id),
                customer_email=return_context.customer_email,
                line_items=[
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount_minor,
                            "product_data": {
                                "name": return_context.description or f"Invoice {invoice_id}",
                            },
                        },
                    }
                ],
                metadata={"invoice_id": str(invoice_id)},
                success_url=return_context.success_url or self.success_url,
                cancel_url=return_context.cancel_url or self.cancel_url,
            )

        session = await self._call("initiate", _create)

        expires_at = getattr(session, "expires_at", None)
        logger.info("stripe_checkout_session_created", session_id=session.id)

        return ProviderSession(
            session_ref=session.id,
            redirect_url=session.url,
            expires_at=datetime.fromtimestamp(expires_at, UTC) if expires_at else None,
        )

    def _session_result(
        self, session: Any, event_id: str | None, status: AttemptStatus | None = None
    ) -> PaymentAttemptResult:
        """Normalize a Checkout Session object."""
        if status is None:
            if session.payment_status == "paid":
                status = AttemptStatus.SUCCEEDED
            elif session.status == "expired":
                status = AttemptStatus.FAILED
            else:
                status = AttemptStatus.PENDING

        succeeded = status == AttemptStatus.SUCCEEDED
        currency = getattr(session, "currency", None)
        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=session.id,
            status=status,
            amount_minor=getattr(session, "amount_total", None) if succeeded else None,
            currency=currency.upper() if succeeded and currency else None,
            provider_transaction_ref=_transaction_ref(session) if succeeded else None,
            raw_status=f"{session.status}/{session.payment_status}",
            event_id=event_id,
            failure_reason=None if succeeded else f"checkout {session.status}",
        )

    async def verify(self, session_ref: str, proof: PaymentProof) -> PaymentAttemptResult:
        """Retrieve the Checkout Session; the session id is the only proof needed."""
        session = await self._call(
            "verify", lambda: stripe.checkout.Session.retrieve(session_ref)
        )
        result = self._session_result(session, event_id=None)
        logger.info(
            "stripe_checkout_session_verified",
            session_id=session_ref,
            status=result.status.value,
        )
        return result

    async def parse_webhook(self, request: WebhookRequest) -> PaymentAttemptResult:
        """Verify Stripe-Signature and map checkout.session.* events."""
        signature = request.header("stripe-signature") or ""
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                request.body, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureMismatchError(self.gateway.value, "invalid Stripe-Signature") from exc
        except ValueError as exc:
            raise InvalidRequestError(f"Malformed Stripe webhook payload: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        obj = event.data.object
        if event.type in SUCCESS_EVENTS:
            # checkout.session.completed fires for delayed methods before funds settle
            if obj.payment_status == "paid":
                return self._session_result(obj, event.id, AttemptStatus.SUCCEEDED)
            return self._session_result(obj, event.id, AttemptStatus.PENDING)
        if event.type in FAILURE_EVENTS:
            return self._session_result(obj, event.id, AttemptStatus.FAILED)

        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=getattr(obj, "id", None),
            status=AttemptStatus.PENDING,
            amount_minor=None,
            currency=None,
            provider_transaction_ref=None,
            raw_status=event.type,
            event_id=event.id,
        )

    async def refund(
        self,
        provider_transaction_ref: str,
        amount_minor: int,
        idempotency_key: str | None = None,
    ) -> RefundOutcome:
        """Refund against the PaymentIntent behind the checkout session."""
        logger.info(
            "creating_stripe_refund",
            payment_intent_id=provider_transaction_ref,
            amount_minor=amount_minor,
        )
        params: dict[str, Any] = {
            "payment_intent": provider_transaction_ref,
            "amount": amount_minor,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        refund = await self._call("refund", lambda: stripe.Refund.create(**params))
        logger.info("stripe_refund_created", refund_id=refund.id, status=refund.status)
        return RefundOutcome(
            success=refund.status in ("succeeded", "pending"),
            provider_refund_ref=refund.id,
            raw_status=refund.status,
        )
