"""
Order-signature gateway - Razorpay-style orders API.

The browser widget pays against a server-created order and hands back
(order_id, payment_id, signature). The signature is an HMAC-SHA256 over
"order_id|payment_id|amount_minor" keyed with the API secret, so a tampered
amount fails verification.
"""

import hashlib
import hmac
import json
from typing import Any
from uuid import UUID

import httpx

from paygate.exceptions import InvalidRequestError, SignatureMismatchError
from paygate.models.api import AmountPolicy, AttemptStatus, GatewayName
from paygate.models.domain import (
    PaymentAttemptResult,
    PaymentChallenge,
    PaymentProof,
    ProviderSession,
    RefundOutcome,
    ReturnContext,
    WebhookRequest,
)
from paygate.observability.logging import get_logger
from paygate.services.gateways.base import raise_for_gateway_status, send_request

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"
EVENT_ID_HEADER = "X-Razorpay-Event-Id"

CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})
FAILURE_EVENTS = frozenset({"payment.failed"})


def compute_signature(secret: str, message: str | bytes) -> str:
    """Hex HMAC-SHA256 of message under secret."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def payment_signature_message(order_id: str, payment_id: str, amount_minor: int) -> str:
    """Canonical string the client-side signature covers."""
    return f"{order_id}|{payment_id}|{amount_minor}"


class OrderSignatureAdapter:
    """
    Orders API adapter.

    Verification is local (HMAC) and never calls the provider. Amounts must
    match exactly.
    """

    gateway = GatewayName.ORDER_SIGNATURE
    amount_policy = AmountPolicy.EXACT

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    @property
    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.key_id, self.key_secret)

    async def initiate(
        self,
        invoice_id: UUID,
        amount_minor: int,
        currency: str,
        return_context: ReturnContext,
    ) -> ProviderSession:
        """Create an order; the challenge carries what the widget needs."""
        response = await send_request(
            self.gateway,
            self.client,
            "POST",
            f"{self.base_url}/v1/orders",
            auth=self._auth,
            json={
                "amount": amount_minor,
                "currency": currency,
                "receipt": str(invoice_id)[:40],
                "notes": {"invoice_id": str(invoice_id)},
            },
        )
        raise_for_gateway_status(self.gateway, response)

        order = response.json()
        order_id = order.get("id")
        if not order_id:
            raise InvalidRequestError("Order gateway response missing order id")

        logger.info(
            "gateway_order_created",
            invoice_id=str(invoice_id),
            order_id=order_id,
            amount_minor=amount_minor,
        )

        return ProviderSession(
            session_ref=order_id,
            challenge=PaymentChallenge(
                key_id=self.key_id,
                order_id=order_id,
                amount_minor=amount_minor,
                currency=currency,
            ),
        )

    async def verify(self, session_ref: str, proof: PaymentProof) -> PaymentAttemptResult:
        """Recompute the client signature and compare it in constant time."""
        if proof.order_id is not None and proof.order_id != session_ref:
            raise SignatureMismatchError(self.gateway.value, "order id does not match session")
        if not proof.payment_id or not proof.signature:
            raise InvalidRequestError("payment_id and signature are required")
        if proof.amount_minor is None or not proof.currency:
            raise InvalidRequestError("amount_minor and currency are required")

        expected = compute_signature(
            self.key_secret,
            payment_signature_message(session_ref, proof.payment_id, proof.amount_minor),
        )
        if not hmac.compare_digest(expected.encode("utf-8"), proof.signature.encode("utf-8")):
            raise SignatureMismatchError(self.gateway.value, "payment signature does not verify")

        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=session_ref,
            status=AttemptStatus.SUCCEEDED,
            amount_minor=proof.amount_minor,
            currency=proof.currency.upper(),
            provider_transaction_ref=proof.payment_id,
            raw_status="signature_verified",
        )

    async def parse_webhook(self, request: WebhookRequest) -> PaymentAttemptResult:
        """Verify the body HMAC and map payment events."""
        signature = request.header(SIGNATURE_HEADER)
        if not signature:
            raise SignatureMismatchError(self.gateway.value, f"missing {SIGNATURE_HEADER}")

        expected = compute_signature(self.webhook_secret, request.body)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            raise SignatureMismatchError(self.gateway.value, "webhook signature does not verify")

        try:
            data: dict[str, Any] = json.loads(request.body)
            event_type: str = data["event"]
            entity: dict[str, Any] = data.get("payload", {}).get("payment", {}).get("entity", {})
        except (ValueError, KeyError, AttributeError) as exc:
            raise InvalidRequestError(f"Malformed order gateway webhook: {exc}") from exc

        event_id = request.header(EVENT_ID_HEADER)
        order_id = entity.get("order_id")

        if event_type in CAPTURE_EVENTS and entity.get("status") == "captured":
            currency = entity.get("currency")
            return PaymentAttemptResult(
                gateway=self.gateway,
                session_ref=order_id,
                status=AttemptStatus.SUCCEEDED,
                amount_minor=entity.get("amount"),
                currency=currency.upper() if currency else None,
                provider_transaction_ref=entity.get("id"),
                raw_status=event_type,
                event_id=event_id,
            )

        if event_type in FAILURE_EVENTS:
            return PaymentAttemptResult(
                gateway=self.gateway,
                session_ref=order_id,
                status=AttemptStatus.FAILED,
                amount_minor=None,
                currency=None,
                provider_transaction_ref=entity.get("id"),
                raw_status=event_type,
                event_id=event_id,
                failure_reason=entity.get("error_description") or event_type,
            )

        return PaymentAttemptResult(
            gateway=self.gateway,
            session_ref=order_id,
            status=AttemptStatus.PENDING,
            amount_minor=None,
            currency=None,
            provider_transaction_ref=None,
            raw_status=event_type,
            event_id=event_id,
        )

    async def refund(
        self,
        provider_transaction_ref: str,
        amount_minor: int,
        idempotency_key: str | None = None,
    ) -> RefundOutcome:
        """Refund a captured payment."""
        body: dict[str, Any] = {"amount": amount_minor}
        if idempotency_key:
            body["receipt"] = idempotency_key[:40]

        response = await send_request(
            self.gateway,
            self.client,
            "POST",
            f"{self.base_url}/v1/payments/{provider_transaction_ref}/refund",
            auth=self._auth,
            json=body,
        )
        raise_for_gateway_status(self.gateway, response)

        refund = response.json()
        status = refund.get("status", "unknown")
        logger.info(
            "gateway_refund_created",
            payment_id=provider_transaction_ref,
            refund_id=refund.get("id"),
            status=status,
        )
        return RefundOutcome(
            success=status in ("processed", "pending"),
            provider_refund_ref=refund.get("id"),
            raw_status=status,
        )
