"""
Payment Coordinator - orchestrates initiate, confirm, refund and expiry.

Owns the PaymentIntent state machine:

    created -> awaiting_confirmation -> verified | failed | expired

Confirmations arrive twice for most payments (client verify and provider
webhook, in any order, possibly redelivered). Each delivery is deduplicated
on an event key first; once normalized, the payment itself is deduplicated on
payment:{gateway}:{provider_transaction_ref}, which is where verify and
webhook converge. Only the holder of that key calls the reconciler.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.config import Settings
from paygate.db.models import Invoice, PaymentIntent, utc_now
from paygate.exceptions import (
    AmountMismatchError,
    DuplicateActiveIntentError,
    GatewayError,
    GatewayUnavailableError,
    IdempotencyConflictError,
    InvalidRequestError,
    InvoiceNotFoundError,
    OverpaymentNotAllowedError,
    PaymentError,
    PaymentIntentNotFoundError,
    SignatureMismatchError,
)
from paygate.models.api import (
    ACTIVE_INTENT_STATUSES,
    AmountPolicy,
    AttemptStatus,
    ConfirmSource,
    GatewayName,
    IntentStatus,
    InvoiceStatus,
    VerificationStatus,
)
from paygate.models.domain import (
    ConfirmOutcome,
    InitiatedPayment,
    IntentData,
    LedgerResult,
    LedgerView,
    PaymentAttemptResult,
    PaymentData,
    PaymentDetail,
    PaymentEvent,
    PaymentMeta,
    PaymentProof,
    RefundData,
    RefundResult,
    ReturnContext,
    WebhookRequest,
)
from paygate.observability.logging import get_logger, log_context, log_security_event
from paygate.observability.metrics import metrics
from paygate.observability.tracing import trace_operation
from paygate.services.events import (
    INTENT_EXPIRED,
    INTENT_FAILED,
    INVOICE_STATUS_CHANGED,
    PAYMENT_RECORDED,
    PAYMENT_REFUNDED,
    EventDispatcher,
    EventPublisher,
)
from paygate.services.gateways.base import GatewayAdapter, RetryPolicy, call_gateway
from paygate.services.gateways.registry import GatewayRegistry, build_gateway_registry
from paygate.services.idempotency import IdempotencyStore, Reservation
from paygate.services.locks import InvoiceLocks
from paygate.services.reconciler import LedgerReconciler

logger = get_logger(__name__)

SWEEP_BATCH_SIZE = 500


def _default_ttls() -> dict[GatewayName, timedelta]:
    return {
        GatewayName.CARD_HOSTED: timedelta(minutes=30),
        GatewayName.ORDER_SIGNATURE: timedelta(minutes=30),
        GatewayName.MOBILE_MONEY: timedelta(minutes=5),
    }


@dataclass(frozen=True)
class CoordinatorPolicy:
    """Timing knobs for the coordinator."""

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    intent_ttls: Mapping[GatewayName, timedelta] = field(default_factory=_default_ttls)
    idempotency_wait_seconds: float = 5.0
    idempotency_poll_interval_seconds: float = 0.05
    refund_retry_after: timedelta = timedelta(minutes=5)

    def ttl_for(self, gateway: GatewayName) -> timedelta:
        return self.intent_ttls.get(gateway, timedelta(minutes=30))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CoordinatorPolicy":
        return cls(
            retry=RetryPolicy(
                timeout_seconds=settings.gateway_timeout_seconds,
                max_attempts=settings.gateway_max_attempts,
                backoff_initial_seconds=settings.gateway_backoff_initial_seconds,
                backoff_max_seconds=settings.gateway_backoff_max_seconds,
            ),
            intent_ttls={
                GatewayName.CARD_HOSTED: timedelta(minutes=settings.intent_ttl_card_hosted_minutes),
                GatewayName.ORDER_SIGNATURE: timedelta(
                    minutes=settings.intent_ttl_order_signature_minutes
                ),
                GatewayName.MOBILE_MONEY: timedelta(
                    minutes=settings.intent_ttl_mobile_money_minutes
                ),
            },
            idempotency_wait_seconds=settings.idempotency_wait_seconds,
            idempotency_poll_interval_seconds=settings.idempotency_poll_interval_seconds,
            refund_retry_after=timedelta(seconds=settings.refund_retry_after_seconds),
        )


def intent_to_domain(intent: PaymentIntent) -> IntentData:
    """Convert ORM intent to domain model."""
    return IntentData(
        intent_id=intent.id,
        invoice_id=intent.invoice_id,
        gateway=GatewayName(intent.gateway),
        status=IntentStatus(intent.status),
        requested_amount_minor=intent.requested_amount_minor,
        currency=intent.currency,
        provider_session_ref=intent.provider_session_ref,
        redirect_url=intent.redirect_url,
        payment_id=intent.payment_id,
        failure_reason=intent.failure_reason,
        expires_at=intent.expires_at,
        created_at=intent.created_at,
        updated_at=intent.updated_at,
    )


def check_amount(policy: AmountPolicy, intent: IntentData, result: PaymentAttemptResult) -> None:
    """
    Compare a confirmed amount with the intent.

    Currency must always match. exact requires equal amounts; partial accepts
    anything up to the requested amount.

    Raises:
        AmountMismatchError: Amount or currency not acceptable
    """
    received = result.amount_minor or 0
    received_currency = result.currency or ""
    mismatch = received_currency != intent.currency or (
        received != intent.requested_amount_minor
        if policy == AmountPolicy.EXACT
        else received > intent.requested_amount_minor
    )
    if mismatch:
        raise AmountMismatchError(
            intent.requested_amount_minor, received, intent.currency, received_currency
        )


class PaymentCoordinator:
    """
    Entry point for every payment operation exposed over HTTP.

    Usage:
        initiated = await coordinator.initiate(invoice_id, GatewayName.CARD_HOSTED)
        outcome = await coordinator.confirm_client(gateway, session_ref, proof)
        outcome = await coordinator.confirm_webhook(gateway, webhook_request)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
        idempotency: IdempotencyStore,
        reconciler: LedgerReconciler,
        dispatcher: EventDispatcher,
        policy: CoordinatorPolicy | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateways = gateways
        self.idempotency = idempotency
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.policy = policy or CoordinatorPolicy()

    # ========================================================================
    # Initiate
    # ========================================================================

    async def initiate(
        self,
        invoice_id: UUID,
        gateway: GatewayName,
        amount_minor: int | None = None,
        return_context: ReturnContext | None = None,
    ) -> InitiatedPayment:
        """
        Create an intent and open a provider session for it.

        Raises:
            InvoiceNotFoundError: Invoice doesn't exist
            InvalidRequestError: Invoice not payable, or amount not positive
            OverpaymentNotAllowedError: Amount exceeds the balance due
            DuplicateActiveIntentError: A non-terminal intent already exists
            GatewayUnavailableError: Provider unreachable after retries
        """
        adapter = self.gateways.get(gateway)
        return_context = return_context or ReturnContext()
        intent = await self._create_intent(invoice_id, gateway, amount_minor)

        with log_context(intent_id=str(intent.intent_id), gateway=gateway.value):
            try:
                session = await call_gateway(
                    gateway,
                    "initiate",
                    lambda: adapter.initiate(
                        invoice_id, intent.requested_amount_minor, intent.currency, return_context
                    ),
                    self.policy.retry,
                )
            except PaymentError as exc:
                reason = f"{exc.code}: {exc}"[:500]
                await self._transition(intent.intent_id, IntentStatus.FAILED, failure_reason=reason)
                metrics.intents_total.labels(gateway=gateway.value, outcome="failed").inc()
                logger.warning("payment_intent_initiate_failed", error=str(exc), code=exc.code)
                failed = await self.get_intent(intent.intent_id)
                self.dispatcher.dispatch([self._intent_event(INTENT_FAILED, failed)])
                raise

            expires_at = utc_now() + self.policy.ttl_for(gateway)
            if session.expires_at is not None:
                expires_at = min(expires_at, session.expires_at)

            moved = await self._transition(
                intent.intent_id,
                IntentStatus.AWAITING_CONFIRMATION,
                from_statuses=(IntentStatus.CREATED.value,),
                provider_session_ref=session.session_ref,
                redirect_url=session.redirect_url,
                expires_at=expires_at,
            )
            if not moved:
                logger.warning("payment_intent_changed_during_initiate")

            stored = await self.get_intent(intent.intent_id)
            metrics.intents_total.labels(gateway=gateway.value, outcome="created").inc()
            logger.info(
                "payment_intent_created",
                invoice_id=str(invoice_id),
                session_ref=session.session_ref,
                amount_minor=stored.requested_amount_minor,
                status=stored.status.value,
            )
            return InitiatedPayment(intent=stored, session=session)

    async def _create_intent(
        self, invoice_id: UUID, gateway: GatewayName, amount_minor: int | None
    ) -> IntentData:
        now = utc_now()
        async with self.session_factory() as session:
            expired = await self._expire_due(
                session,
                now,
                PaymentIntent.invoice_id == invoice_id,
                PaymentIntent.gateway == gateway.value,
            )
            await session.commit()
            if expired:
                metrics.intents_expired_total.inc(len(expired))
                await self._publish_expired(expired)

            invoice =await session.get(Invoice, invoice_id, populate_existing=True)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            if invoice.status in (InvoiceStatus.VOID.value, InvoiceStatus.PAID.value):
                raise InvalidRequestError(f"Invoice {invoice_id} is {invoice.status}")

            balance_due = invoice.total_minor - invoice.amount_paid_minor
            amount = amount_minor if amount_minor is not None else balance_due
            if amount <= 0:
                raise InvalidRequestError(f"Nothing to pay on invoice {invoice_id}")
            if amount > balance_due and not self.reconciler.allow_overpayment:
                raise OverpaymentNotAllowedError(invoice_id, balance_due, amount)

            existing = await self._find_active_intent(session, invoice_id, gateway)
            if existing is not None:
                raise DuplicateActiveIntentError(invoice_id, gateway.value, existing.id)

            intent = PaymentIntent(
                invoice_id=invoice_id,
                gateway=gateway.value,
                requested_amount_minor=amount,
                currency=invoice.currency,
                status=IntentStatus.CREATED.value,
                expires_at=now + self.policy.ttl_for(gateway),
            )
            session.add(intent)
            try:
                await session.commit()
            except IntegrityError as e:
                # Lost the race on the active-intent index
                await session.rollback()
                existing = await self._find_active_intent(session, invoice_id, gateway)
                raise DuplicateActiveIntentError(
                    invoice_id, gateway.value, existing.id if existing else None
                ) from e

            return intent_to_domain(intent)

    # ========================================================================
    # Confirm
    # ========================================================================

    async def confirm_client(
        self, gateway: GatewayName, session_ref: str, proof: PaymentProof
    ) -> ConfirmOutcome:
        """
        Confirm from client-supplied proof (the verify endpoint).

        Integrity failures come back as a failed outcome rather than an error.

        Raises:
            PaymentIntentNotFoundError: No intent for session_ref on gateway
            InvalidRequestError: Proof is malformed
        """
        adapter = self.gateways.get(gateway)
        event_key = f"verify:{gateway.value}:{session_ref}:{proof.fingerprint()}"
        return await self._confirm(
            gateway,
            ConfirmSource.CLIENT_VERIFY,
            event_key,
            lambda: self._process_client(adapter, session_ref, proof),
        )

    async def confirm_webhook(
        self, gateway: GatewayName, webhook: WebhookRequest
    ) -> ConfirmOutcome:
        """
        Confirm from a provider notification.

        Raises:
            SignatureMismatchError: Webhook is not authentic
            InvalidRequestError: Payload cannot be parsed
        """
        adapter = self.gateways.get(gateway)
        event_key = f"webhook:{gateway.value}:{webhook.fingerprint()}"
        return await self._confirm(
            gateway,
            ConfirmSource.WEBHOOK,
            event_key,
            lambda: self._process_webhook(adapter, webhook),
        )

    async def _confirm(
        self,
        gateway: GatewayName,
        source: ConfirmSource,
        event_key: str,
        process: Callable[[], Awaitable[ConfirmOutcome]],
    ) -> ConfirmOutcome:
        with log_context(gateway=gateway.value, source=source.value), trace_operation(
            "payment_confirm", gateway=gateway.value, source=source.value
        ):
            try:
                reservation = await self._reserve(event_key)
            except IdempotencyConflictError:
                logger.info("confirmation_in_flight", key=event_key)
                return ConfirmOutcome(
                    status=VerificationStatus.PROCESSING,
                    message="Another delivery of this event is in progress",
                )

            if not reservation.is_new:
                metrics.duplicates_suppressed_total.labels(
                    gateway=gateway.value, source=source.value
                ).inc()
                logger.info("confirmation_duplicate", key=event_key)
                return ConfirmOutcome.from_snapshot(reservation.existing_result or {})

            assert reservation.token is not None
            try:
                outcome = await process()
            except Exception:
                await self.idempotency.release(event_key, reservation.token)
                raise

            if outcome.is_final:
                await self.idempotency.commit(event_key, reservation.token, outcome.to_snapshot())
            else:
                await self.idempotency.release(event_key, reservation.token)

            metrics.record_confirmation(gateway.value, source.value, outcome.status.value)
            logger.info(
                "confirmation_processed",
                status=outcome.status.value,
                intent_id=str(outcome.intent_id) if outcome.intent_id else None,
                duplicate=outcome.duplicate,
            )
            return outcome

    async def _reserve(self, key: str) -> Reservation:
        """
        Reserve key, waiting for an in-flight holder to commit.

        Raises:
            IdempotencyConflictError: Holder did not finish within the wait bound
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.policy.idempotency_wait_seconds
        while True:
            try:
                return await self.idempotency.check_and_reserve(key)
            except IdempotencyConflictError:
                if loop.time() >= deadline:
                    raise
                await asyncio.sleep(self.policy.idempotency_poll_interval_seconds)

    async def _process_client(
        self, adapter: GatewayAdapter, session_ref: str, proof: PaymentProof
    ) -> ConfirmOutcome:
        intent = await self._find_intent_by_session(adapter.gateway, session_ref)
        if intent is None:
            raise PaymentIntentNotFoundError(f"{adapter.gateway.value}:{session_ref}")

        terminal = await self._terminal_outcome(intent)
        if terminal is not None:
            return terminal

        try:
            result = await call_gateway(
                adapter.gateway,
                "verify",
                lambda: adapter.verify(session_ref, proof),
                self.policy.retry,
            )
        except SignatureMismatchError as exc:
            self._record_integrity_failure(adapter.gateway, exc, intent.intent_id)
            return ConfirmOutcome(
                status=VerificationStatus.FAILED,
                intent_id=intent.intent_id,
                error_code=exc.code,
                message="Payment signature could not be verified",
            )
        except GatewayUnavailableError as exc:
            logger.warning("verify_gateway_unavailable", error=str(exc))
            return ConfirmOutcome(
                status=VerificationStatus.PENDING,
                intent_id=intent.intent_id,
                error_code=exc.code,
                message="Payment provider unavailable, retry shortly",
            )
        except ValueError as exc:
            raise InvalidRequestError(f"Provider returned an unusable result: {exc}") from exc

        return await self._settle(adapter, intent, result)

    async def _process_webhook(
        self, adapter: GatewayAdapter, webhook: WebhookRequest
    ) -> ConfirmOutcome:
        try:
            result = await adapter.parse_webhook(webhook)
        except SignatureMismatchError as exc:
            self._record_integrity_failure(adapter.gateway, exc, None)
            raise
        except ValueError as exc:
            raise InvalidRequestError(f"Webhook payload unusable: {exc}") from exc

        if result.status == AttemptStatus.PENDING:
            logger.info("webhook_event_ignored", raw_status=result.raw_status)
            return ConfirmOutcome(status=VerificationStatus.IGNORED, message=result.raw_status)

        intent = (
            await self._find_intent_by_session(adapter.gateway, result.session_ref)
            if result.session_ref
            else None
        )
        if intent is None:
            logger.error(
                "webhook_unmatched_payment",
                session_ref=result.session_ref,
                provider_transaction_ref=result.provider_transaction_ref,
                status=result.status.value,
                amount_minor=result.amount_minor,
            )
            return ConfirmOutcome(
                status=VerificationStatus.IGNORED,
                error_code=PaymentIntentNotFoundError.code,
                message="No payment intent matches this notification",
            )

        return await self._settle(adapter, intent, result)

    async def _terminal_outcome(self, intent: IntentData) -> ConfirmOutcome | None:
        """Outcome for an intent the client can no longer confirm, else None."""
        if intent.status == IntentStatus.VERIFIED and intent.payment_id is not None:
            payment = await self.reconciler.get_payment(intent.payment_id)
            invoice = await self.reconciler.get_invoice(intent.invoice_id)
            return ConfirmOutcome(
                status=VerificationStatus.VERIFIED,
                intent_id=intent.intent_id,
                payment=payment,
                invoice=invoice,
                duplicate=True,
            )
        if intent.status == IntentStatus.FAILED:
            return ConfirmOutcome(
                status=VerificationStatus.FAILED,
                intent_id=intent.intent_id,
                message=intent.failure_reason,
            )
        if intent.status == IntentStatus.EXPIRED:
            return ConfirmOutcome(status=VerificationStatus.EXPIRED, intent_id=intent.intent_id)
        if intent.expires_at is not None and intent.expires_at <= utc_now():
            if await self._transition(intent.intent_id, IntentStatus.EXPIRED):
                expired = await self.get_intent(intent.intent_id)
                await self._publish_expired([expired])
                return ConfirmOutcome(status=VerificationStatus.EXPIRED, intent_id=intent.intent_id)
            # Raced with another transition; re-evaluate from storage
            return await self._terminal_outcome(await self.get_intent(intent.intent_id))
        return None

    async def _settle(
        self, adapter: GatewayAdapter, intent: IntentData, result: PaymentAttemptResult
    ) -> ConfirmOutcome:
        """Turn a normalized provider result into a ledger outcome."""
        if result.status == AttemptStatus.PENDING:
            return ConfirmOutcome(
                status=VerificationStatus.PENDING,
                intent_id=intent.intent_id,
                message=result.raw_status,
            )
        if result.status == AttemptStatus.FAILED:
            return await self._fail_from_provider(intent, result)

        try:
            check_amount(adapter.amount_policy, intent, result)
        except AmountMismatchError as exc:
            self._record_integrity_failure(adapter.gateway, exc, intent.intent_id)
            if intent.status.is_active and await self._transition(
                intent.intent_id, IntentStatus.FAILED, failure_reason=str(exc)[:500]
            ):
                failed = await self.get_intent(intent.intent_id)
                self.dispatcher.dispatch([self._intent_event(INTENT_FAILED, failed)])
            return ConfirmOutcome(
                status=VerificationStatus.FAILED,
                intent_id=intent.intent_id,
                error_code=exc.code,
                message=str(exc),
            )

        assert result.provider_transaction_ref is not None
        payment_key = f"payment:{adapter.gateway.value}:{result.provider_transaction_ref}"
        try:
            reservation = await self._reserve(payment_key)
        except IdempotencyConflictError:
            return ConfirmOutcome(status=VerificationStatus.PROCESSING, intent_id=intent.intent_id)

        if not reservation.is_new:
            logger.info("payment_already_confirmed", key=payment_key)
            return ConfirmOutcome.from_snapshot(reservation.existing_result or {})

        assert reservation.token is not None
        try:
            outcome, events = await self._record_payment(intent, result)
        except Exception:
            await self.idempotency.release(payment_key, reservation.token)
            raise

        await self.idempotency.commit(payment_key, reservation.token, outcome.to_snapshot())
        self.dispatcher.dispatch(events)
        return outcome

    async def _record_payment(
        self, intent: IntentData, result: PaymentAttemptResult
    ) -> tuple[ConfirmOutcome, list[PaymentEvent]]:
        assert result.amount_minor is not None and result.currency is not None
        out_of_band = not intent.status.is_active
        meta = PaymentMeta(
            gateway=result.gateway,
            provider_transaction_ref=result.provider_transaction_ref,
            payment_intent_id=intent.intent_id,
            out_of_band=out_of_band,
        )

        try:
            ledger = await self.reconciler.apply_payment(
                intent.invoice_id, result.amount_minor, result.currency, meta
            )
        except IdempotencyConflictError as exc:
            assert exc.existing_id is not None
            payment = await self.reconciler.get_payment(exc.existing_id)
            invoice = await self.reconciler.get_invoice(payment.invoice_id)
            outcome = ConfirmOutcome(
                status=VerificationStatus.VERIFIED,
                intent_id=intent.intent_id,
                payment=payment,
                invoice=invoice,
                duplicate=True,
            )
            return outcome, []
        except OverpaymentNotAllowedError as exc:
            logger.error(
                "payment_requires_manual_review",
                invoice_id=str(intent.invoice_id),
                provider_transaction_ref=result.provider_transaction_ref,
                amount_minor=result.amount_minor,
                balance_due_minor=exc.balance_due_minor,
            )
            events: list[PaymentEvent] = []
            if intent.status.is_active and await self._transition(
                intent.intent_id, IntentStatus.FAILED, failure_reason=str(exc)[:500]
            ):
                events.append(self._intent_event(INTENT_FAILED, await self.get_intent(intent.intent_id)))
            outcome = ConfirmOutcome(
                status=VerificationStatus.FAILED,
                intent_id=intent.intent_id,
                error_code=exc.code,
                message=str(exc),
            )
            return outcome, events

        if out_of_band:
            logger.warning(
                "out_of_band_payment_recorded",
                intent_id=str(intent.intent_id),
                intent_status=intent.status.value,
                payment_id=str(ledger.payment.payment_id),
            )

        outcome = ConfirmOutcome(
            status=VerificationStatus.VERIFIED,
            intent_id=intent.intent_id,
            payment=ledger.payment,
            invoice=ledger.invoice,
        )
        return outcome, self._ledger_events(ledger)

    async def _fail_from_provider(
        self, intent: IntentData, result: PaymentAttemptResult
    ) -> ConfirmOutcome:
        if intent.status == IntentStatus.VERIFIED:
            return ConfirmOutcome(
                status=VerificationStatus.IGNORED,
                intent_id=intent.intent_id,
                message="Intent already verified",
            )

        reason = result.failure_reason or result.raw_status
        if intent.status.is_active and await self._transition(
            intent.intent_id, IntentStatus.FAILED, failure_reason=reason[:500]
        ):
            logger.info("payment_intent_failed", intent_id=str(intent.intent_id), reason=reason)
            failed = await self.get_intent(intent.intent_id)
            self.dispatcher.dispatch([self._intent_event(INTENT_FAILED, failed)])

        return ConfirmOutcome(
            status=VerificationStatus.FAILED, intent_id=intent.intent_id, message=reason
        )

    # ========================================================================
    # Refunds & Manual Payments
    # ========================================================================

    async def refund(
        self, payment_id: UUID, amount_minor: int, reason: str | None = None
    ) -> RefundResult:
        """
        Refund a payment, through its gateway when it has one.

        When the provider cannot be reached the refund stays pending and keeps
        its refund id. Repeating the request with the same amount, or the
        sweeper, retries it under the same provider idempotency key.

        Raises:
            PaymentNotFoundError: Payment doesn't exist
            RefundExceedsPaymentError: Amount exceeds the un-refunded remainder
            GatewayUnavailableError: Provider unreachable after retries (refund stays pending)
            GatewayError: Provider declined the refund
        """
        pending = await self.reconciler.open_refund(payment_id, amount_minor, reason)
        return await self._complete_refund(pending.refund, pending.payment)

    async def retry_pending_refunds(self, now: datetime | None = None) -> int:
        """
        Retry refunds left pending longer than the retry threshold.

        Each retry reuses the refund id, so the provider deduplicates it.
        Returns the number of refunds settled.
        """
        now = now or utc_now()
        stale = await self.reconciler.list_stale_refunds(now - self.policy.refund_retry_after)
        settled = 0
        for refund in stale:
            with log_context(refund_id=str(refund.refund_id)):
                try:
                    payment = await self.reconciler.get_payment(refund.payment_id)
                    await self._complete_refund(refund, payment)
                    settled += 1
                except GatewayUnavailableError:
                    continue
                except PaymentError as exc:
                    logger.warning("refund_retry_declined", error=str(exc), code=exc.code)

        if stale:
            logger.info("pending_refunds_retried", candidates=len(stale), settled=settled)
        return settled

    async def _complete_refund(self, refund: RefundData, payment: PaymentData) -> RefundResult:
        """
        Send a pending refund to the provider and settle it.

        Only a definitive provider answer fails the refund; an unreachable
        provider leaves it pending for a retry under the same key.
        """
        refund_id = refund.refund_id
        provider_refund_ref: str | None = None

        if payment.gateway is not None:
            gateway = payment.gateway
            transaction_ref = payment.provider_transaction_ref or ""
            try:
                adapter = self.gateways.get(gateway)
                outcome = await call_gateway(
                    gateway,
                    "refund",
                    lambda: adapter.refund(
                        transaction_ref, refund.amount_minor, idempotency_key=f"refund-{refund_id}"
                    ),
                    self.policy.retry,
                )
            except GatewayUnavailableError as exc:
                await self.reconciler.record_refund_attempt(refund_id, f"{exc.code}: {exc}")
                metrics.refunds_total.labels(gateway=gateway.value, outcome="pending").inc()
                raise
            except PaymentError as exc:
                await self.reconciler.fail_refund(refund_id, f"{exc.code}: {exc}")
                metrics.refunds_total.labels(gateway=gateway.value, outcome="failed").inc()
                raise

            if not outcome.success:
                await self.reconciler.fail_refund(refund_id, outcome.raw_status)
                metrics.refunds_total.labels(gateway=gateway.value, outcome="failed").inc()
                raise GatewayError(gateway.value, f"refund declined: {outcome.raw_status}")
            provider_refund_ref = outcome.provider_refund_ref

        result = await self.reconciler.settle_refund(refund_id, provider_refund_ref)
        if result.applied:
            self.dispatcher.dispatch(self._refund_events(result))
        return result

    async def record_manual_payment(
        self,
        invoice_id: UUID,
        amount_minor: int,
        currency: str,
        reference: str | None = None,
        notes: str | None = None,
    ) -> LedgerResult:
        """Record an offline payment (cash, bank transfer) against an invoice."""
        ledger = await self.reconciler.apply_payment(
            invoice_id,
            amount_minor,
            currency,
            PaymentMeta(provider_transaction_ref=reference, notes=notes),
        )
        self.dispatcher.dispatch(self._ledger_events(ledger))
        return ledger

    # ========================================================================
    # Expiry
    # ========================================================================

    async def expire_stale_intents(self, now: datetime | None = None) -> list[IntentData]:
        """Move every active intent past its TTL to expired."""
        now = now or utc_now()
        async with self.session_factory() as session:
            expired = await self._expire_due(session, now)
            await session.commit()

        if expired:
            metrics.intents_expired_total.inc(len(expired))
            logger.info("payment_intents_expired", count=len(expired))
            await self._publish_expired(expired)
        return expired

    async def _expire_due(
        self, session: AsyncSession, now: datetime, *criteria: Any
    ) -> list[IntentData]:
        """Conditionally expire active intents whose expires_at has passed."""
        stmt = (
            select(PaymentIntent.id)
            .where(
                PaymentIntent.status.in_(ACTIVE_INTENT_STATUSES),
                PaymentIntent.expires_at <= now,
                *criteria,
            )
            .limit(SWEEP_BATCH_SIZE)
        )
        candidate_ids = (await session.execute(stmt)).scalars().all()

        expired_ids: list[UUID] = []
        for intent_id in candidate_ids:
            if await self._transition_in(session, intent_id, IntentStatus.EXPIRED):
                expired_ids.append(intent_id)
        await session.flush()

        expired: list[IntentData] = []
        for intent_id in expired_ids:
            intent = await session.get(PaymentIntent, intent_id, populate_existing=True)
            if intent is not None:
                expired.append(intent_to_domain(intent))
        return expired

    async def _publish_expired(self, intents: list[IntentData]) -> None:
        self.dispatcher.dispatch([self._intent_event(INTENT_EXPIRED, i) for i in intents])

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_intent(self, intent_id: UUID) -> IntentData:
        async with self.session_factory() as session:
            intent = await session.get(PaymentIntent, intent_id)
            if intent is None:
                raise PaymentIntentNotFoundError(str(intent_id))
            return intent_to_domain(intent)

    async def get_ledger(self, invoice_id: UUID) -> LedgerView:
        return await self.reconciler.get_ledger(invoice_id)

    async def get_payment_detail(self, payment_id: UUID) -> PaymentDetail:
        return await self.reconciler.get_payment_detail(payment_id)

    async def drain_events(self) -> None:
        await self.dispatcher.drain()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _transition(
        self,
        intent_id: UUID,
        to_status: IntentStatus,
        from_statuses: tuple[str, ...] = ACTIVE_INTENT_STATUSES,
        **values: Any,
    ) -> bool:
        async with self.session_factory() as session:
            moved = await self._transition_in(session, intent_id, to_status, from_statuses, **values)
            await session.commit()
        return moved

    @staticmethod
    async def _transition_in(
        session: AsyncSession,
        intent_id: UUID,
        to_status: IntentStatus,
        from_statuses: tuple[str, ...] = ACTIVE_INTENT_STATUSES,
        **values: Any,
    ) -> bool:
        """Compare-and-set an intent's status; False if it was not in from_statuses."""
        stmt = (
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id, PaymentIntent.status.in_(from_statuses))
            .values(status=to_status.value, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def _find_intent_by_session(
        self, gateway: GatewayName, session_ref: str
    ) -> IntentData | None:
        stmt = select(PaymentIntent).where(
            PaymentIntent.gateway == gateway.value,
            PaymentIntent.provider_session_ref == session_ref,
        )
        async with self.session_factory() as session:
            intent = (await session.execute(stmt)).scalar_one_or_none()
            return intent_to_domain(intent) if intent else None

    @staticmethod
    async def _find_active_intent(
        session: AsyncSession, invoice_id: UUID, gateway: GatewayName
    ) -> PaymentIntent | None:
        stmt = select(PaymentIntent).where(
            PaymentIntent.invoice_id == invoice_id,
            PaymentIntent.gateway == gateway.value,
            PaymentIntent.status.in_(ACTIVE_INTENT_STATUSES),
        )
        return (await session.execute(stmt)).scalars().first()

    def _record_integrity_failure(
        self, gateway: GatewayName, exc: PaymentError, intent_id: UUID | None
    ) -> None:
        metrics.record_integrity_failure(gateway.value, exc.code)
        log_security_event(
            logger,
            exc.code,
            gateway=gateway.value,
            intent_id=str(intent_id) if intent_id else None,
            detail=str(exc),
        )

    @staticmethod
    def _intent_event(event_type: str, intent: IntentData) -> PaymentEvent:
        return PaymentEvent(
            event_type=event_type,
            invoice_id=intent.invoice_id,
            occurred_at=utc_now(),
            intent_id=intent.intent_id,
            gateway=intent.gateway,
            amount_minor=intent.requested_amount_minor,
            currency=intent.currency,
            new_status=intent.status.value,
        )

    @staticmethod
    def _ledger_events(ledger: LedgerResult) -> list[PaymentEvent]:
        now = utc_now()
        payment = ledger.payment
        events = [
            PaymentEvent(
                event_type=PAYMENT_RECORDED,
                invoice_id=payment.invoice_id,
                occurred_at=now,
                payment_id=payment.payment_id,
                intent_id=payment.payment_intent_id,
                gateway=payment.gateway,
                amount_minor=payment.amount_minor,
                currency=payment.currency,
            )
        ]
        if ledger.status_changed:
            events.append(
                PaymentEvent(
                    event_type=INVOICE_STATUS_CHANGED,
                    invoice_id=payment.invoice_id,
                    occurred_at=now,
                    payment_id=payment.payment_id,
                    previous_status=ledger.previous_status.value,
                    new_status=ledger.invoice.status.value,
                )
            )
        return events

    @staticmethod
    def _refund_events(result: RefundResult) -> list[PaymentEvent]:
        now = utc_now()
        events = [
            PaymentEvent(
                event_type=PAYMENT_REFUNDED,
                invoice_id=result.invoice.invoice_id,
                occurred_at=now,
                payment_id=result.payment.payment_id,
                refund_id=result.refund.refund_id,
                gateway=result.payment.gateway,
                amount_minor=result.refund.amount_minor,
                currency=result.payment.currency,
            )
        ]
        if result.status_changed:
            events.append(
                PaymentEvent(
                    event_type=INVOICE_STATUS_CHANGED,
                    invoice_id=result.invoice.invoice_id,
                    occurred_at=now,
                    payment_id=result.payment.payment_id,
                    previous_status=result.previous_status.value,
                    new_status=result.invoice.status.value,
                )
            )
        return events


def build_payment_coordinator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    client: httpx.AsyncClient,
    publisher: EventPublisher,
) -> PaymentCoordinator:
    """Wire the coordinator and its collaborators from settings."""
    return PaymentCoordinator(
        session_factory=session_factory,
        gateways=build_gateway_registry(settings, client),
        idempotency=IdempotencyStore(
            session_factory,
            lease=timedelta(seconds=settings.idempotency_lease_seconds),
            retention=timedelta(days=settings.idempotency_retention_days),
        ),
        reconciler=LedgerReconciler(
            session_factory,
            locks=InvoiceLocks(),
            allow_overpayment=settings.allow_overpayment,
        ),
        dispatcher=EventDispatcher(publisher),
        policy=CoordinatorPolicy.from_settings(settings),
    )
