"""
Ledger Reconciler - applies verified payments and refunds to invoices.

Every mutation runs inside the invoice's exclusive section (in-process lock
plus row lock) and in a single transaction: re-read, check invariants,
write, verify the write, commit.

Invariants enforced here:
- 0 <= amount_paid_minor <= total_minor (upper bound unless overpayment is allowed)
- 0 <= payment.refunded_minor <= payment.amount_minor
- one payment per (gateway, provider_transaction_ref)

Every change to a payment is also appended to payment_history inside the
same transaction.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.db.models import (
    Invoice,
    Payment,
    PaymentHistory,
    PaymentIntent,
    RefundRequest,
    utc_now,
)
from paygate.exceptions import (
    AmountMismatchError,
    DataIntegrityError,
    IdempotencyConflictError,
    InvalidRequestError,
    InvoiceNotFoundError,
    OverpaymentNotAllowedError,
    PaymentNotFoundError,
    RefundExceedsPaymentError,
    RefundNotFoundError,
    WriteVerificationError,
)
from paygate.models.api import (
    GatewayName,
    HistoryEventType,
    IntentStatus,
    InvoiceStatus,
    PaymentStatus,
    RefundStatus,
)
from paygate.models.domain import (
    InvoiceData,
    LedgerResult,
    LedgerView,
    PaymentData,
    PaymentDetail,
    PaymentHistoryEntry,
    PaymentMeta,
    PendingRefund,
    RefundData,
    RefundResult,
)
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics
from paygate.services.locks import InvoiceLocks

logger = get_logger(__name__)


def derive_invoice_status(
    current: InvoiceStatus,
    total_minor: int,
    paid_minor: int,
    due_date: datetime | None,
    now: datetime,
) -> InvoiceStatus:
    """
    Recompute invoice status after amount_paid changes.

    paid when nothing is due, partial when something but not everything is
    paid. An invoice that drops back to zero paid becomes overdue when past
    its due date, unpaid otherwise. Other statuses are left unchanged.
    """
    if current == InvoiceStatus.VOID:
        return current
    if paid_minor > 0 and paid_minor >= total_minor:
        return InvoiceStatus.PAID
    if paid_minor > 0:
        return InvoiceStatus.PARTIAL
    if current in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
        if due_date is not None and due_date < now:
            return InvoiceStatus.OVERDUE
        return InvoiceStatus.UNPAID
    return current


def derive_payment_status(amount_minor: int, refunded_minor: int) -> PaymentStatus:
    if refunded_minor == 0:
        return PaymentStatus.COMPLETED
    if refunded_minor >= amount_minor:
        return PaymentStatus.REFUNDED
    return PaymentStatus.PARTIALLY_REFUNDED


def invoice_to_domain(invoice: Invoice) -> InvoiceData:
    """Convert ORM invoice to domain model."""
    return InvoiceData(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        currency=invoice.currency,
        total_minor=invoice.total_minor,
        amount_paid_minor=invoice.amount_paid_minor,
        status=InvoiceStatus(invoice.status),
        due_date=invoice.due_date,
    )


def payment_to_domain(payment: Payment) -> PaymentData:
    """Convert ORM payment to domain model."""
    return PaymentData(
        payment_id=payment.id,
        invoice_id=payment.invoice_id,
        payment_intent_id=payment.payment_intent_id,
        gateway=GatewayName(payment.gateway) if payment.gateway else None,
        provider_transaction_ref=payment.provider_transaction_ref,
        amount_minor=payment.amount_minor,
        refunded_minor=payment.refunded_minor,
        currency=payment.currency,
        status=PaymentStatus(payment.status),
        out_of_band=payment.out_of_band,
        created_at=payment.created_at,
    )


def refund_to_domain(refund: RefundRequest) -> RefundData:
    """Convert ORM refund request to domain model."""
    return RefundData(
        refund_id=refund.id,
        payment_id=refund.payment_id,
        invoice_id=refund.invoice_id,
        amount_minor=refund.amount_minor,
        reason=refund.reason,
        status=RefundStatus(refund.status),
        provider_refund_ref=refund.provider_refund_ref,
        failure_reason=refund.failure_reason,
        created_at=refund.created_at,
        completed_at=refund.completed_at,
        attempts=refund.attempts,
        last_error=refund.last_error,
    )


def history_to_domain(entry: PaymentHistory) -> PaymentHistoryEntry:
    """Convert ORM history row to domain model."""
    return PaymentHistoryEntry(
        history_id=entry.id,
        payment_id=entry.payment_id,
        invoice_id=entry.invoice_id,
        refund_id=entry.refund_id,
        event_type=HistoryEventType(entry.event_type),
        amount_minor=entry.amount_minor,
        amount_paid_before=entry.amount_paid_before,
        amount_paid_after=entry.amount_paid_after,
        previous_status=entry.previous_status,
        new_status=entry.new_status,
        details=entry.details or {},
        event_timestamp=entry.event_timestamp,
    )


class LedgerReconciler:
    """Sole writer of payment-derived invoice fields."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: InvoiceLocks | None = None,
        allow_overpayment: bool = False,
    ) -> None:
        self.session_factory = session_factory
        self.locks = locks or InvoiceLocks()
        self.allow_overpayment = allow_overpayment

    # ========================================================================
    # Payments
    # ========================================================================

    async def apply_payment(
        self,
        invoice_id: UUID,
        amount_minor: int,
        currency: str,
        meta: PaymentMeta | None = None,
    ) -> LedgerResult:
        """
        Record a payment and recompute the invoice.

        When meta names a payment intent, that intent is linked to the payment
        (and moved to verified if still active) in the same transaction.

        Raises:
            InvoiceNotFoundError: Invoice doesn't exist
            InvalidRequestError: Invoice is void or amount is not positive
            AmountMismatchError: Currency differs from the invoice currency
            OverpaymentNotAllowedError: Payment exceeds the balance due
            IdempotencyConflictError: Provider transaction already recorded
        """
        meta = meta or PaymentMeta()
        if amount_minor <= 0:
            raise InvalidRequestError(f"Payment amount must be positive: {amount_minor}")

        async with self.locks.hold(invoice_id):
            async with self.session_factory() as session:
                invoice = await self._lock_invoice(session, invoice_id)

                if invoice.status == InvoiceStatus.VOID.value:
                    raise InvalidRequestError(f"Invoice {invoice_id} is void")

                if invoice.currency != currency:
                    raise AmountMismatchError(
                        amount_minor, amount_minor, invoice.currency, currency
                    )

                previous_status = InvoiceStatus(invoice.status)
                paid_after = invoice.amount_paid_minor + amount_minor

                if paid_after > invoice.total_minor and not self.allow_overpayment:
                    raise OverpaymentNotAllowedError(
                        invoice_id,
                        invoice.total_minor - invoice.amount_paid_minor,
                        amount_minor,
                    )

                payment = Payment(
                    invoice_id=invoice_id,
                    payment_intent_id=meta.payment_intent_id,
                    gateway=meta.gateway.value if meta.gateway else None,
                    provider_transaction_ref=meta.provider_transaction_ref,
                    amount_minor=amount_minor,
                    refunded_minor=0,
                    currency=currency,
                    status=PaymentStatus.COMPLETED.value,
                    out_of_band=meta.out_of_band,
                    notes=meta.notes,
                )
                session.add(payment)

                try:
                    await session.flush()
                except IntegrityError as e:
                    await session.rollback()
                    existing = await self._find_payment_by_ref(session, meta)
                    if existing is None:
                        raise WriteVerificationError(f"Payment insert failed: {e}") from e
                    logger.info(
                        "payment_already_recorded",
                        invoice_id=str(invoice_id),
                        payment_id=str(existing.id),
                        gateway=existing.gateway,
                        provider_transaction_ref=existing.provider_transaction_ref,
                    )
                    raise IdempotencyConflictError(
                        f"payment:{existing.gateway}:{existing.provider_transaction_ref}",
                        existing.id,
                    ) from e

                # Verify payment was written
                verified_payment = await session.get(Payment, payment.id)
                if verified_payment is None:
                    raise WriteVerificationError(f"Payment {payment.id} not found after insert")

                invoice.amount_paid_minor = paid_after
                invoice.status = derive_invoice_status(
                    previous_status,
                    invoice.total_minor,
                    paid_after,
                    invoice.due_date,
                    utc_now(),
                ).value

                if meta.payment_intent_id is not None:
                    await self._link_intent(session, meta.payment_intent_id, payment.id)

                self._record_history(
                    session,
                    HistoryEventType.PAYMENT_RECORDED,
                    payment,
                    amount_minor,
                    paid_before=paid_after - amount_minor,
                    paid_after=paid_after,
                    previous_status=previous_status.value,
                    new_status=invoice.status,
                    details={
                        "gateway": payment.gateway,
                        "provider_transaction_ref": payment.provider_transaction_ref,
                        "payment_intent_id": (
                            str(payment.payment_intent_id) if payment.payment_intent_id else None
                        ),
                        "out_of_band": payment.out_of_band,
                    },
                )
                await session.flush()

                # Verify invoice was updated
                verified_invoice = await session.get(Invoice, invoice_id)
                if verified_invoice is None:
                    raise WriteVerificationError(f"Invoice {invoice_id} disappeared after update")
                if verified_invoice.amount_paid_minor != paid_after:
                    raise DataIntegrityError(
                        f"Amount paid mismatch: expected {paid_after}, "
                        f"got {verified_invoice.amount_paid_minor}"
                    )

                await session.commit()

                result = LedgerResult(
                    payment=payment_to_domain(verified_payment),
                    invoice=invoice_to_domain(verified_invoice),
                    previous_status=previous_status,
                )

        metrics.record_payment(
            meta.gateway.value if meta.gateway else None, amount_minor, meta.out_of_band
        )
        logger.info(
            "payment_applied",
            invoice_id=str(invoice_id),
            payment_id=str(result.payment.payment_id),
            amount_minor=amount_minor,
            amount_paid_minor=result.invoice.amount_paid_minor,
            previous_status=previous_status.value,
            new_status=result.invoice.status.value,
            out_of_band=meta.out_of_band,
        )
        return result

    async def _link_intent(self, session: AsyncSession, intent_id: UUID, payment_id: UUID) -> None:
        intent = await session.get(PaymentIntent, intent_id, with_for_update=True)
        if intent is None:
            raise DataIntegrityError(f"Payment intent {intent_id} not found while linking payment")
        intent.payment_id = payment_id
        if IntentStatus(intent.status).is_active:
            intent.status = IntentStatus.VERIFIED.value

    # ========================================================================
    # Refunds
    # ========================================================================

    async def open_refund(
        self, payment_id: UUID, amount_minor: int, reason: str | None = None
    ) -> PendingRefund:
        """
        Open a pending refund after checking the refund bound.

        Pending refunds count against the remainder so two concurrent refunds
        cannot both pass the check. A pending refund of the same amount whose
        provider outcome is unknown is resumed instead of opening a new one,
        so the provider sees the same refund id again.

        Raises:
            PaymentNotFoundError: Payment doesn't exist
            RefundExceedsPaymentError: Amount exceeds the un-refunded remainder
        """
        if amount_minor <= 0:
            raise InvalidRequestError(f"Refund amount must be positive: {amount_minor}")

        invoice_id = await self._invoice_id_for_payment(payment_id)

        async with self.locks.hold(invoice_id):
            async with self.session_factory() as session:
                await self._lock_invoice(session, invoice_id)
                payment = await session.get(
                    Payment, payment_id, with_for_update=True, populate_existing=True
                )
                if payment is None:
                    raise PaymentNotFoundError(payment_id)

                unresolved = await self._find_unresolved_refund(session, payment_id, amount_minor)
                if unresolved is not None:
                    logger.info(
                        "refund_resumed",
                        payment_id=str(payment_id),
                        refund_id=str(unresolved.id),
                        attempts=unresolved.attempts,
                    )
                    return PendingRefund(
                        refund=refund_to_domain(unresolved),
                        payment=payment_to_domain(payment),
                        resumed=True,
                    )

                pending = await self._pending_refund_total(session, payment_id)
                refundable = payment.amount_minor - payment.refunded_minor - pending
                if amount_minor > refundable:
                    logger.warning(
                        "refund_rejected_exceeds_payment",
                        payment_id=str(payment_id),
                        refundable_minor=refundable,
                        requested_minor=amount_minor,
                    )
                    raise RefundExceedsPaymentError(payment_id, refundable, amount_minor)

                refund = RefundRequest(
                    payment_id=payment_id,
                    invoice_id=invoice_id,
                    amount_minor=amount_minor,
                    reason=reason,
                    status=RefundStatus.PENDING.value,
                )
                session.add(refund)
                await session.flush()

                verified_refund = await session.get(RefundRequest, refund.id)
                if verified_refund is None:
                    raise WriteVerificationError(f"Refund {refund.id} not found after insert")

                await session.commit()

                return PendingRefund(
                    refund=refund_to_domain(verified_refund),
                    payment=payment_to_domain(payment),
                )

    async def settle_refund(
        self, refund_id: UUID, provider_refund_ref: str | None = None
    ) -> RefundResult:
        """
        Apply a pending refund to the payment and invoice.

        Settling a refund that is no longer pending is a no-op that returns
        the current state with applied=False.
        """
        invoice_id = await self._invoice_id_for_refund(refund_id)

        async with self.locks.hold(invoice_id):
            async with self.session_factory() as session:
                invoice = await self._lock_invoice(session, invoice_id)
                refund = await session.get(
                    RefundRequest, refund_id, with_for_update=True, populate_existing=True
                )
                if refund is None:
                    raise RefundNotFoundError(refund_id)
                payment = await session.get(
                    Payment, refund.payment_id, with_for_update=True, populate_existing=True
                )
                if payment is None:
                    raise PaymentNotFoundError(refund.payment_id)

                previous_status = InvoiceStatus(invoice.status)

                if refund.status != RefundStatus.PENDING.value:
                    return RefundResult(
                        refund=refund_to_domain(refund),
                        payment=payment_to_domain(payment),
                        invoice=invoice_to_domain(invoice),
                        previous_status=previous_status,
                        applied=False,
                    )

                refunded_after = payment.refunded_minor + refund.amount_minor
                paid_before = invoice.amount_paid_minor
                paid_after = paid_before - refund.amount_minor
                if refunded_after > payment.amount_minor:
                    raise DataIntegrityError(
                        f"Refunds on payment {payment.id} would exceed amount: "
                        f"{refunded_after} > {payment.amount_minor}"
                    )
                if paid_after < 0:
                    raise DataIntegrityError(
                        f"Invoice {invoice_id} amount paid would go negative: {paid_after}"
                    )

                now = utc_now()
                payment.refunded_minor = refunded_after
                payment.status = derive_payment_status(payment.amount_minor, refunded_after).value
                invoice.amount_paid_minor = paid_after
                invoice.status = derive_invoice_status(
                    previous_status, invoice.total_minor, paid_after, invoice.due_date, now
                ).value
                refund.status = RefundStatus.COMPLETED.value
                refund.provider_refund_ref = provider_refund_ref
                refund.completed_at = now
                self._record_history(
                    session,
                    HistoryEventType.REFUND_PROCESSED,
                    payment,
                    refund.amount_minor,
                    paid_before=paid_before,
                    paid_after=paid_after,
                    previous_status=previous_status.value,
                    new_status=invoice.status,
                    refund_id=refund.id,
                    details={
                        "provider_refund_ref": provider_refund_ref,
                        "reason": refund.reason,
                        "payment_status": payment.status,
                        "attempts": refund.attempts,
                    },
                )
                await session.flush()

                verified_invoice = await session.get(Invoice, invoice_id)
                if verified_invoice is None:
                    raise WriteVerificationError(f"Invoice {invoice_id} disappeared after refund")
                if verified_invoice.amount_paid_minor != paid_after:
                    raise DataIntegrityError(
                        f"Amount paid mismatch: expected {paid_after}, "
                        f"got {verified_invoice.amount_paid_minor}"
                    )

                await session.commit()

                result = RefundResult(
                    refund=refund_to_domain(refund),
                    payment=payment_to_domain(payment),
                    invoice=invoice_to_domain(verified_invoice),
                    previous_status=previous_status,
                )

        metrics.refunds_total.labels(
            gateway=result.payment.gateway.value if result.payment.gateway else "manual",
            outcome=RefundStatus.COMPLETED.value,
        ).inc()
        logger.info(
            "refund_applied",
            invoice_id=str(invoice_id),
            payment_id=str(result.payment.payment_id),
            refund_id=str(refund_id),
            amount_minor=result.refund.amount_minor,
            amount_paid_minor=result.invoice.amount_paid_minor,
            previous_status=previous_status.value,
            new_status=result.invoice.status.value,
        )
        return result

    async def fail_refund(self, refund_id: UUID, reason: str) -> RefundData:
        """Mark a pending refund failed; amounts are untouched."""
        invoice_id = await self._invoice_id_for_refund(refund_id)

        async with self.locks.hold(invoice_id):
            async with self.session_factory() as session:
                invoice = await self._lock_invoice(session, invoice_id)
                refund = await session.get(
                    RefundRequest, refund_id, with_for_update=True, populate_existing=True
                )
                if refund is None:
                    raise RefundNotFoundError(refund_id)
                if refund.status != RefundStatus.PENDING.value:
                    return refund_to_domain(refund)

                payment = await session.get(Payment, refund.payment_id)
                if payment is None:
                    raise PaymentNotFoundError(refund.payment_id)

                refund.status = RefundStatus.FAILED.value
                refund.failure_reason = reason[:1000]
                refund.completed_at = utc_now()
                self._record_history(
                    session,
                    HistoryEventType.REFUND_FAILED,
                    payment,
                    refund.amount_minor,
                    paid_before=invoice.amount_paid_minor,
                    paid_after=invoice.amount_paid_minor,
                    previous_status=invoice.status,
                    new_status=invoice.status,
                    refund_id=refund.id,
                    details={"reason": reason[:1000], "attempts": refund.attempts},
                )
                await session.commit()
                data = refund_to_domain(refund)

        logger.warning("refund_failed", refund_id=str(refund_id), reason=reason)
        return data

    async def record_refund_attempt(self, refund_id: UUID, error: str) -> RefundData:
        """
        Note a provider attempt whose outcome is unknown.

        The refund stays pending and keeps counting against the remainder.
        """
        async with self.session_factory() as session:
            refund = await session.get(RefundRequest, refund_id, with_for_update=True)
            if refund is None:
                raise RefundNotFoundError(refund_id)
            if refund.status == RefundStatus.PENDING.value:
                refund.attempts += 1
                refund.last_error = error[:1000]
                await session.commit()
            data = refund_to_domain(refund)

        logger.warning(
            "refund_outcome_unknown",
            refund_id=str(refund_id),
            attempts=data.attempts,
            error=error,
        )
        return data

    async def list_stale_refunds(
        self, created_before: datetime, limit: int = 100
    ) -> list[RefundData]:
        """Pending refunds opened before created_before, oldest first."""
        stmt = (
            select(RefundRequest)
            .where(
                RefundRequest.status == RefundStatus.PENDING.value,
                RefundRequest.created_at <= created_before,
            )
            .order_by(RefundRequest.created_at, RefundRequest.id)
            .limit(limit)
        )
        async with self.session_factory() as session:
            refunds = (await session.execute(stmt)).scalars().all()
            return [refund_to_domain(r) for r in refunds]

    async def apply_refund(
        self, payment_id: UUID, amount_minor: int, reason: str | None = None
    ) -> RefundResult:
        """
        Refund without a provider round-trip (manual payments).

        Raises:
            RefundExceedsPaymentError: Amount exceeds the un-refunded remainder
        """
        pending = await self.open_refund(payment_id, amount_minor, reason)
        return await self.settle_refund(pending.refund.refund_id)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_payment(self, payment_id: UUID) -> PaymentData:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            return payment_to_domain(payment)

    async def get_invoice(self, invoice_id: UUID) -> InvoiceData:
        async with self.session_factory() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            return invoice_to_domain(invoice)

    async def get_ledger(self, invoice_id: UUID) -> LedgerView:
        """Invoice with its payments, oldest first."""
        async with self.session_factory() as session:
            invoice = await session.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(invoice_id)
            stmt = (
                select(Payment)
                .where(Payment.invoice_id == invoice_id)
                .order_by(Payment.created_at, Payment.id)
            )
            payments = (await session.execute(stmt)).scalars().all()
            return LedgerView(
                invoice=invoice_to_domain(invoice),
                payments=tuple(payment_to_domain(p) for p in payments),
            )

    async def get_payment_detail(self, payment_id: UUID) -> PaymentDetail:
        """Payment with its history, oldest first."""
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            stmt = (
                select(PaymentHistory)
                .where(PaymentHistory.payment_id == payment_id)
                .order_by(PaymentHistory.event_timestamp, PaymentHistory.id)
            )
            entries = (await session.execute(stmt)).scalars().all()
            return PaymentDetail(
                payment=payment_to_domain(payment),
                history=tuple(history_to_domain(e) for e in entries),
            )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _lock_invoice(self, session: AsyncSession, invoice_id: UUID) -> Invoice:
        """Lock invoice row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def _find_payment_by_ref(
        self, session: AsyncSession, meta: PaymentMeta
    ) -> Payment | None:
        if meta.gateway is None or meta.provider_transaction_ref is None:
            return None
        stmt = select(Payment).where(
            Payment.gateway == meta.gateway.value,
            Payment.provider_transaction_ref == meta.provider_transaction_ref,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _record_history(
        session: AsyncSession,
        event_type: HistoryEventType,
        payment: Payment,
        amount_minor: int,
        *,
        paid_before: int,
        paid_after: int,
        previous_status: str | None,
        new_status: str | None,
        refund_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Stage a history row in the caller's transaction."""
        session.add(
            PaymentHistory(
                invoice_id=payment.invoice_id,
                payment_id=payment.id,
                refund_id=refund_id,
                event_type=event_type.value,
                amount_minor=amount_minor,
                amount_paid_before=paid_before,
                amount_paid_after=paid_after,
                previous_status=previous_status,
                new_status=new_status,
                details=details,
            )
        )

    async def _find_unresolved_refund(
        self, session: AsyncSession, payment_id: UUID, amount_minor: int
    ) -> RefundRequest | None:
        """Pending refund of this amount that already reached the provider once."""
        stmt = (
            select(RefundRequest)
            .where(
                RefundRequest.payment_id == payment_id,
                RefundRequest.amount_minor == amount_minor,
                RefundRequest.status == RefundStatus.PENDING.value,
                RefundRequest.last_error.is_not(None),
            )
            .order_by(RefundRequest.created_at, RefundRequest.id)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _pending_refund_total(self, session: AsyncSession, payment_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(RefundRequest.amount_minor), 0)).where(
            RefundRequest.payment_id == payment_id,
            RefundRequest.status == RefundStatus.PENDING.value,
        )
        result = await session.execute(stmt)
        return int(result.scalar_one())

    async def _invoice_id_for_payment(self, payment_id: UUID) -> UUID:
        async with self.session_factory() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            return payment.invoice_id

    async def _invoice_id_for_refund(self, refund_id: UUID) -> UUID:
        async with self.session_factory() as session:
            refund = await session.get(RefundRequest, refund_id)
            if refund is None:
                raise RefundNotFoundError(refund_id)
            return refund.invoice_id
