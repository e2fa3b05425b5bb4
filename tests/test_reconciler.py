"""
Tests for LedgerReconciler and invoice status derivation.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from paygate.db.models import Invoice, PaymentIntent
from paygate.exceptions import (
    AmountMismatchError,
    IdempotencyConflictError,
    InvalidRequestError,
    InvoiceNotFoundError,
    OverpaymentNotAllowedError,
    PaymentNotFoundError,
    RefundExceedsPaymentError,
)
from paygate.models.api import (
    GatewayName,
    HistoryEventType,
    IntentStatus,
    InvoiceStatus,
    PaymentStatus,
    RefundStatus,
)
from paygate.models.domain import PaymentMeta
from paygate.services.locks import InvoiceLocks
from paygate.services.reconciler import (
    LedgerReconciler,
    derive_invoice_status,
    derive_payment_status,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def card_meta(ref: str, intent_id=None) -> PaymentMeta:
    return PaymentMeta(
        gateway=GatewayName.CARD_HOSTED, provider_transaction_ref=ref, payment_intent_id=intent_id
    )


# ============================================================================
# Status Derivation
# ============================================================================


class TestDeriveInvoiceStatus:
    """Tests for derive_invoice_status."""

    @pytest.mark.parametrize(
        ("current", "paid", "expected"),
        [
            (InvoiceStatus.UNPAID, 100, InvoiceStatus.PAID),
            (InvoiceStatus.UNPAID, 40, InvoiceStatus.PARTIAL),
            (InvoiceStatus.OVERDUE, 40, InvoiceStatus.PARTIAL),
            (InvoiceStatus.PARTIAL, 0, InvoiceStatus.UNPAID),
            (InvoiceStatus.PAID, 0, InvoiceStatus.UNPAID),
            (InvoiceStatus.DRAFT, 0, InvoiceStatus.DRAFT),
            (InvoiceStatus.OVERDUE, 0, InvoiceStatus.OVERDUE),
            (InvoiceStatus.VOID, 100, InvoiceStatus.VOID),
        ],
    )
    def test_transitions(self, current, paid, expected):
        assert derive_invoice_status(current, 100, paid, None, NOW) == expected

    def test_full_refund_past_due_is_overdue(self):
        due = NOW - timedelta(days=1)
        assert derive_invoice_status(InvoiceStatus.PAID, 100, 0, due, NOW) == InvoiceStatus.OVERDUE

    def test_full_refund_before_due_is_unpaid(self):
        due = NOW + timedelta(days=1)
        assert derive_invoice_status(InvoiceStatus.PAID, 100, 0, due, NOW) == InvoiceStatus.UNPAID

    def test_overpaid_is_paid(self):
        assert derive_invoice_status(InvoiceStatus.UNPAID, 100, 150, None, NOW) == InvoiceStatus.PAID


class TestDerivePaymentStatus:
    """Tests for derive_payment_status."""

    @pytest.mark.parametrize(
        ("refunded", "expected"),
        [
            (0, PaymentStatus.COMPLETED),
            (30, PaymentStatus.PARTIALLY_REFUNDED),
            (100, PaymentStatus.REFUNDED),
        ],
    )
    def test_statuses(self, refunded, expected):
        assert derive_payment_status(100, refunded) == expected


# ============================================================================
# Payments
# ============================================================================


class TestApplyPayment:
    """Tests for apply_payment."""

    async def test_partial_then_paid(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)

        first = await reconciler.apply_payment(invoice_id, 40, "USD")
        second = await reconciler.apply_payment(invoice_id, 60, "USD")

        assert first.invoice.status == InvoiceStatus.PARTIAL
        assert first.status_changed is True
        assert second.invoice.status == InvoiceStatus.PAID
        assert second.invoice.balance_due_minor == 0
        assert second.previous_status == InvoiceStatus.PARTIAL

    async def test_overpayment_rejected(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        await reconciler.apply_payment(invoice_id, 60, "USD")

        with pytest.raises(OverpaymentNotAllowedError) as exc_info:
            await reconciler.apply_payment(invoice_id, 41, "USD")

        assert exc_info.value.balance_due_minor == 40
        assert (await reconciler.get_invoice(invoice_id)).amount_paid_minor == 60

    async def test_overpayment_allowed_when_configured(self, session_factory, make_invoice):
        reconciler = LedgerReconciler(session_factory, allow_overpayment=True)
        invoice_id = await make_invoice(total_minor=100)

        result = await reconciler.apply_payment(invoice_id, 150, "USD")

        assert result.invoice.amount_paid_minor == 150
        assert result.invoice.status == InvoiceStatus.PAID

    async def test_currency_mismatch(self, reconciler, make_invoice):
        invoice_id = await make_invoice(currency="USD")

        with pytest.raises(AmountMismatchError):
            await reconciler.apply_payment(invoice_id, 10, "EUR")

    async def test_void_invoice(self, reconciler, make_invoice):
        invoice_id = await make_invoice(status=InvoiceStatus.VOID)

        with pytest.raises(InvalidRequestError):
            await reconciler.apply_payment(invoice_id, 10, "USD")

    async def test_non_positive_amount(self, reconciler, make_invoice):
        invoice_id = await make_invoice()

        with pytest.raises(InvalidRequestError):
            await reconciler.apply_payment(invoice_id, 0, "USD")

    async def test_unknown_invoice(self, reconciler):
        with pytest.raises(InvoiceNotFoundError):
            await reconciler.apply_payment(uuid4(), 10, "USD")

    async def test_duplicate_transaction_ref(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        first = await reconciler.apply_payment(invoice_id, 30, "USD", card_meta("pi_1"))

        with pytest.raises(IdempotencyConflictError) as exc_info:
            await reconciler.apply_payment(invoice_id, 30, "USD", card_meta("pi_1"))

        assert exc_info.value.existing_id == first.payment.payment_id
        assert (await reconciler.get_invoice(invoice_id)).amount_paid_minor == 30

    async def test_links_intent(self, reconciler, make_invoice, session_factory):
        invoice_id = await make_invoice(total_minor=100)
        intent = PaymentIntent(
            invoice_id=invoice_id,
            gateway=GatewayName.CARD_HOSTED.value,
            requested_amount_minor=100,
            currency="USD",
            status=IntentStatus.AWAITING_CONFIRMATION.value,
            provider_session_ref="cs_1",
        )
        async with session_factory() as session:
            session.add(intent)
            await session.commit()

        result = await reconciler.apply_payment(invoice_id, 100, "USD", card_meta("pi_1", intent.id))

        async with session_factory() as session:
            stored = await session.get(PaymentIntent, intent.id)
        assert stored.status == IntentStatus.VERIFIED.value
        assert stored.payment_id == result.payment.payment_id

    async def test_concurrent_payments_lose_no_update(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=1_000)

        await asyncio.gather(
            *[
                reconciler.apply_payment(invoice_id, 100, "USD", card_meta(f"pi_{i}"))
                for i in range(10)
            ]
        )

        ledger = await reconciler.get_ledger(invoice_id)
        assert ledger.invoice.amount_paid_minor == 1_000
        assert ledger.invoice.status == InvoiceStatus.PAID
        assert len(ledger.payments) == 10

    async def test_concurrent_overpayment_admits_balance_only(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=250)

        results = await asyncio.gather(
            *[
                reconciler.apply_payment(invoice_id, 100, "USD", card_meta(f"pi_{i}"))
                for i in range(4)
            ],
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, OverpaymentNotAllowedError)]
        assert len(rejected) == 2
        assert (await reconciler.get_invoice(invoice_id)).amount_paid_minor == 200

    async def test_locks_released(self, session_factory, make_invoice):
        locks = InvoiceLocks()
        reconciler = LedgerReconciler(session_factory, locks=locks)
        invoice_id = await make_invoice()

        await reconciler.apply_payment(invoice_id, 10, "USD")

        assert len(locks) == 0


# ============================================================================
# Refunds
# ============================================================================


class TestRefunds:
    """Tests for open_refund, settle_refund and fail_refund."""

    async def test_refund_bound(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 60, "USD")).payment

        with pytest.raises(RefundExceedsPaymentError) as exc_info:
            await reconciler.apply_refund(payment.payment_id, 80)
        assert exc_info.value.refundable_minor == 60

        result = await reconciler.apply_refund(payment.payment_id, 60)

        assert result.invoice.status == InvoiceStatus.UNPAID
        assert result.invoice.balance_due_minor == 100
        assert result.payment.status == PaymentStatus.REFUNDED
        assert result.refund.status == RefundStatus.COMPLETED

    async def test_pending_refunds_count_against_remainder(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        await reconciler.open_refund(payment.payment_id, 70)

        with pytest.raises(RefundExceedsPaymentError):
            await reconciler.open_refund(payment.payment_id, 40)

    async def test_failed_refund_frees_remainder(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        pending = await reconciler.open_refund(payment.payment_id, 70)

        failed = await reconciler.fail_refund(pending.refund.refund_id, "declined")
        reopened = await reconciler.open_refund(payment.payment_id, 100)

        assert failed.status == RefundStatus.FAILED
        assert reopened.refund.amount_minor == 100
        assert (await reconciler.get_invoice(invoice_id)).amount_paid_minor == 100

    async def test_settle_is_idempotent(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        pending = await reconciler.open_refund(payment.payment_id, 30)

        first = await reconciler.settle_refund(pending.refund.refund_id, "re_1")
        second = await reconciler.settle_refund(pending.refund.refund_id, "re_1")

        assert first.invoice.amount_paid_minor == 70
        assert second.invoice.amount_paid_minor == 70
        assert second.status_changed is False

    async def test_full_refund_past_due_goes_overdue(self, reconciler, make_invoice):
        invoice_id = await make_invoice(
            total_minor=100, due_date=datetime.now(UTC) - timedelta(days=3)
        )
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment

        result = await reconciler.apply_refund(payment.payment_id, 100)

        assert result.invoice.status == InvoiceStatus.OVERDUE

    async def test_concurrent_refunds_respect_bound(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment

        results = await asyncio.gather(
            *[reconciler.apply_refund(payment.payment_id, 40) for _ in range(3)],
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, RefundExceedsPaymentError)]
        assert len(rejected) == 1
        refreshed = await reconciler.get_payment(payment.payment_id)
        assert refreshed.refunded_minor == 80
        assert (await reconciler.get_invoice(invoice_id)).amount_paid_minor == 20

    async def test_unknown_payment(self, reconciler):
        with pytest.raises(PaymentNotFoundError):
            await reconciler.open_refund(uuid4(), 10)

    async def test_unresolved_refund_is_resumed(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        first = await reconciler.open_refund(payment.payment_id, 30)
        await reconciler.record_refund_attempt(first.refund.refund_id, "GATEWAY_UNAVAILABLE: down")

        again = await reconciler.open_refund(payment.payment_id, 30)

        assert again.resumed is True
        assert again.refund.refund_id == first.refund.refund_id
        assert again.refund.attempts == 1

    async def test_in_flight_refund_is_not_resumed(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        first = await reconciler.open_refund(payment.payment_id, 30)

        second = await reconciler.open_refund(payment.payment_id, 30)

        assert second.resumed is False
        assert second.refund.refund_id != first.refund.refund_id

    async def test_attempt_on_settled_refund_is_ignored(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        result = await reconciler.apply_refund(payment.payment_id, 30)

        data = await reconciler.record_refund_attempt(result.refund.refund_id, "late timeout")

        assert data.status == RefundStatus.COMPLETED
        assert data.attempts == 0

    async def test_stale_refunds_listed_oldest_first(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        first = await reconciler.open_refund(payment.payment_id, 10)
        second = await reconciler.open_refund(payment.payment_id, 20)
        await reconciler.apply_refund(payment.payment_id, 5)

        stale = await reconciler.list_stale_refunds(datetime.now(UTC) + timedelta(seconds=1))
        recent = await reconciler.list_stale_refunds(datetime.now(UTC) - timedelta(minutes=5))

        assert [r.refund_id for r in stale] == [first.refund.refund_id, second.refund.refund_id]
        assert recent == []

class TestReads:
    """Tests for ledger reads."""

    async def test_ledger_lists_payments_oldest_first(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        first = await reconciler.apply_payment(invoice_id, 10, "USD", card_meta("pi_a"))
        second = await reconciler.apply_payment(invoice_id, 20, "USD", card_meta("pi_b"))

        ledger = await reconciler.get_ledger(invoice_id)

        assert [p.payment_id for p in ledger.payments] == [
            first.payment.payment_id,
            second.payment.payment_id,
        ]

    async def test_invoice_row_matches_ledger(self, reconciler, make_invoice, session_factory):
        invoice_id = await make_invoice(total_minor=100)
        await reconciler.apply_payment(invoice_id, 25, "USD")

        async with session_factory() as session:
            row = (await session.execute(select(Invoice).where(Invoice.id == invoice_id))).scalar_one()

        assert row.amount_paid_minor == 25
        assert row.status == InvoiceStatus.PARTIAL.value


# ============================================================================
# Payment History
# ============================================================================


class TestHistory:
    """Tests for the payment history trail."""

    async def test_payment_recorded(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        result = await reconciler.apply_payment(invoice_id, 40, "USD", card_meta("pi_1"))

        detail = await reconciler.get_payment_detail(result.payment.payment_id)

        assert detail.payment.payment_id == result.payment.payment_id
        (entry,) = detail.history
        assert entry.event_type == HistoryEventType.PAYMENT_RECORDED
        assert entry.amount_minor == 40
        assert (entry.amount_paid_before, entry.amount_paid_after) == (0, 40)
        assert entry.previous_status == InvoiceStatus.UNPAID.value
        assert entry.new_status == InvoiceStatus.PARTIAL.value
        assert entry.details["provider_transaction_ref"] == "pi_1"

    async def test_refunds_are_appended(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        failed = await reconciler.open_refund(payment.payment_id, 10, "duplicate")
        await reconciler.fail_refund(failed.refund.refund_id, "declined")
        settled = await reconciler.apply_refund(payment.payment_id, 30, "damaged")

        history = (await reconciler.get_payment_detail(payment.payment_id)).history

        assert [e.event_type for e in history] == [
            HistoryEventType.PAYMENT_RECORDED,
            HistoryEventType.REFUND_FAILED,
            HistoryEventType.REFUND_PROCESSED,
        ]
        assert history[1].refund_id == failed.refund.refund_id
        assert history[1].amount_paid_before == history[1].amount_paid_after == 100
        assert history[1].details["reason"] == "declined"
        assert history[2].refund_id == settled.refund.refund_id
        assert (history[2].amount_paid_before, history[2].amount_paid_after) == (100, 70)
        assert history[2].new_status == InvoiceStatus.PARTIAL.value

    async def test_no_op_settle_writes_nothing(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=100)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD")).payment
        settled = await reconciler.apply_refund(payment.payment_id, 30)

        again = await reconciler.settle_refund(settled.refund.refund_id)
        await reconciler.fail_refund(settled.refund.refund_id, "late")

        assert again.applied is False
        history = (await reconciler.get_payment_detail(payment.payment_id)).history
        assert len(history) == 2

    async def test_rejected_operations_write_nothing(self, reconciler, make_invoice):
        invoice_id = await make_invoice(total_minor=200)
        payment = (await reconciler.apply_payment(invoice_id, 100, "USD", card_meta("pi_1"))).payment

        with pytest.raises(RefundExceedsPaymentError):
            await reconciler.apply_refund(payment.payment_id, 101)
        with pytest.raises(IdempotencyConflictError):
            await reconciler.apply_payment(invoice_id, 1, "USD", card_meta("pi_1"))

        history = (await reconciler.get_payment_detail(payment.payment_id)).history
        assert len(history) == 1

    async def test_unknown_payment(self, reconciler):
        with pytest.raises(PaymentNotFoundError):
            await reconciler.get_payment_detail(uuid4())
