"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every error carries a stable machine-readable ``code``, the HTTP status the API
layer renders it with, and whether the failing operation may be retried.
"""

from uuid import UUID


class PaymentError(Exception):
    """Base exception for all payment errors."""

    code = "PAYMENT_ERROR"
    http_status = 500
    retryable = False


class InvalidRequestError(PaymentError):
    """Raised when input is malformed or rejected by the provider as invalid."""

    code = "INVALID_REQUEST"
    http_status = 422

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid request: {message}")


class GatewayUnavailableError(PaymentError):
    """Raised on transport failures, timeouts and provider 5xx responses."""

    code = "GATEWAY_UNAVAILABLE"
    http_status = 503
    retryable = True

    def __init__(self, gateway: str, message: str) -> None:
        self.gateway = gateway
        self.message = message
        super().__init__(f"Gateway {gateway} unavailable: {message}")


class GatewayError(PaymentError):
    """Raised when a provider rejects an operation for a non-transient reason."""

    code = "GATEWAY_ERROR"
    http_status = 502

    def __init__(self, gateway: str, message: str) -> None:
        self.gateway = gateway
        self.message = message
        super().__init__(f"Gateway {gateway} error: {message}")


class GatewayNotConfiguredError(PaymentError):
    """Raised when a gateway has no adapter registered."""

    code = "GATEWAY_NOT_CONFIGURED"
    http_status = 404

    def __init__(self, gateway: str) -> None:
        self.gateway = gateway
        super().__init__(f"Gateway not configured: {gateway}")


class SignatureMismatchError(PaymentError):
    """Raised when a provider signature or callback token does not verify."""

    code = "SIGNATURE_MISMATCH"
    http_status = 401

    def __init__(self, gateway: str, message: str) -> None:
        self.gateway = gateway
        self.message = message
        super().__init__(f"Signature mismatch for {gateway}: {message}")


class AmountMismatchError(PaymentError):
    """Raised when a confirmed amount or currency disagrees with the intent."""

    code = "AMOUNT_MISMATCH"
    http_status = 422

    def __init__(
        self,
        expected_minor: int,
        received_minor: int,
        expected_currency: str,
        received_currency: str,
    ) -> None:
        self.expected_minor = expected_minor
        self.received_minor = received_minor
        self.expected_currency = expected_currency
        self.received_currency = received_currency
        super().__init__(
            f"Amount mismatch. Expected: {expected_minor} {expected_currency}, "
            f"Received: {received_minor} {received_currency}"
        )


class DuplicateActiveIntentError(PaymentError):
    """Raised when an invoice already has a non-terminal intent on a gateway."""

    code = "DUPLICATE_ACTIVE_INTENT"
    http_status = 409

    def __init__(self, invoice_id: UUID, gateway: str, intent_id: UUID | None) -> None:
        self.invoice_id = invoice_id
        self.gateway = gateway
        self.intent_id = intent_id
        super().__init__(
            f"Invoice {invoice_id} already has an active {gateway} intent: {intent_id}"
        )


class OverpaymentNotAllowedError(PaymentError):
    """Raised when a payment would push amount paid above the invoice total."""

    code = "OVERPAYMENT_NOT_ALLOWED"
    http_status = 409

    def __init__(self, invoice_id: UUID, balance_due_minor: int, amount_minor: int) -> None:
        self.invoice_id = invoice_id
        self.balance_due_minor = balance_due_minor
        self.amount_minor = amount_minor
        super().__init__(
            f"Overpayment on invoice {invoice_id}. "
            f"Balance due: {balance_due_minor}, Amount: {amount_minor}"
        )


class RefundExceedsPaymentError(PaymentError):
    """Raised when a refund is larger than the un-refunded remainder."""

    code = "REFUND_EXCEEDS_PAYMENT"
    http_status = 409

    def __init__(self, payment_id: UUID, refundable_minor: int, requested_minor: int) -> None:
        self.payment_id = payment_id
        self.refundable_minor = refundable_minor
        self.requested_minor = requested_minor
        super().__init__(
            f"Refund exceeds payment {payment_id}. "
            f"Refundable: {refundable_minor}, Requested: {requested_minor}"
        )


class IdempotencyConflictError(PaymentError):
    """
    Raised when a key is held by another in-flight operation, or when a ledger
    write collides with an already recorded provider transaction.

    Internal signal: callers resolve it by returning the cached result.
    """

    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409
    retryable = True

    def __init__(self, key: str, existing_id: UUID | None = None) -> None:
        self.key = key
        self.existing_id = existing_id
        super().__init__(f"Idempotency conflict: key {key}, existing ID {existing_id}")


class InvoiceNotFoundError(PaymentError):
    """Raised when invoice doesn't exist."""

    code = "INVOICE_NOT_FOUND"
    http_status = 404

    def __init__(self, invoice_id: UUID) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class PaymentNotFoundError(PaymentError):
    """Raised when payment doesn't exist."""

    code = "PAYMENT_NOT_FOUND"
    http_status = 404

    def __init__(self, payment_id: UUID) -> None:
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class PaymentIntentNotFoundError(PaymentError):
    """Raised when no intent matches an id or provider session reference."""

    code = "PAYMENT_INTENT_NOT_FOUND"
    http_status = 404

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Payment intent not found: {reference}")


class RefundNotFoundError(PaymentError):
    """Raised when refund request doesn't exist."""

    code = "REFUND_NOT_FOUND"
    http_status = 404

    def __init__(self, refund_id: UUID) -> None:
        self.refund_id = refund_id
        super().__init__(f"Refund not found: {refund_id}")


class WriteVerificationError(PaymentError):
    """Raised when database write verification fails."""

    code = "WRITE_VERIFICATION_FAILED"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(PaymentError):
    """Raised when data integrity constraint violated."""

    code = "DATA_INTEGRITY_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
