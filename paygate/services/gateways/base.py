"""
Gateway Adapter Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.

Each adapter turns one provider's protocol into PaymentAttemptResult values so
nothing above this layer branches on provider-specific shapes.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar
from uuid import UUID

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paygate.exceptions import GatewayUnavailableError, InvalidRequestError
from paygate.models.api import AmountPolicy, GatewayName
from paygate.models.domain import (
    PaymentAttemptResult,
    PaymentProof,
    ProviderSession,
    RefundOutcome,
    ReturnContext,
    WebhookRequest,
)
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics, track_gateway_call

logger = get_logger(__name__)

T = TypeVar("T")


class GatewayAdapter(Protocol):
    """
    Gateway adapter protocol.

    Adapters hold credentials only and are safe to call concurrently.
    """

    @property
    def gateway(self) -> GatewayName:
        """Discriminant used in routes, keys and the ledger."""
        ...

    @property
    def amount_policy(self) -> AmountPolicy:
        """Whether a confirmed amount must equal the requested amount."""
        ...

    async def initiate(
        self,
        invoice_id: UUID,
        amount_minor: int,
        currency: str,
        return_context: ReturnContext,
    ) -> ProviderSession:
        """
        Create a provider session for one payment attempt.

        Raises:
            GatewayUnavailableError: Transport failure, timeout or provider 5xx
            InvalidRequestError: Provider rejected the request as malformed
        """
        ...

    async def verify(self, session_ref: str, proof: PaymentProof) -> PaymentAttemptResult:
        """
        Confirm a payment from client-supplied proof.

        Raises:
            SignatureMismatchError: Proof signature does not verify
            GatewayUnavailableError: Provider could not be reached
        """
        ...

    async def parse_webhook(self, request: WebhookRequest) -> PaymentAttemptResult:
        """
        Authenticate and normalize a provider notification.

        Raises:
            SignatureMismatchError: Signature or callback token does not verify
            InvalidRequestError: Payload cannot be parsed
        """
        ...

    async def refund(
        self,
        provider_transaction_ref: str,
        amount_minor: int,
        idempotency_key: str | None = None,
    ) -> RefundOutcome:
        """
        Refund (part of) a captured payment.

        Raises:
            GatewayUnavailableError: Provider could not be reached
            InvalidRequestError: Provider rejected the refund
        """
        ...


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff applied to every provider call."""

    timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_initial_seconds: float = 0.5
    backoff_max_seconds: float = 4.0

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive: {self.timeout_seconds}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {self.max_attempts}")


async def call_gateway(
    gateway: GatewayName,
    operation: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
) -> T:
    """
    Run one provider call with a bounded timeout and retry on GatewayUnavailable.

    Every other error is terminal and propagates after the first attempt.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        metrics.gateway_retries_total.labels(gateway=gateway.value, operation=operation).inc()
        outcome = retry_state.outcome
        logger.warning(
            "gateway_call_retrying",
            gateway=gateway.value,
            operation=operation,
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome else None,
        )

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(GatewayUnavailableError),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.backoff_initial_seconds,
            min=policy.backoff_initial_seconds,
            max=policy.backoff_max_seconds,
        ),
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            with track_gateway_call(gateway.value, operation):
                try:
                    return await asyncio.wait_for(func(), timeout=policy.timeout_seconds)
                except TimeoutError as exc:
                    raise GatewayUnavailableError(
                        gateway.value, f"{operation} timed out after {policy.timeout_seconds}s"
                    ) from exc

    raise AssertionError("unreachable")  # pragma: no cover


# ============================================================================
# HTTP Helpers
# ============================================================================


async def send_request(
    gateway: GatewayName,
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: object,
) -> httpx.Response:
    """Send a request, classifying transport failures as GatewayUnavailable."""
    try:
        return await client.request(method, url, **kwargs)  # type: ignore[arg-type]
    except httpx.TransportError as exc:
        logger.warning(
            "gateway_transport_error",
            gateway=gateway.value,
            url=url,
            error_type=type(exc).__name__,
        )
        raise GatewayUnavailableError(gateway.value, f"{type(exc).__name__}: {exc}") from exc


def raise_for_gateway_status(gateway: GatewayName, response: httpx.Response) -> None:
    """
    Classify provider HTTP status codes.

    5xx and 429 are retryable; any other 4xx is a terminal invalid request.
    """
    if response.status_code >= 500 or response.status_code == 429:
        raise GatewayUnavailableError(
            gateway.value, f"HTTP {response.status_code}: {response.text[:200]}"
        )
    if response.status_code >= 400:
        raise InvalidRequestError(
            f"{gateway.value} rejected request with HTTP {response.status_code}: "
            f"{response.text[:200]}"
        )
