"""
Event Publisher - best-effort notifications after ledger commits.

The real-time broadcast transport is an external collaborator reached only
through EventPublisher.publish. Dispatch happens in background tasks after the
ledger transaction commits; a failing publisher is logged and counted and
never fails the request that produced the event.
"""

import asyncio
from collections.abc import Iterable
from typing import Protocol

import httpx

from paygate.config import Settings
from paygate.models.domain import PaymentEvent
from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics

logger = get_logger(__name__)

PAYMENT_RECORDED = "payment.recorded"
PAYMENT_REFUNDED = "payment.refunded"
INVOICE_STATUS_CHANGED = "invoice.status_changed"
INTENT_FAILED = "payment_intent.failed"
INTENT_EXPIRED = "payment_intent.expired"


class EventPublisher(Protocol):
    """Sink for payment events."""

    async def publish(self, event: PaymentEvent) -> None:
        """Deliver one event. May raise; the dispatcher absorbs failures."""
        ...


class LogEventPublisher:
    """Writes events to the structured log."""

    async def publish(self, event: PaymentEvent) -> None:
        logger.info("payment_event", **event.to_payload())


class HttpEventPublisher:
    """POSTs events as JSON to the broadcast service."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout_seconds: float = 5.0) -> None:
        self.client = client
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def publish(self, event: PaymentEvent) -> None:
        response = await self.client.post(
            self.url, json=event.to_payload(), timeout=self.timeout_seconds
        )
        response.raise_for_status()


class EventDispatcher:
    """
    Fires events at a publisher in background tasks.

    Tasks are tracked so shutdown can drain them.
    """

    def __init__(self, publisher: EventPublisher) -> None:
        self.publisher = publisher
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, events: Iterable[PaymentEvent]) -> None:
        for event in events:
            task = asyncio.create_task(self._deliver(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: PaymentEvent) -> None:
        try:
            await self.publisher.publish(event)
        except Exception as exc:
            metrics.event_publish_failures_total.labels(event_type=event.event_type).inc()
            logger.warning(
                "event_publish_failed",
                event_type=event.event_type,
                invoice_id=str(event.invoice_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for every in-flight delivery."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)


def build_event_publisher(settings: Settings, client: httpx.AsyncClient) -> EventPublisher:
    """Publisher selected by EVENT_PUBLISHER."""
    if settings.event_publisher == "http":
        return HttpEventPublisher(
            client, settings.event_publisher_url, settings.event_publisher_timeout_seconds
        )
    return LogEventPublisher()
