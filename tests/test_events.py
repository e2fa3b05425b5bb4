"""
Tests for event dispatch and publishers.
"""

import json
from uuid import uuid4

import httpx
import pytest

from paygate.config import Settings
from paygate.db.models import utc_now
from paygate.models.api import GatewayName
from paygate.models.domain import PaymentEvent
from paygate.services.events import (
    PAYMENT_RECORDED,
    EventDispatcher,
    HttpEventPublisher,
    LogEventPublisher,
    build_event_publisher,
)


def make_event(event_type: str = PAYMENT_RECORDED) -> PaymentEvent:
    return PaymentEvent(
        event_type=event_type,
        invoice_id=uuid4(),
        occurred_at=utc_now(),
        payment_id=uuid4(),
        gateway=GatewayName.MOBILE_MONEY,
        amount_minor=50_000,
        currency="KES",
    )


class TestEventDispatcher:
    """Tests for EventDispatcher."""

    async def test_delivers_in_background(self, publisher):
        dispatcher = EventDispatcher(publisher)
        events = [make_event(), make_event()]

        dispatcher.dispatch(events)
        await dispatcher.drain()

        assert sorted(e.payment_id for e in publisher.events) == sorted(
            e.payment_id for e in events
        )
        assert dispatcher.pending == 0

    async def test_publisher_failure_absorbed(self, publisher):
        publisher.fail = True
        dispatcher = EventDispatcher(publisher)

        dispatcher.dispatch([make_event()])
        await dispatcher.drain()

        assert publisher.events == []

    async def test_drain_with_nothing_pending(self, publisher):
        await EventDispatcher(publisher).drain()


class TestPublishers:
    """Tests for concrete publishers."""

    async def test_http_publisher_posts_payload(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        publisher = HttpEventPublisher(client, "https://broadcast.test/events")
        event = make_event()

        await publisher.publish(event)

        body = json.loads(seen[0].content)
        assert body["type"] == PAYMENT_RECORDED
        assert body["payment_id"] == str(event.payment_id)
        assert body["gateway"] == "mobile-money"

    async def test_http_publisher_raises_on_error_status(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        publisher = HttpEventPublisher(client, "https://broadcast.test/events")

        with pytest.raises(httpx.HTTPStatusError):
            await publisher.publish(make_event())

    async def test_log_publisher(self):
        await LogEventPublisher().publish(make_event())

    def test_builder_selects_http(self):
        settings = Settings(
            event_publisher="http", event_publisher_url="https://broadcast.test/events"
        )
        client = httpx.AsyncClient()

        publisher = build_event_publisher(settings, client)

        assert isinstance(publisher, HttpEventPublisher)

    def test_builder_defaults_to_log(self):
        publisher = build_event_publisher(Settings(), httpx.AsyncClient())

        assert isinstance(publisher, LogEventPublisher)
