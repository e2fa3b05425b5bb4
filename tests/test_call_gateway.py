"""
Tests for call_gateway retry/timeout handling and HTTP status classification.
"""

import asyncio

import httpx
import pytest

from paygate.exceptions import (
    GatewayUnavailableError,
    InvalidRequestError,
    SignatureMismatchError,
)
from paygate.models.api import GatewayName
from paygate.services.gateways.base import RetryPolicy, call_gateway, raise_for_gateway_status

GATEWAY = GatewayName.CARD_HOSTED


class Flaky:
    """Raises the queued errors in order, then returns value."""

    def __init__(self, errors: list[Exception], value: str = "ok", delay: float = 0.0) -> None:
        self.errors = list(errors)
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestRetryPolicy:
    """Tests for RetryPolicy validation."""

    def test_rejects_zero_timeout(self):
        with pytest.raises(ValueError, match="timeout_seconds"):
            RetryPolicy(timeout_seconds=0)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)


class TestCallGateway:
    """Tests for call_gateway."""

    async def test_returns_value(self, fast_retry):
        func = Flaky([])

        assert await call_gateway(GATEWAY, "verify", func, fast_retry) == "ok"
        assert func.calls == 1

    async def test_retries_unavailable(self, fast_retry):
        func = Flaky([GatewayUnavailableError("card-hosted", "503")] * 2)

        assert await call_gateway(GATEWAY, "verify", func, fast_retry) == "ok"
        assert func.calls == 3

    async def test_gives_up_after_max_attempts(self, fast_retry):
        func = Flaky([GatewayUnavailableError("card-hosted", "503")] * 5)

        with pytest.raises(GatewayUnavailableError):
            await call_gateway(GATEWAY, "verify", func, fast_retry)
        assert func.calls == 3

    @pytest.mark.parametrize(
        "error",
        [InvalidRequestError("bad"), SignatureMismatchError("card-hosted", "sig")],
    )
    async def test_terminal_errors_not_retried(self, fast_retry, error):
        func = Flaky([error])

        with pytest.raises(type(error)):
            await call_gateway(GATEWAY, "verify", func, fast_retry)
        assert func.calls == 1

    async def test_timeout_is_unavailable(self):
        policy = RetryPolicy(
            timeout_seconds=0.01, max_attempts=2, backoff_initial_seconds=0, backoff_max_seconds=0
        )
        func = Flaky([], delay=1.0)

        with pytest.raises(GatewayUnavailableError, match="timed out"):
            await call_gateway(GATEWAY, "initiate", func, policy)
        assert func.calls == 2


class TestRaiseForGatewayStatus:
    """Tests for HTTP status classification."""

    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    def test_retryable(self, status):
        with pytest.raises(GatewayUnavailableError):
            raise_for_gateway_status(GATEWAY, httpx.Response(status, text="x"))

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    def test_terminal(self, status):
        with pytest.raises(InvalidRequestError):
            raise_for_gateway_status(GATEWAY, httpx.Response(status, text="x"))

    def test_success(self):
        raise_for_gateway_status(GATEWAY, httpx.Response(200))
