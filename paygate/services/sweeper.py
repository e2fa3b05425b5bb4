"""
Maintenance Sweeper - periodic intent expiry, refund retry and idempotency purge.

Runs as a background task inside the API process. Lazy expiry on initiate and
verify keeps correctness without it; the sweeper keeps storage tidy and makes
expiry events timely.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime

from paygate.observability.logging import get_logger
from paygate.observability.metrics import metrics
from paygate.services.coordinator import PaymentCoordinator
from paygate.services.idempotency import IdempotencyStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepResult:
    intents_expired: int
    records_purged: int
    refunds_retried: int = 0


class MaintenanceSweeper:
    """
    Background loop around run_once.

    Usage:
        sweeper = MaintenanceSweeper(coordinator, coordinator.idempotency, 60.0)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        coordinator: PaymentCoordinator,
        idempotency: IdempotencyStore,
        interval_seconds: float = 60.0,
    ) -> None:
        self.coordinator = coordinator
        self.idempotency = idempotency
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def run_once(self, now: datetime | None = None) -> SweepResult:
        expired = await self.coordinator.expire_stale_intents(now)
        retried = await self.coordinator.retry_pending_refunds(now)
        purged = await self.idempotency.purge_expired(now)
        if purged:
            metrics.idempotency_records_purged_total.inc(purged)
        return SweepResult(
            intents_expired=len(expired), records_purged=purged, refunds_retried=retried
        )

    def start(self) -> None:
        if self._task is not None:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                result = await self.run_once()
                if result.intents_expired or result.records_purged or result.refunds_retried:
                    logger.info(
                        "sweep_completed",
                        intents_expired=result.intents_expired,
                        refunds_retried=result.refunds_retried,
                        records_purged=result.records_purged,
                    )
            except Exception as exc:
                metrics.record_error(type(exc).__name__, "sweep")
                logger.error("sweep_failed", error=str(exc), error_type=type(exc).__name__)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
