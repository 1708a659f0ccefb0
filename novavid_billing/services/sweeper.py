"""
Background sweeper - releases expired reservations and retries parked events.

Runs as an asyncio task started from the application lifespan.
"""

import asyncio
import time

from structlog import get_logger

from novavid_billing.models.domain import ParkedRetrySummary
from novavid_billing.observability.metrics import metrics
from novavid_billing.services.ledger import LedgerEngine
from novavid_billing.services.reconciler import WebhookReconciler

logger = get_logger(__name__)


class ReservationSweeper:
    """Periodic maintenance loop."""

    def __init__(
        self,
        ledger: LedgerEngine,
        reconciler: WebhookReconciler,
        interval_seconds: float,
    ) -> None:
        self.ledger = ledger
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def run_once(self) -> tuple[int, ParkedRetrySummary]:
        """One pass: release expired holds, then retry due parked events."""
        start = time.perf_counter()
        released = await self.ledger.sweep_expired()
        metrics.sweep_duration_seconds.observe(time.perf_counter() - start)

        summary = await self.reconciler.reprocess_parked()
        return released, summary

    async def _run(self) -> None:
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as e:
                # Keep the loop alive; the next pass retries
                logger.error("sweeper_pass_failed", error=str(e), exc_info=True)
                metrics.record_error(type(e).__name__, "sweeper")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="reservation-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("sweeper_stopped")
