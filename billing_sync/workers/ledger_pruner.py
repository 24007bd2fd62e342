"""
Idempotency ledger pruning worker.

Evicts ledger entries older than the retention window on a fixed interval.
Runs inside the API process, started and stopped from the lifespan.
"""
import asyncio

import structlog

from billing_sync.core.idempotency import IdempotencyLedger

logger = structlog.get_logger(__name__)


class LedgerPruner:
    """Periodically calls purge_expired on a ledger."""

    def __init__(self, ledger: IdempotencyLedger, interval_seconds: float = 3600.0):
        self.ledger = ledger
        self.interval_seconds = interval_seconds

    async def run_once(self) -> int:
        """Run a single eviction pass; errors are logged and reported as 0."""
        try:
            purged = await self.ledger.purge_expired()
        except Exception as e:
            logger.error("ledger_prune_failed", error=str(e), error_type=type(e).__name__)
            return 0

        logger.info("ledger_prune_completed", purged=purged)
        return purged

    async def run(self, stop_event: asyncio.Event) -> None:
        """Prune until stop_event is set."""
        logger.info("ledger_pruner_started", interval_seconds=self.interval_seconds)
        try:
            while not stop_event.is_set():
                await self.run_once()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            logger.info("ledger_pruner_stopped")
