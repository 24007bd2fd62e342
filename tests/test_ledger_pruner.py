"""
Tests for the ledger pruning worker.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from billing_sync.core.idempotency import InMemoryIdempotencyLedger
from billing_sync.workers.ledger_pruner import LedgerPruner
from conftest import FakeClock


@pytest.mark.unit
class TestLedgerPruner:
    @pytest.mark.asyncio
    async def test_run_once_purges_expired(self, fake_clock: FakeClock) -> None:
        ledger = InMemoryIdempotencyLedger(retention_seconds=60, clock=fake_clock)
        await ledger.try_claim("evt_1")
        fake_clock.advance(120)

        assert await LedgerPruner(ledger).run_once() == 1

    @pytest.mark.asyncio
    async def test_run_once_survives_backend_errors(self) -> None:
        ledger = AsyncMock()
        ledger.purge_expired.side_effect = ConnectionError("redis down")

        assert await LedgerPruner(ledger).run_once() == 0

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self) -> None:
        ledger = AsyncMock()
        ledger.purge_expired.return_value = 0
        stop_event = asyncio.Event()
        pruner = LedgerPruner(ledger, interval_seconds=0.01)

        task = asyncio.create_task(pruner.run(stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert ledger.purge_expired.await_count >= 2
