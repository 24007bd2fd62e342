"""
Idempotency ledger for inbound webhook events.

Records which event ids have been claimed for processing. A claim is atomic
with respect to concurrent deliveries of the same id, so at most one delivery
applies an event. Two implementations:
1. In-memory (single process, asyncio.Lock)
2. Redis (SET NX EX, shared by every instance of the service)
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

import redis.asyncio as aioredis
import structlog

from billing_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class LedgerEntry:
    """First sighting and delivery count for an event id."""

    event_id: str
    first_seen_at: float
    attempt_count: int


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of a claim attempt."""

    claimed: bool
    event_id: str
    attempt_count: int

    @property
    def duplicate(self) -> bool:
        return not self.claimed


class IdempotencyLedger(ABC):
    """
    Claim registry for inbound events.

    Claim before dispatch, release on handler failure, never release on
    success. Attempt counts survive a release so redeliveries are counted.
    """

    @abstractmethod
    async def try_claim(self, event_id: str) -> ClaimResult:
        """Atomically claim an event id."""

    @abstractmethod
    async def release(self, event_id: str) -> None:
        """Drop a claim so a redelivery can process the event again."""

    @abstractmethod
    async def purge_expired(self, now: Optional[float] = None) -> int:
        """Evict entries older than the retention window; return the count."""

    async def close(self) -> None:
        """Release any held resources."""
        return None


class InMemoryIdempotencyLedger(IdempotencyLedger):
    """Process-local ledger backed by a dict under an asyncio.Lock."""

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize in-memory ledger.

        Args:
            retention_seconds: Age after which entries are evicted
            clock: Wall-clock time source (epoch seconds)
        """
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: Dict[str, LedgerEntry] = {}
        self._claimed: Set[str] = set()

    async def try_claim(self, event_id: str) -> ClaimResult:
        async with self._lock:
            entry = self._entries.get(event_id)
            if entry is None:
                entry = LedgerEntry(event_id, self._clock(), 1)
            else:
                entry = LedgerEntry(event_id, entry.first_seen_at, entry.attempt_count + 1)
            self._entries[event_id] = entry

            if event_id in self._claimed:
                outcome = ClaimResult(False, event_id, entry.attempt_count)
            else:
                self._claimed.add(event_id)
                outcome = ClaimResult(True, event_id, entry.attempt_count)

        metrics.record_ledger_claim("claimed" if outcome.claimed else "duplicate")
        logger.debug(
            "ledger_claim",
            event_id=event_id,
            claimed=outcome.claimed,
            attempt_count=outcome.attempt_count,
        )
        return outcome

    async def release(self, event_id: str) -> None:
        async with self._lock:
            self._claimed.discard(event_id)
        metrics.record_ledger_claim("released")
        logger.info("ledger_claim_released", event_id=event_id)

    async def purge_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        cutoff = now - self.retention_seconds
        async with self._lock:
            expired = [
                event_id
                for event_id, entry in self._entries.items()
                if entry.first_seen_at < cutoff
            ]
            for event_id in expired:
                del self._entries[event_id]
                self._claimed.discard(event_id)

        metrics.record_ledger_purge(len(expired))
        if expired:
            logger.info("ledger_entries_purged", count=len(expired))
        return len(expired)

    async def get_entry(self, event_id: str) -> Optional[LedgerEntry]:
        async with self._lock:
            return self._entries.get(event_id)

    async def is_claimed(self, event_id: str) -> bool:
        async with self._lock:
            return event_id in self._claimed


class RedisIdempotencyLedger(IdempotencyLedger):
    """
    Ledger shared across instances through Redis.

    Keys:
        {prefix}:claim:{event_id}     claim marker, SET NX EX
        {prefix}:attempts:{event_id}  delivery counter, kept across releases

    Both keys expire after the retention window, so purge_expired has nothing
    to do beyond reporting zero.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        key_prefix: str = "webhook_ledger",
        clock: Callable[[], float] = time.time,
    ):
        self.redis_client = redis_client
        self.retention_seconds = int(retention_seconds)
        self.key_prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> "RedisIdempotencyLedger":
        client = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _claim_key(self, event_id: str) -> str:
        return f"{self.key_prefix}:claim:{event_id}"

    def _attempts_key(self, event_id: str) -> str:
        return f"{self.key_prefix}:attempts:{event_id}"

    async def try_claim(self, event_id: str) -> ClaimResult:
        attempts_key = self._attempts_key(event_id)
        attempt_count = int(await self.redis_client.incr(attempts_key))
        if attempt_count == 1:
            await self.redis_client.expire(attempts_key, self.retention_seconds)

        acquired = await self.redis_client.set(
            self._claim_key(event_id),
            str(self._clock()),
            nx=True,
            ex=self.retention_seconds,
        )
        outcome = ClaimResult(bool(acquired), event_id, attempt_count)

        metrics.record_ledger_claim("claimed" if outcome.claimed else "duplicate")
        logger.debug(
            "ledger_claim",
            event_id=event_id,
            claimed=outcome.claimed,
            attempt_count=attempt_count,
            backend="redis",
        )
        return outcome

    async def release(self, event_id: str) -> None:
        await self.redis_client.delete(self._claim_key(event_id))
        metrics.record_ledger_claim("released")
        logger.info("ledger_claim_released", event_id=event_id, backend="redis")

    async def purge_expired(self, now: Optional[float] = None) -> int:
        return 0

    async def ping(self) -> bool:
        return bool(await self.redis_client.ping())

    async def close(self) -> None:
        await self.redis_client.aclose()
