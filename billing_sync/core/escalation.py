"""
Admin escalation pipeline.

Filters failures by severity, suppresses repeats of the same alert within a
rate-limit window, and fans the rest out to every configured channel. Channel
failures are logged and never reach the caller.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from billing_sync.core.errors import ErrorClass, PaymentProviderError, RetriesExhaustedError
from billing_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class Severity(str, Enum):
    """Notification severity levels, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]

# Severity of a terminal outbound failure, by class. Exhausted rate limits are
# reported separately through notify_rate_limit_exceeded.
OUTBOUND_FAILURE_SEVERITY: Dict[ErrorClass, Severity] = {
    ErrorClass.RATE_LIMIT: Severity.MEDIUM,
    ErrorClass.NETWORK: Severity.HIGH,
    ErrorClass.API_ERROR: Severity.HIGH,
    ErrorClass.AUTHENTICATION: Severity.CRITICAL,
    ErrorClass.INVALID_REQUEST: Severity.LOW,
    ErrorClass.CARD_ERROR: Severity.LOW,
    ErrorClass.IDEMPOTENCY_ERROR: Severity.HIGH,
    ErrorClass.UNKNOWN: Severity.HIGH,
}


@dataclass(frozen=True)
class NotificationEvent:
    """A single admin alert."""

    severity: Severity
    title: str
    message: str
    operation: str
    error_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def dedupe_key(self) -> str:
        return f"{self.operation}:{self.error_type}:{self.severity.value}"


@dataclass(frozen=True)
class NotificationOutcome:
    """What the pipeline did with a notification."""

    status: str  # delivered, suppressed, dropped
    dedupe_key: str
    deliveries: Dict[str, bool] = field(default_factory=dict)


class NotificationChannel(ABC):
    """Destination for admin alerts."""

    name: str = "channel"

    @abstractmethod
    async def deliver(self, event: NotificationEvent) -> bool:
        """Deliver an event; return False on failure."""


class RateLimitStore(ABC):
    """Last-sent timestamps per dedupe key."""

    @abstractmethod
    def get(self, key: str) -> Optional[float]:
        ...

    @abstractmethod
    def set(self, key: str, sent_at: float) -> None:
        ...

    @abstractmethod
    def prune(self, cutoff: float) -> int:
        """Drop keys last sent before cutoff; return how many were dropped."""

    @abstractmethod
    def __len__(self) -> int:
        ...


class InMemoryRateLimitStore(RateLimitStore):
    """Dictionary-backed rate limit store for a single process."""

    def __init__(self) -> None:
        self._sent: Dict[str, float] = {}

    def get(self, key: str) -> Optional[float]:
        return self._sent.get(key)

    def set(self, key: str, sent_at: float) -> None:
        self._sent[key] = sent_at

    def prune(self, cutoff: float) -> int:
        stale = [key for key, sent_at in self._sent.items() if sent_at < cutoff]
        for key in stale:
            del self._sent[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sent)


class NotificationRateLimiter:
    """
    Suppresses repeated alerts sharing a dedupe key within a window.

    Check-and-record is atomic, so two concurrent alerts with the same key
    produce a single delivery.
    """

    def __init__(
        self,
        window_seconds: float,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
        max_entries: int = 1000,
        retention_seconds: float = 86400.0,
    ):
        """
        Initialize rate limiter.

        Args:
            window_seconds: Suppression window; 0 disables rate limiting
            store: Timestamp store (in-memory by default)
            clock: Wall-clock time source
            max_entries: Store size that triggers pruning
            retention_seconds: Age beyond which pruned entries are dropped
        """
        self.window_seconds = window_seconds
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock
        self._max_entries = max_entries
        self._retention_seconds = retention_seconds
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str) -> bool:
        """Return True and record the send if key is outside its window."""
        if self.window_seconds <= 0:
            return True

        async with self._lock:
            now = self._clock()
            last_sent = self.store.get(key)
            if last_sent is not None and now - last_sent < self.window_seconds:
                return False

            self.store.set(key, now)
            if len(self.store) > self._max_entries:
                self.store.prune(now - self._retention_seconds)
            return True


class EscalationPipeline:
    """
    Severity-filtered, rate-limited fan-out of admin alerts.

    Example:
        >>> pipeline = EscalationPipeline([LogChannel()], NotificationRateLimiter(300))
        >>> await pipeline.notify(Severity.HIGH, "checkout", "api_error", {"session": "cs_1"})
    """

    def __init__(
        self,
        channels: Sequence[NotificationChannel],
        rate_limiter: NotificationRateLimiter,
        min_severity: Severity = Severity.HIGH,
    ):
        self.channels: List[NotificationChannel] = list(channels)
        self.rate_limiter = rate_limiter
        self.min_severity = min_severity

    async def notify(
        self,
        severity: Severity,
        operation: str,
        error_type: str,
        payload: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None,
        message: Optional[str] = None,
    ) -> NotificationOutcome:
        """
        Escalate a failure.

        Args:
            severity: Alert severity
            operation: Operation that failed
            error_type: Failure category
            payload: Structured context
            title: Short headline
            message: Human-readable description

        Returns:
            NotificationOutcome: dropped, suppressed or delivered
        """
        event = NotificationEvent(
            severity=severity,
            title=title or f"{operation} failed",
            message=message or f"{error_type} in {operation}",
            operation=operation,
            error_type=error_type,
            payload=payload or {},
        )

        if severity.rank < self.min_severity.rank:
            metrics.record_notification(severity.value, "dropped")
            return NotificationOutcome(status="dropped", dedupe_key=event.dedupe_key)

        if not await self.rate_limiter.try_acquire(event.dedupe_key):
            logger.info(
                "notification_rate_limited",
                dedupe_key=event.dedupe_key,
                title=event.title,
            )
            metrics.record_notification(severity.value, "suppressed")
            return NotificationOutcome(status="suppressed", dedupe_key=event.dedupe_key)

        results = await asyncio.gather(
            *(self._deliver(channel, event) for channel in self.channels)
        )
        deliveries = {channel.name: ok for channel, ok in zip(self.channels, results)}

        metrics.record_notification(severity.value, "delivered")
        logger.info(
            "notification_dispatched",
            dedupe_key=event.dedupe_key,
            severity=severity.value,
            deliveries=deliveries,
        )
        return NotificationOutcome(
            status="delivered", dedupe_key=event.dedupe_key, deliveries=deliveries
        )

    @staticmethod
    async def _deliver(channel: NotificationChannel, event: NotificationEvent) -> bool:
        try:
            ok = bool(await channel.deliver(event))
        except Exception as e:
            logger.error(
                "notification_channel_failed",
                channel=channel.name,
                dedupe_key=event.dedupe_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            ok = False
        metrics.record_notification_delivery(channel.name, ok)
        return ok

    async def notify_payment_failure(
        self,
        message: str,
        payment_intent_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        error_code: Optional[str] = None,
        **extra: Any,
    ) -> NotificationOutcome:
        """Payment processing failed."""
        return await self.notify(
            Severity.HIGH,
            "payment_processing",
            "payment_failure",
            _compact(
                payment_intent_id=payment_intent_id,
                customer_id=customer_id,
                amount=amount,
                currency=currency,
                error_code=error_code,
                **extra,
            ),
            title="Payment Processing Failed",
            message=message,
        )

    async def notify_subscription_failure(
        self,
        message: str,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        **extra: Any,
    ) -> NotificationOutcome:
        """Subscription processing failed."""
        return await self.notify(
            Severity.HIGH,
            "subscription_processing",
            "subscription_failure",
            _compact(subscription_id=subscription_id, customer_id=customer_id, **extra),
            title="Subscription Processing Failed",
            message=message,
        )

    async def notify_webhook_failure(
        self,
        event_id: str,
        event_type: str,
        error_message: str,
        attempt_count: int,
    ) -> NotificationOutcome:
        """A webhook handler raised; severity rises with redeliveries."""
        severity = Severity.CRITICAL if attempt_count >= 3 else Severity.MEDIUM
        return await self.notify(
            severity,
            "webhook_processing",
            "webhook_failure",
            {"event_id": event_id, "event_type": event_type, "attempt_count": attempt_count},
            title="Webhook Processing Failed",
            message=(
                f"Failed to process webhook event {event_type} ({event_id}) "
                f"after {attempt_count} attempts: {error_message}"
            ),
        )

    async def notify_rate_limit_exceeded(
        self, operation: str, reset_at: Optional[float] = None
    ) -> NotificationOutcome:
        """The provider kept rate limiting an operation."""
        suffix = ""
        if reset_at is not None:
            suffix = f" (resets at {datetime.fromtimestamp(reset_at, timezone.utc).isoformat()})"
        return await self.notify(
            Severity.MEDIUM,
            operation,
            "rate_limit_exceeded",
            _compact(reset_at=reset_at),
            title="Stripe API Rate Limit Exceeded",
            message=f"Rate limit exceeded for operation: {operation}{suffix}",
        )

    async def notify_critical_error(
        self, operation: str, error_message: str, **details: Any
    ) -> NotificationOutcome:
        """Unexpected failure needing immediate attention."""
        return await self.notify(
            Severity.CRITICAL,
            operation,
            "critical_system_error",
            _compact(**details),
            title="Critical System Error",
            message=f"Critical error in {operation}: {error_message}",
        )

    async def notify_outbound_failure(self, error: PaymentProviderError) -> NotificationOutcome:
        """Report a terminal outbound-call failure."""
        operation = error.operation or "outbound_call"
        classified = error.classified

        if isinstance(error, RetriesExhaustedError) and error.error_class is ErrorClass.RATE_LIMIT:
            return await self.notify_rate_limit_exceeded(
                operation, classified.reset_at if classified else None
            )

        return await self.notify(
            OUTBOUND_FAILURE_SEVERITY[error.error_class],
            operation,
            error.error_class.value,
            _compact(
                attempts=error.attempts,
                retryable=error.retryable,
                error_code=classified.code if classified else None,
                request_id=classified.request_id if classified else None,
            ),
            title="Payment Provider Call Failed",
            message=str(error),
        )


def _compact(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}
