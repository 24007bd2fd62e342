"""
Per-integration circuit breaker for outbound provider calls.

Prevents cascading failures by rejecting calls to an integration that has
failed repeatedly, then admitting a single probe once the reset timeout has
passed.
"""
import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from billing_sync.core.errors import CircuitOpenError
from billing_sync.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker guarding one logical integration.

    States:
    - CLOSED: calls pass through; consecutive failures are counted
    - OPEN: calls are rejected with CircuitOpenError, nothing is invoked
    - HALF_OPEN: exactly one probe call is admitted to test recovery

    State is only mutated under an asyncio.Lock, and never while the wrapped
    call is running.

    Example:
        >>> breaker = CircuitBreaker("stripe")
        >>> customer = await breaker.call(fetch_customer, "cus_123")
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Integration name, used in logs and metrics
            failure_threshold: Consecutive failures before opening the circuit
            reset_timeout: Seconds after the last failure before a probe is allowed
            clock: Monotonic time source
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        self.failure_count = 0
        self.last_failure_at: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._probe_in_flight = False

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Execute an async callable with circuit breaker protection.

        Args:
            func: Coroutine function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            The callable's result

        Raises:
            CircuitOpenError: If the circuit rejects the call
        """
        is_probe = await self._admit()

        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._on_failure()
            raise
        except BaseException:
            # Cancelled mid-call: the outcome is unknown, so free the probe slot
            # without counting it either way.
            if is_probe:
                async with self._lock:
                    self._probe_in_flight = False
            raise

        await self._on_success()
        return result

    async def _admit(self) -> bool:
        async with self._lock:
            if self.state is CircuitState.CLOSED:
                return False

            if self.state is CircuitState.OPEN:
                if (
                    self.last_failure_at is not None
                    and self._clock() - self.last_failure_at > self.reset_timeout
                ):
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitOpenError(self.name)

            if self._probe_in_flight:
                raise CircuitOpenError(self.name)
            self._probe_in_flight = True
            return True

    async def _on_success(self) -> None:
        async with self._lock:
            self.failure_count = 0
            self._probe_in_flight = False
            if self.state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    async def _on_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_at = self._clock()
            self._probe_in_flight = False

            if self.state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif (
                self.state is CircuitState.CLOSED
                and self.failure_count >= self.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        previous = self.state
        self.state = new_state
        metrics.set_circuit_breaker_state(self.name, new_state.value)

        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "circuit_breaker_state_changed",
            integration=self.name,
            previous_state=previous.value,
            state=new_state.value,
            failure_count=self.failure_count,
        )

    def snapshot(self) -> Dict[str, Any]:
        """Return a point-in-time view of the breaker."""
        return {
            "integration": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "last_failure_at": self.last_failure_at,
        }


class CircuitBreakerRegistry:
    """Holds one breaker per integration name."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for an integration."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}
