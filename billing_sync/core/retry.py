"""
Retry executor for outbound provider calls.

Runs an async operation through the integration's circuit breaker with a
per-attempt timeout, classifies each failure, and retries retryable classes
with exponential backoff. Only terminal failures leave this module.
"""
import asyncio
import random
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from billing_sync.core.backoff import (
    DEFAULT_RETRY_PROFILE,
    RATE_LIMIT_RETRY_PROFILE,
    RetryProfile,
    calculate_delay,
)
from billing_sync.core.circuit_breaker import CircuitBreaker
from billing_sync.core.errors import (
    CircuitOpenError,
    ClassifiedError,
    ErrorClass,
    PaymentProviderError,
    PermanentProviderError,
    RetriesExhaustedError,
    RetryCancelledError,
    classify_error,
)
from billing_sync.monitoring.metrics import metrics

if TYPE_CHECKING:
    from billing_sync.core.escalation import EscalationPipeline

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AttemptFailed(Exception):
    """A single failed attempt, already classified."""

    def __init__(self, classified: ClassifiedError, attempt: int):
        super().__init__(classified.message)
        self.classified = classified
        self.attempt = attempt


class _Cancelled(Exception):
    """Raised inside the loop when the cancel event is observed."""

    pass


class _CallState:
    """Mutable bookkeeping for a single execute() call."""

    def __init__(self) -> None:
        self.attempts = 0
        self.last_failure: Optional[ClassifiedError] = None


def _is_retryable_attempt(error: BaseException) -> bool:
    return isinstance(error, AttemptFailed) and error.classified.retryable


class RetryExecutor:
    """
    Executes outbound operations with bounded, classified retries.

    One executor guards one integration and owns that integration's circuit
    breaker. Apart from the breaker, every call keeps its state on its own
    stack, so independent callers may share an executor concurrently.

    Example:
        >>> executor = RetryExecutor(CircuitBreaker("stripe"))
        >>> session = await executor.execute(create_session, "create_checkout_session")
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        default_profile: RetryProfile = DEFAULT_RETRY_PROFILE,
        rate_limit_profile: RetryProfile = RATE_LIMIT_RETRY_PROFILE,
        attempt_timeout: Optional[float] = 20.0,
        max_concurrency: int = 0,
        escalation: Optional["EscalationPipeline"] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize retry executor.

        Args:
            circuit_breaker: Breaker for the integration this executor guards
            default_profile: Profile used unless a call passes its own
            rate_limit_profile: Profile whose delays apply to rate_limit failures
            attempt_timeout: Timeout for each individual attempt (seconds)
            max_concurrency: Cap on in-flight attempts (0 = unbounded)
            escalation: Pipeline notified of terminal failures
            sleep: Awaitable sleep used between attempts
            rng: Random source for backoff jitter
        """
        self.circuit_breaker = circuit_breaker
        self.default_profile = default_profile
        self.rate_limit_profile = rate_limit_profile
        self.attempt_timeout = attempt_timeout
        self.escalation = escalation
        self._sleep = sleep
        self._rng = rng
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency > 0 else None

    @property
    def integration(self) -> str:
        return self.circuit_breaker.name

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        profile: Optional[RetryProfile] = None,
        cancel_event: Optional[asyncio.Event] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> T:
        """
        Run an operation with retries.

        Args:
            operation: Zero-argument coroutine function performing one attempt
            operation_name: Name used in logs, metrics and escalations
            profile: Retry profile (defaults to the executor's default profile)
            cancel_event: When set, the loop stops before the next attempt
            context: Extra fields attached to every log line

        Returns:
            The operation's result

        Raises:
            PermanentProviderError: Failure class is not retryable
            RetriesExhaustedError: Retryable failures used up the budget
            CircuitOpenError: The breaker rejected the call
            RetryCancelledError: Cancelled between attempts
        """
        profile = profile or self.default_profile
        log = logger.bind(
            integration=self.integration, operation=operation_name, **(context or {})
        )
        state = _CallState()
        started = time.monotonic()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(profile.max_attempts + 1),
            wait=self._wait_strategy(profile),
            retry=retry_if_exception(_is_retryable_attempt),
            sleep=self._cancellable_sleep(cancel_event),
            before_sleep=self._before_sleep(log, profile, state),
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if cancel_event is not None and cancel_event.is_set():
                        raise _Cancelled()
                    state.attempts = attempt.retry_state.attempt_number
                    result = await self._run_attempt(operation, state.attempts, profile, log)
                    log.debug("outbound_call_succeeded", attempt=state.attempts)
                    self._record(operation_name, "success", state.attempts, started)
                    return result
        except RetryError as e:
            last = e.last_attempt.exception()
            classified = (
                last.classified if isinstance(last, AttemptFailed) else classify_error(last)
            )
            error = RetriesExhaustedError(
                f"{operation_name} failed after {state.attempts} attempts: {classified.message}",
                classified.error_class,
                operation=operation_name,
                attempts=state.attempts,
                classified=classified,
            )
            self._record(operation_name, "exhausted", state.attempts, started)
            await self._escalate(error)
            raise error from classified.original
        except AttemptFailed as e:
            error = PermanentProviderError(
                f"{operation_name} failed: {e.classified.message}",
                e.classified.error_class,
                operation=operation_name,
                attempts=state.attempts,
                classified=e.classified,
            )
            self._record(operation_name, "permanent", state.attempts, started)
            await self._escalate(error)
            raise error from e.classified.original
        except CircuitOpenError as e:
            e.operation = operation_name
            e.attempts = state.attempts
            log.warning("outbound_call_rejected_circuit_open", attempt=state.attempts)
            self._record(operation_name, "circuit_open", state.attempts, started)
            raise
        except _Cancelled:
            last = state.last_failure
            log.info("outbound_call_cancelled", attempts=state.attempts)
            self._record(operation_name, "cancelled", state.attempts, started)
            raise RetryCancelledError(
                f"{operation_name} cancelled after {state.attempts} attempts",
                last.error_class if last else ErrorClass.UNKNOWN,
                operation=operation_name,
                attempts=state.attempts,
                classified=last,
            ) from None

        raise AssertionError("retry loop exited without a result")  # pragma: no cover

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        attempt: int,
        profile: RetryProfile,
        log: Any,
    ) -> T:
        try:
            if self._semaphore is not None:
                async with self._semaphore:
                    return await self.circuit_breaker.call(self._with_timeout, operation)
            return await self.circuit_breaker.call(self._with_timeout, operation)
        except CircuitOpenError:
            raise
        except Exception as e:
            classified = classify_error(e)
            metrics.record_outbound_error(self.integration, classified.error_class.value)

            final = attempt > profile.max_attempts or not classified.retryable
            (log.error if final else log.warning)(
                "outbound_attempt_failed",
                attempt=attempt,
                max_attempts=profile.max_attempts + 1,
                error_class=classified.error_class.value,
                retryable=classified.retryable,
                error_code=classified.code,
                error_message=classified.message,
                request_id=classified.request_id,
            )
            raise AttemptFailed(classified, attempt) from e

    async def _with_timeout(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.attempt_timeout is None:
            return await operation()
        return await asyncio.wait_for(operation(), timeout=self.attempt_timeout)

    def _wait_strategy(self, profile: RetryProfile) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            if not isinstance(error, AttemptFailed):
                return calculate_delay(retry_state.attempt_number, profile, rng=self._rng)

            classified = error.classified
            active = (
                self.rate_limit_profile
                if classified.error_class is ErrorClass.RATE_LIMIT
                else profile
            )
            return calculate_delay(
                retry_state.attempt_number,
                active,
                reset_at=classified.reset_at,
                rng=self._rng,
            )

        return wait

    def _cancellable_sleep(
        self, cancel_event: Optional[asyncio.Event]
    ) -> Callable[[float], Awaitable[None]]:
        async def sleep(seconds: float) -> None:
            if cancel_event is None:
                await self._sleep(seconds)
                return
            if cancel_event.is_set():
                raise _Cancelled()
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                return
            raise _Cancelled()

        return sleep

    @staticmethod
    def _before_sleep(
        log: Any, profile: RetryProfile, state: _CallState
    ) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(error, AttemptFailed):
                state.last_failure = error.classified
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            log.info(
                "outbound_call_retry_scheduled",
                next_attempt=retry_state.attempt_number + 1,
                max_attempts=profile.max_attempts + 1,
                delay_seconds=round(delay, 3),
            )

        return before_sleep

    def _record(self, operation_name: str, status: str, attempts: int, started: float) -> None:
        metrics.record_outbound_call(
            self.integration,
            operation_name,
            status,
            attempts,
            time.monotonic() - started,
        )

    async def _escalate(self, error: PaymentProviderError) -> None:
        if self.escalation is None:
            return
        await self.escalation.notify_outbound_failure(error)
