"""
Error taxonomy for outbound payment-provider calls.

Every fault raised by an outbound attempt is converted once, at the boundary,
into a ClassifiedError carrying a closed ErrorClass. Retryability and HTTP
status are fixed per class; nothing downstream looks at Stripe error fields.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx
import stripe


class ErrorClass(str, Enum):
    """Closed classification of outbound-call failures."""

    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    INVALID_REQUEST = "invalid_request"
    API_ERROR = "api_error"
    CARD_ERROR = "card_error"
    IDEMPOTENCY_ERROR = "idempotency_error"
    UNKNOWN = "unknown"


RETRYABLE_CLASSES = frozenset(
    {ErrorClass.RATE_LIMIT, ErrorClass.NETWORK, ErrorClass.API_ERROR}
)

HTTP_STATUS_BY_CLASS: Dict[ErrorClass, int] = {
    ErrorClass.RATE_LIMIT: 429,
    ErrorClass.NETWORK: 503,
    ErrorClass.AUTHENTICATION: 401,
    ErrorClass.INVALID_REQUEST: 400,
    ErrorClass.API_ERROR: 502,
    ErrorClass.CARD_ERROR: 402,
    ErrorClass.IDEMPOTENCY_ERROR: 409,
    ErrorClass.UNKNOWN: 500,
}

USER_MESSAGE_BY_CLASS: Dict[ErrorClass, str] = {
    ErrorClass.RATE_LIMIT: "Rate limit exceeded",
    ErrorClass.NETWORK: "Service temporarily unavailable",
    ErrorClass.AUTHENTICATION: "Authentication failed",
    ErrorClass.INVALID_REQUEST: "Invalid request",
    ErrorClass.API_ERROR: "Payment service error",
    ErrorClass.CARD_ERROR: "Payment failed",
    ErrorClass.IDEMPOTENCY_ERROR: "Conflicting duplicate request",
    ErrorClass.UNKNOWN: "Internal server error",
}

# Order matters: CardError and IdempotencyError are StripeError subclasses too.
_STRIPE_ERROR_CLASSES = (
    (stripe.RateLimitError, ErrorClass.RATE_LIMIT),
    (stripe.AuthenticationError, ErrorClass.AUTHENTICATION),
    (stripe.PermissionError, ErrorClass.AUTHENTICATION),
    (stripe.CardError, ErrorClass.CARD_ERROR),
    (stripe.IdempotencyError, ErrorClass.IDEMPOTENCY_ERROR),
    (stripe.InvalidRequestError, ErrorClass.INVALID_REQUEST),
    (stripe.APIConnectionError, ErrorClass.NETWORK),
    (stripe.APIError, ErrorClass.API_ERROR),
)

_TRANSPORT_ERRORS = (
    asyncio.TimeoutError,
    TimeoutError,
    httpx.TransportError,
    ConnectionError,
    OSError,
)


def is_retryable(error_class: ErrorClass) -> bool:
    """Return the fixed retryability of an error class."""
    return error_class in RETRYABLE_CLASSES


def http_status_for(error_class: ErrorClass) -> int:
    """Return the fixed HTTP status of an error class."""
    return HTTP_STATUS_BY_CLASS[error_class]


@dataclass(frozen=True)
class ClassifiedError:
    """A provider or transport fault reduced to the fields the system uses."""

    error_class: ErrorClass
    message: str
    code: Optional[str] = None
    param: Optional[str] = None
    request_id: Optional[str] = None
    reset_at: Optional[float] = None
    original: Optional[BaseException] = None

    @property
    def retryable(self) -> bool:
        return is_retryable(self.error_class)

    @property
    def http_status(self) -> int:
        return http_status_for(self.error_class)

    @property
    def retry_after_seconds(self) -> Optional[int]:
        """Seconds until the provider's rate-limit window resets, if known."""
        if self.reset_at is None:
            return None
        return max(0, int(round(self.reset_at - time.time())))


def classify_error(error: BaseException, now: Optional[float] = None) -> ClassifiedError:
    """
    Map a raised fault to exactly one ErrorClass.

    Rules, in priority order:
    1. Stripe structured errors map by their declared category.
    2. Transport failures without a structured body map to network.
    3. Anything else is unknown.

    Args:
        error: Exception raised by an outbound attempt
        now: Wall-clock time used to resolve relative rate-limit hints

    Returns:
        ClassifiedError: Classified fault
    """
    if isinstance(error, stripe.StripeError):
        error_class = ErrorClass.UNKNOWN
        for stripe_type, mapped in _STRIPE_ERROR_CLASSES:
            if isinstance(error, stripe_type):
                error_class = mapped
                break

        headers = error.headers or {}
        reset_at = None
        if error_class is ErrorClass.RATE_LIMIT:
            reset_at = _rate_limit_reset_at(headers, now if now is not None else time.time())

        return ClassifiedError(
            error_class=error_class,
            message=error.user_message or str(error) or type(error).__name__,
            code=error.code,
            param=getattr(error, "param", None),
            request_id=error.request_id,
            reset_at=reset_at,
            original=error,
        )

    if isinstance(error, _TRANSPORT_ERRORS):
        message = str(error) or type(error).__name__
        return ClassifiedError(error_class=ErrorClass.NETWORK, message=message, original=error)

    return ClassifiedError(
        error_class=ErrorClass.UNKNOWN,
        message=str(error) or type(error).__name__,
        original=error,
    )


def _rate_limit_reset_at(headers: Mapping[str, Any], now: float) -> Optional[float]:
    """
    Extract an absolute reset time from rate-limit response headers.

    `Retry-After` carries relative seconds; `x-ratelimit-reset-after` carries
    an absolute epoch timestamp.
    """
    lowered = {str(k).lower(): v for k, v in headers.items()}

    retry_after = lowered.get("retry-after")
    if retry_after is not None:
        try:
            return now + float(retry_after)
        except (TypeError, ValueError):
            pass

    reset_after = lowered.get("x-ratelimit-reset-after")
    if reset_after is not None:
        try:
            return float(reset_after)
        except (TypeError, ValueError):
            pass

    return None


class BillingSyncError(Exception):
    """Base exception for billing sync."""

    pass


class BillingValidationError(BillingSyncError):
    """Raised when an outbound request fails local validation."""

    pass


class PaymentProviderError(BillingSyncError):
    """
    Terminal failure of an outbound provider call.

    Carries the ErrorClass of the last failed attempt so callers can map it to
    a user-facing status.
    """

    def __init__(
        self,
        message: str,
        error_class: ErrorClass,
        operation: Optional[str] = None,
        attempts: int = 0,
        classified: Optional[ClassifiedError] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            error_class: Classification of the last failure
            operation: Name of the outbound operation
            attempts: Number of attempts made
            classified: Classified form of the last failure
        """
        super().__init__(message)
        self.error_class = error_class
        self.operation = operation
        self.attempts = attempts
        self.classified = classified

    @property
    def retryable(self) -> bool:
        return is_retryable(self.error_class)

    @property
    def http_status(self) -> int:
        return http_status_for(self.error_class)

    @property
    def original_error(self) -> Optional[BaseException]:
        return self.classified.original if self.classified else None

    @property
    def retry_after_seconds(self) -> Optional[int]:
        if self.classified is None:
            return None
        return self.classified.retry_after_seconds


class PermanentProviderError(PaymentProviderError):
    """The failure's class is not retryable; no further attempts were made."""

    pass


class RetriesExhaustedError(PaymentProviderError):
    """The failure was retryable but every allowed attempt failed."""

    pass


class CircuitOpenError(PaymentProviderError):
    """The integration's circuit is open; the call was rejected without a network attempt."""

    def __init__(self, integration: str, operation: Optional[str] = None):
        super().__init__(
            f"Circuit breaker for '{integration}' is open - service temporarily unavailable",
            ErrorClass.UNKNOWN,
            operation=operation,
        )
        self.integration = integration

    @property
    def http_status(self) -> int:
        return 503


class RetryCancelledError(PaymentProviderError):
    """The caller cancelled the retry loop before the next attempt."""

    pass


class WebhookError(BillingSyncError):
    """Raised when an inbound webhook is rejected."""

    http_status = 400


class MissingSignatureError(WebhookError):
    """The signature header was absent."""

    pass


class InvalidSignatureError(WebhookError):
    """The signature did not verify against the configured secret."""

    pass


class InvalidPayloadError(WebhookError):
    """The verified body is not a well-formed event."""

    pass
