"""Core resilience and reconciliation logic."""
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .errors import ClassifiedError, ErrorClass, classify_error
from .escalation import EscalationPipeline, NotificationRateLimiter, Severity
from .gateway import InboundEvent, IngestionResult, WebhookIngestionGateway
from .idempotency import IdempotencyLedger, InMemoryIdempotencyLedger, RedisIdempotencyLedger
from .retry import RetryExecutor

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ClassifiedError",
    "ErrorClass",
    "classify_error",
    "EscalationPipeline",
    "NotificationRateLimiter",
    "Severity",
    "InboundEvent",
    "IngestionResult",
    "WebhookIngestionGateway",
    "IdempotencyLedger",
    "InMemoryIdempotencyLedger",
    "RedisIdempotencyLedger",
    "RetryExecutor",
]
