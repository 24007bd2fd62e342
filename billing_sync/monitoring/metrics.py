"""
Prometheus metrics for billing sync monitoring.

Tracks:
- Outbound provider calls, attempts and errors by class
- Circuit breaker state per integration
- Webhook events by outcome
- Idempotency ledger claims and evictions
- Reconciliation handler results
- Escalation notifications and channel deliveries
"""
from prometheus_client import Counter, Gauge, Histogram

# Outbound call metrics
outbound_calls_total = Counter(
    "outbound_calls_total",
    "Total outbound provider operations",
    ["integration", "operation", "status"],  # success, permanent, exhausted, circuit_open, cancelled
)

outbound_call_attempts = Histogram(
    "outbound_call_attempts",
    "Attempts needed per outbound operation",
    ["integration"],
    buckets=(1, 2, 3, 4, 5, 6, 8, 10),
)

outbound_errors_total = Counter(
    "outbound_errors_total",
    "Total failed outbound attempts",
    ["integration", "error_class"],
)

outbound_call_duration_seconds = Histogram(
    "outbound_call_duration_seconds",
    "Outbound operation duration in seconds, retries included",
    ["integration", "operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Circuit breaker metrics
circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["integration"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events by outcome",
    ["event_type", "status"],  # processed, duplicate, unhandled, failed, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
ledger_claims_total = Counter(
    "ledger_claims_total",
    "Idempotency ledger claim attempts",
    ["outcome"],  # claimed, duplicate, released
)

ledger_entries_purged_total = Counter(
    "ledger_entries_purged_total",
    "Ledger entries evicted by the retention policy",
)

# Reconciliation handler metrics
reconciliation_results_total = Counter(
    "reconciliation_results_total",
    "Reconciliation handler results",
    ["event_type", "status"],  # applied, skipped
)

# Escalation metrics
notifications_total = Counter(
    "notifications_total",
    "Escalation notifications by outcome",
    ["severity", "outcome"],  # delivered, suppressed, dropped
)

notification_deliveries_total = Counter(
    "notification_deliveries_total",
    "Notification channel deliveries",
    ["channel", "status"],  # success, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_outbound_call(
        integration: str,
        operation: str,
        status: str,
        attempts: int,
        duration_seconds: float,
    ) -> None:
        """Record a completed outbound operation."""
        outbound_calls_total.labels(
            integration=integration, operation=operation, status=status
        ).inc()
        outbound_call_attempts.labels(integration=integration).observe(attempts)
        outbound_call_duration_seconds.labels(
            integration=integration, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def record_outbound_error(integration: str, error_class: str) -> None:
        """Record a failed outbound attempt."""
        outbound_errors_total.labels(integration=integration, error_class=error_class).inc()

    @staticmethod
    def set_circuit_breaker_state(integration: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        circuit_breaker_state.labels(integration=integration).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_ledger_claim(outcome: str) -> None:
        """Record a ledger claim outcome."""
        ledger_claims_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_ledger_purge(count: int) -> None:
        """Record evicted ledger entries."""
        if count > 0:
            ledger_entries_purged_total.inc(count)

    @staticmethod
    def record_reconciliation_result(event_type: str, status: str) -> None:
        """Record a reconciliation handler result."""
        reconciliation_results_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def record_notification(severity: str, outcome: str) -> None:
        """Record an escalation decision."""
        notifications_total.labels(severity=severity, outcome=outcome).inc()

    @staticmethod
    def record_notification_delivery(channel: str, success: bool) -> None:
        """Record a channel delivery."""
        notification_deliveries_total.labels(
            channel=channel, status="success" if success else "failed"
        ).inc()


# Export singleton instance
metrics = MetricsCollector()
