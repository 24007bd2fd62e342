"""
Service wiring for the API process.

Builds every long-lived component once per application and exposes them to
routes through FastAPI dependencies.
"""
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import stripe
import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_sync.config import Settings
from billing_sync.core.backoff import profiles_from_settings
from billing_sync.core.billing import BillingService
from billing_sync.core.circuit_breaker import CircuitBreakerRegistry
from billing_sync.core.escalation import EscalationPipeline, NotificationRateLimiter, Severity
from billing_sync.core.gateway import WebhookIngestionGateway
from billing_sync.core.handlers import ReconciliationHandlers
from billing_sync.core.idempotency import (
    IdempotencyLedger,
    InMemoryIdempotencyLedger,
    RedisIdempotencyLedger,
)
from billing_sync.core.retry import RetryExecutor
from billing_sync.database.connection import create_engine, create_session_factory
from billing_sync.database.repository import RecordStore, SqlAlchemyRecordStore
from billing_sync.integrations.notification_channels import build_channels
from billing_sync.integrations.stripe_client import StripeClient
from billing_sync.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)

STRIPE_INTEGRATION = "stripe"


@dataclass
class ServiceContainer:
    """Long-lived services shared by every request."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: RecordStore
    http_client: httpx.AsyncClient
    breakers: CircuitBreakerRegistry
    escalation: EscalationPipeline
    ledger: IdempotencyLedger
    gateway: WebhookIngestionGateway
    handlers: ReconciliationHandlers
    stripe_client: StripeClient
    billing: BillingService
    health: HealthCheck

    async def close(self) -> None:
        await self.ledger.close()
        await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("service_container_closed")


def build_container(
    settings: Settings,
    ledger: Optional[IdempotencyLedger] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    stripe_sdk: Any = stripe,
) -> ServiceContainer:
    """
    Build the application's services from settings.

    Args:
        settings: Application settings
        ledger: Ledger override (Redis when redis_url is set, else in-memory)
        http_client: HTTP client for notification channels
        stripe_sdk: The stripe module (replaceable in tests)
    """
    engine = create_engine(settings.database_url, settings)
    session_factory = create_session_factory(engine)
    store = SqlAlchemyRecordStore(session_factory)
    http_client = http_client or httpx.AsyncClient(timeout=10.0)

    escalation = EscalationPipeline(
        build_channels(settings, store=store, http_client=http_client),
        NotificationRateLimiter(settings.escalation_rate_limit_minutes * 60),
        min_severity=Severity(settings.escalation_min_severity),
    )

    if ledger is None:
        if settings.redis_url:
            ledger = RedisIdempotencyLedger.from_url(
                settings.redis_url, retention_seconds=settings.ledger_retention_seconds
            )
        else:
            ledger = InMemoryIdempotencyLedger(retention_seconds=settings.ledger_retention_seconds)

    gateway = WebhookIngestionGateway(
        settings.stripe_webhook_secret,
        ledger,
        escalation=escalation,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )
    handlers = ReconciliationHandlers(store, escalation)
    handlers.register(gateway)

    breakers = CircuitBreakerRegistry(
        failure_threshold=settings.circuit_failure_threshold,
        reset_timeout=settings.circuit_reset_timeout,
    )
    default_profile, rate_limit_profile = profiles_from_settings(settings)
    executor = RetryExecutor(
        breakers.get(STRIPE_INTEGRATION),
        default_profile=default_profile,
        rate_limit_profile=rate_limit_profile,
        attempt_timeout=settings.outbound_call_timeout_seconds,
        max_concurrency=settings.outbound_max_concurrency,
        escalation=escalation,
    )
    stripe_client = StripeClient(executor, settings, sdk=stripe_sdk)
    billing = BillingService(stripe_client, store, analytics_profile=rate_limit_profile)

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        http_client=http_client,
        breakers=breakers,
        escalation=escalation,
        ledger=ledger,
        gateway=gateway,
        handlers=handlers,
        stripe_client=stripe_client,
        billing=billing,
        health=HealthCheck(session_factory, ledger, breakers),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_billing_service(request: Request) -> BillingService:
    return get_container(request).billing


def get_gateway(request: Request) -> WebhookIngestionGateway:
    return get_container(request).gateway


def get_health_check(request: Request) -> HealthCheck:
    return get_container(request).health
