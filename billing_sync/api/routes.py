"""
API routes for billing sync.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from billing_sync.core.billing import BillingService
from billing_sync.core.gateway import WebhookIngestionGateway
from billing_sync.monitoring.health import HealthCheck

from .container import (
    ServiceContainer,
    get_billing_service,
    get_container,
    get_gateway,
    get_health_check,
)
from .schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CircuitBreakersResponse,
    ErrorResponse,
    HealthCheckResponse,
    InvoiceResponse,
    LedgerPurgeResponse,
    ManageSubscriptionRequest,
    PortalSessionRequest,
    PortalSessionResponse,
    PromoAnalyticsEntry,
    PromoValidationRequest,
    PromoValidationResponse,
    SubscriptionResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
billing_router = APIRouter(prefix="/billing", tags=["billing"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    402: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


@billing_router.post(
    "/checkout-sessions",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Create a checkout session",
)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    billing: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    """Create a Stripe Checkout Session for an account."""
    logger.info(
        "api_create_checkout_session_request",
        account_id=request.account_id,
        mode=request.mode,
        price_id=request.price_id,
    )
    return await billing.create_checkout_session(
        account_id=request.account_id,
        email=request.email,
        price_id=request.price_id,
        mode=request.mode,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        promo_code=request.promo_code,
        trial_days=request.trial_days,
        quantity=request.quantity,
        metadata=request.metadata,
    )


@billing_router.post(
    "/subscriptions/{subscription_id}",
    response_model=SubscriptionResponse,
    responses=ERROR_RESPONSES,
    summary="Manage a subscription",
)
async def manage_subscription(
    subscription_id: str,
    request: ManageSubscriptionRequest,
    billing: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    """Get, update, cancel, pause or resume a subscription."""
    logger.info(
        "api_manage_subscription_request",
        subscription_id=subscription_id,
        action=request.action,
    )
    return await billing.manage_subscription(
        subscription_id,
        request.action,
        new_price_id=request.new_price_id,
        proration_behavior=request.proration_behavior,
        cancel_at_period_end=request.cancel_at_period_end,
        pause_behavior=request.pause_behavior,
        metadata=request.metadata,
    )


@billing_router.get(
    "/customers/{customer_id}/invoices",
    response_model=List[InvoiceResponse],
    responses=ERROR_RESPONSES,
    summary="List invoices",
)
async def list_invoices(
    customer_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    billing: BillingService = Depends(get_billing_service),
) -> List[Dict[str, Any]]:
    """List a customer's recent invoices."""
    return await billing.list_invoices(customer_id, limit=limit)


@billing_router.post(
    "/promo-codes/validate",
    response_model=PromoValidationResponse,
    responses=ERROR_RESPONSES,
    summary="Validate a promo code",
)
async def validate_promo_code(
    request: PromoValidationRequest,
    billing: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    """Check whether a promo code can be applied."""
    return await billing.validate_promo_code(request.code)


@billing_router.post(
    "/portal-sessions",
    response_model=PortalSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Create a billing portal session",
)
async def create_portal_session(
    request: PortalSessionRequest,
    billing: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    """Create a customer billing portal session."""
    return await billing.create_portal_session(request.customer_id, request.return_url)


@billing_router.get(
    "/analytics/promo-codes",
    response_model=List[PromoAnalyticsEntry],
    responses=ERROR_RESPONSES,
    summary="Promo code analytics",
)
async def promo_analytics(
    limit: int = Query(default=100, ge=1, le=100),
    billing: BillingService = Depends(get_billing_service),
) -> List[Dict[str, Any]]:
    """Per-coupon usage and discount totals."""
    return await billing.promo_analytics(limit=limit)


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Stripe webhook endpoint",
    description="Verify, deduplicate and apply Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    gateway: WebhookIngestionGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Any verified event is acknowledged with 200, even when its handler fails.
    """
    body = await request.body()
    result = await gateway.ingest(body, stripe_signature)

    logger.info(
        "api_webhook_acknowledged",
        event_id=result.event_id,
        event_type=result.event_type,
        status=result.status,
    )
    return result.to_response()


@admin_router.get(
    "/circuit-breakers",
    response_model=CircuitBreakersResponse,
    summary="Circuit breaker states",
)
async def circuit_breakers(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Report the state of every outbound circuit breaker."""
    return {"breakers": list(container.breakers.snapshot().values())}


@admin_router.post(
    "/ledger/purge",
    response_model=LedgerPurgeResponse,
    summary="Purge expired ledger entries",
)
async def purge_ledger(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Evict idempotency ledger entries older than the retention window."""
    purged = await container.ledger.purge_expired()
    logger.info("api_ledger_purged", purged=purged)
    return {"purged": purged}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
        if result["status"] == "unhealthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
