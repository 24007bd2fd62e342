"""
Main FastAPI application.

Billing sync API with:
- Stripe webhook ingestion
- Retry-wrapped outbound billing operations
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_sync import __version__
from billing_sync.config import Settings, get_settings
from billing_sync.core.errors import (
    USER_MESSAGE_BY_CLASS,
    BillingValidationError,
    CircuitOpenError,
    ErrorClass,
    PaymentProviderError,
    WebhookError,
)
from billing_sync.database.connection import init_db
from billing_sync.monitoring.logging import setup_logging
from billing_sync.workers.ledger_pruner import LedgerPruner

from .container import ServiceContainer, build_container
from .routes import admin_router, billing_router, monitoring_router, webhook_router

logger = structlog.get_logger(__name__)


def error_body(
    error: str,
    error_type: str,
    details: Optional[str] = None,
    operation: Optional[str] = None,
) -> Dict[str, Any]:
    """Standard error response body."""
    return {
        "error": error,
        "details": details,
        "type": error_type,
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates tables, runs the ledger pruner, and closes services on shutdown.
    """
    container: ServiceContainer = app.state.container
    settings = container.settings

    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db(container.engine)
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    stop_event = asyncio.Event()
    pruner = LedgerPruner(container.ledger, settings.ledger_prune_interval_seconds)
    pruner_task = asyncio.create_task(pruner.run(stop_event))

    yield

    logger.info("application_shutdown")
    stop_event.set()
    await pruner_task
    try:
        await container.close()
    except Exception as e:
        logger.error("service_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    logger.warning("webhook_rejected", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(
        status_code=exc.http_status,
        content=error_body("Webhook rejected", type(exc).__name__, details=str(exc)),
    )


async def validation_error_handler(request: Request, exc: BillingValidationError) -> JSONResponse:
    logger.warning("billing_validation_error", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(
            USER_MESSAGE_BY_CLASS[ErrorClass.INVALID_REQUEST],
            ErrorClass.INVALID_REQUEST.value,
            details=str(exc),
        ),
    )


async def provider_error_handler(request: Request, exc: PaymentProviderError) -> JSONResponse:
    """Map a terminal provider failure to its class's status code."""
    error_type = "circuit_open" if isinstance(exc, CircuitOpenError) else exc.error_class.value
    message = (
        USER_MESSAGE_BY_CLASS[ErrorClass.NETWORK]
        if isinstance(exc, CircuitOpenError)
        else USER_MESSAGE_BY_CLASS[exc.error_class]
    )

    logger.error(
        "payment_provider_error",
        error_type=error_type,
        operation=exc.operation,
        attempts=exc.attempts,
        path=request.url.path,
    )

    headers: Dict[str, str] = {}
    if exc.error_class is ErrorClass.RATE_LIMIT:
        headers["Retry-After"] = str(exc.retry_after_seconds or 60)

    return JSONResponse(
        status_code=exc.http_status,
        content=error_body(message, error_type, details=str(exc), operation=exc.operation),
        headers=headers,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            USER_MESSAGE_BY_CLASS[ErrorClass.UNKNOWN],
            ErrorClass.UNKNOWN.value,
            details="An unexpected error occurred. Please try again later.",
        ),
    )


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment by default)
        container: Prebuilt services (built from settings by default)
    """
    settings = settings or get_settings()
    setup_logging(settings)
    container = container or build_container(settings)

    app = FastAPI(
        title="Billing Sync",
        description=(
            "Resilient Stripe webhook ingestion and outbound billing operations. "
            "Features: signature verification, idempotent event processing, "
            "classified retries, circuit breaking, and admin escalation."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(WebhookError, webhook_error_handler)
    app.add_exception_handler(BillingValidationError, validation_error_handler)
    app.add_exception_handler(PaymentProviderError, provider_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(billing_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "billing_sync.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
