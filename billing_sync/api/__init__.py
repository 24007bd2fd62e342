"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    ManageSubscriptionRequest,
    SubscriptionResponse,
    WebhookResponse,
)

__all__ = [
    "create_app",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "ManageSubscriptionRequest",
    "SubscriptionResponse",
    "WebhookResponse",
]
