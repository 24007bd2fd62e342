"""External integrations."""
from .notification_channels import (
    DatabaseChannel,
    EmailChannel,
    LogChannel,
    WebhookChannel,
    build_channels,
)
from .stripe_client import StripeClient

__all__ = [
    "StripeClient",
    "DatabaseChannel",
    "EmailChannel",
    "LogChannel",
    "WebhookChannel",
    "build_channels",
]
