"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutSessionRequest(BaseModel):
    """Request schema for creating a Checkout Session."""

    account_id: str = Field(..., min_length=1, description="Local account identifier")
    email: Optional[str] = Field(default=None, description="Customer email")
    price_id: str = Field(..., description="Stripe price id (price_...)")
    mode: Literal["payment", "subscription"] = Field(
        default="subscription", description="Checkout mode"
    )
    success_url: str = Field(..., description="Redirect URL after payment")
    cancel_url: str = Field(..., description="Redirect URL on cancel")
    promo_code: Optional[str] = Field(default=None, description="Promo code to apply")
    trial_days: Optional[int] = Field(default=None, ge=1, description="Trial length in days")
    quantity: int = Field(default=1, ge=1, description="Line item quantity")
    metadata: Optional[Dict[str, str]] = Field(default=None, description="Session metadata")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "account_id": "acct_123",
                    "email": "user@example.com",
                    "price_id": "price_1234567890",
                    "mode": "subscription",
                    "success_url": "https://app.example.com/success",
                    "cancel_url": "https://app.example.com/cancel",
                    "promo_code": "WELCOME10",
                }
            ]
        }
    }


class CheckoutSessionResponse(BaseModel):
    """Response schema for Checkout Session creation."""

    session_id: str = Field(..., description="Stripe Checkout Session id")
    url: Optional[str] = Field(default=None, description="Hosted checkout URL")
    customer_id: str = Field(..., description="Stripe customer id")


class ManageSubscriptionRequest(BaseModel):
    """Request schema for subscription management."""

    action: Literal["get", "update", "cancel", "pause", "resume"] = Field(
        ..., description="Operation to perform"
    )
    new_price_id: Optional[str] = Field(default=None, description="Target price for update")
    proration_behavior: Literal["create_prorations", "none", "always_invoice"] = Field(
        default="create_prorations", description="Proration mode for update"
    )
    cancel_at_period_end: bool = Field(
        default=True, description="Cancel at period end instead of immediately"
    )
    pause_behavior: Optional[Literal["mark_uncollectible", "keep_as_draft", "void"]] = Field(
        default=None, description="Collection behavior while paused"
    )
    metadata: Optional[Dict[str, str]] = Field(default=None, description="Subscription metadata")


class PauseCollection(BaseModel):
    behavior: Optional[str] = None
    resumes_at: Optional[int] = None


class SubscriptionResponse(BaseModel):
    """Response schema for subscription state."""

    id: str = Field(..., description="Stripe subscription id")
    status: Optional[str] = Field(default=None, description="Subscription status")
    cancel_at_period_end: bool = Field(..., description="Cancels at period end")
    cancel_at: Optional[int] = Field(default=None, description="Scheduled cancel (epoch)")
    current_period_end: Optional[int] = Field(default=None, description="Period end (epoch)")
    pause_collection: Optional[PauseCollection] = Field(default=None, description="Pause state")


class InvoiceResponse(BaseModel):
    """Invoice summary."""

    id: str
    number: Optional[str] = None
    status: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: Optional[str] = None
    created: Optional[int] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None


class PromoValidationRequest(BaseModel):
    """Request schema for promo code validation."""

    code: str = Field(..., min_length=1, max_length=64, description="Promo code")

    @field_validator("code")
    @classmethod
    def strip_code(cls, v: str) -> str:
        return v.strip()


class PromoValidationResponse(BaseModel):
    """Response schema for promo code validation."""

    valid: bool = Field(..., description="Whether the code can be applied")
    code: str = Field(..., description="Normalized code")
    reason: Optional[str] = Field(default=None, description="Why the code is not valid")
    discount_type: Optional[Literal["percentage", "fixed"]] = None
    discount_value: Optional[float] = None
    currency: Optional[str] = None
    duration: Optional[str] = None


class PortalSessionRequest(BaseModel):
    """Request schema for a billing portal session."""

    customer_id: str = Field(..., description="Stripe customer id (cus_...)")
    return_url: str = Field(..., description="URL to return to from the portal")


class PortalSessionResponse(BaseModel):
    url: Optional[str] = Field(default=None, description="Portal URL")


class PromoAnalyticsEntry(BaseModel):
    """Usage report for one coupon."""

    coupon_id: str
    name: Optional[str] = None
    valid: bool
    times_redeemed: int = 0
    max_redemptions: Optional[int] = None
    invoice_count: int = 0
    total_discount_amount: int = 0


class WebhookResponse(BaseModel):
    """Response schema for webhook acknowledgement."""

    model_config = ConfigDict(populate_by_name=True)

    received: bool = Field(..., description="Delivery was accepted")
    processed: bool = Field(..., description="Event was applied by this delivery")
    event_id: str = Field(..., alias="eventId", description="Stripe event id")
    event_type: str = Field(..., alias="eventType", description="Stripe event type")


class ErrorResponse(BaseModel):
    """Standard error body."""

    error: str = Field(..., description="User-facing error message")
    details: Optional[str] = Field(default=None, description="Error details")
    type: str = Field(..., description="Error class")
    operation: Optional[str] = Field(default=None, description="Failed operation")
    timestamp: str = Field(..., description="Error time (ISO 8601)")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class CircuitBreakerState(BaseModel):
    integration: str
    state: str
    failure_count: int
    failure_threshold: int
    reset_timeout: float
    last_failure_at: Optional[float] = None


class CircuitBreakersResponse(BaseModel):
    breakers: List[CircuitBreakerState]


class LedgerPurgeResponse(BaseModel):
    purged: int = Field(..., description="Evicted ledger entries")
