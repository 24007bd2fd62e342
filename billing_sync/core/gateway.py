"""
Stripe webhook ingestion with signature verification and event deduplication.

Implements:
- Webhook signature verification (HMAC-SHA256 with timestamp tolerance)
- Event deduplication through the idempotency ledger
- Routing to registered reconciliation handlers
- Release-and-escalate on handler failure

A verified, well-formed event is always acknowledged. Handler failures are
retried through the provider's redelivery, not by returning an error.
"""
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import stripe
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from billing_sync.core.errors import (
    InvalidPayloadError,
    InvalidSignatureError,
    MissingSignatureError,
)
from billing_sync.core.idempotency import IdempotencyLedger
from billing_sync.monitoring.metrics import metrics

if TYPE_CHECKING:
    from billing_sync.core.escalation import EscalationPipeline

logger = structlog.get_logger(__name__)

DEFAULT_SIGNATURE_TOLERANCE = 300


class InboundEvent(BaseModel):
    """A verified provider event. Identity is `id`."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Provider event id (evt_...)")
    type: str = Field(..., min_length=1, description="Event type")
    payload: Dict[str, Any] = Field(..., description="The event's data.object")
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    livemode: bool = False
    api_version: Optional[str] = None
    created: Optional[int] = None

    @classmethod
    def from_provider_body(
        cls, body: Dict[str, Any], received_at: Optional[datetime] = None
    ) -> "InboundEvent":
        """Build an event from a decoded Stripe event body."""
        data = body.get("data")
        payload = data.get("object") if isinstance(data, dict) else None
        values: Dict[str, Any] = {
            "id": body.get("id"),
            "type": body.get("type"),
            "payload": payload,
            "livemode": bool(body.get("livemode", False)),
            "api_version": body.get("api_version"),
            "created": body.get("created"),
        }
        if received_at is not None:
            values["received_at"] = received_at
        return cls(**values)


class IngestionStage(str, Enum):
    """Stages an inbound webhook moves through."""

    RECEIVED = "received"
    SIGNATURE_VERIFIED = "signature_verified"
    DEDUPED = "deduped"
    DISPATCHED = "dispatched"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"


@dataclass(frozen=True)
class IngestionResult:
    """Outcome of ingesting one webhook delivery."""

    event_id: str
    event_type: str
    processed: bool
    status: str  # processed, skipped, duplicate, unhandled, failed
    stage: IngestionStage = IngestionStage.ACKNOWLEDGED
    attempt_count: int = 1
    handler_result: Any = None
    error: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.status == "duplicate"

    def to_response(self) -> Dict[str, Any]:
        """Body returned to the provider."""
        return {
            "received": True,
            "processed": self.processed,
            "eventId": self.event_id,
            "eventType": self.event_type,
        }


EventHandler = Callable[[InboundEvent], Awaitable[Any]]


class WebhookIngestionGateway:
    """
    Verifies, deduplicates and dispatches inbound Stripe webhooks.

    Example:
        >>> gateway = WebhookIngestionGateway(secret, InMemoryIdempotencyLedger())
        >>> gateway.register_handler("invoice.payment_failed", handle_invoice_failed)
        >>> result = await gateway.ingest(body, request.headers.get("Stripe-Signature"))
    """

    def __init__(
        self,
        webhook_secret: str,
        ledger: IdempotencyLedger,
        escalation: Optional["EscalationPipeline"] = None,
        tolerance_seconds: int = DEFAULT_SIGNATURE_TOLERANCE,
    ):
        """
        Initialize ingestion gateway.

        Args:
            webhook_secret: Signing secret for the webhook endpoint (whsec_...)
            ledger: Idempotency ledger used to claim event ids
            escalation: Pipeline notified when a handler fails
            tolerance_seconds: Maximum age of a signed timestamp
        """
        self.webhook_secret = webhook_secret
        self.ledger = ledger
        self.escalation = escalation
        self.tolerance_seconds = tolerance_seconds
        self.event_handlers: Dict[str, EventHandler] = {}

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'payment_intent.succeeded')
            handler: Async callable receiving the InboundEvent
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> InboundEvent:
        """
        Verify the signature header and parse the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            InboundEvent: Verified event

        Raises:
            MissingSignatureError: No signature header
            InvalidSignatureError: Signature does not match the body
            InvalidPayloadError: Verified body is not a well-formed event
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise MissingSignatureError("Missing Stripe-Signature header")

        try:
            body_text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning("webhook_body_not_utf8")
            raise InvalidPayloadError("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body_text, signature, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise InvalidSignatureError(f"Invalid webhook signature: {e}") from e

        try:
            body = json.loads(body_text)
            if not isinstance(body, dict):
                raise ValueError("event body must be a JSON object")
            event = InboundEvent.from_provider_body(body)
        except (ValueError, ValidationError) as e:
            logger.warning("webhook_payload_invalid", error=str(e))
            raise InvalidPayloadError(f"Malformed webhook payload: {e}") from e

        logger.info(
            "webhook_signature_verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event

    async def ingest(self, payload: bytes, signature: Optional[str]) -> IngestionResult:
        """
        Ingest one webhook delivery.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value, if present

        Returns:
            IngestionResult: Always acknowledged once the event is verified

        Raises:
            WebhookError: Missing or invalid signature, or malformed body
        """
        started = time.monotonic()

        try:
            event = self.verify_signature(payload, signature)
        except Exception:
            metrics.record_webhook_event("unknown", "rejected", time.monotonic() - started)
            raise

        log = logger.bind(event_id=event.id, event_type=event.type)

        claim = await self.ledger.try_claim(event.id)
        if not claim.claimed:
            log.info("webhook_event_duplicate", attempt_count=claim.attempt_count)
            return self._finish(
                event, "duplicate", False, started, attempt_count=claim.attempt_count
            )

        handler = self.event_handlers.get(event.type)
        if handler is None:
            # Claim kept: redeliveries of an unhandled type stay no-ops.
            log.info("webhook_event_unhandled")
            return self._finish(
                event, "unhandled", False, started, attempt_count=claim.attempt_count
            )

        log.info("webhook_event_dispatched", attempt_count=claim.attempt_count)
        try:
            handler_result = await handler(event)
        except Exception as e:
            log.error(
                "webhook_event_processing_failed",
                error=str(e),
                error_type=type(e).__name__,
                attempt_count=claim.attempt_count,
                exc_info=True,
            )
            try:
                await self.ledger.release(event.id)
            except Exception as release_error:
                log.error(
                    "ledger_release_failed",
                    error=str(release_error),
                    error_type=type(release_error).__name__,
                )
            await self._escalate(event, e, claim.attempt_count)
            return self._finish(
                event,
                "failed",
                False,
                started,
                attempt_count=claim.attempt_count,
                error=str(e),
            )

        # Skipped events keep their claim; a redelivery would skip them again.
        if getattr(handler_result, "status", None) == "skipped":
            log.info("webhook_event_skipped", reason=getattr(handler_result, "reason", None))
            return self._finish(
                event,
                "skipped",
                False,
                started,
                attempt_count=claim.attempt_count,
                handler_result=handler_result,
            )

        log.info("webhook_event_processed")
        return self._finish(
            event,
            "processed",
            True,
            started,
            attempt_count=claim.attempt_count,
            handler_result=handler_result,
        )

    def _finish(
        self,
        event: InboundEvent,
        status: str,
        processed: bool,
        started: float,
        **fields: Any,
    ) -> IngestionResult:
        metrics.record_webhook_event(event.type, status, time.monotonic() - started)
        return IngestionResult(
            event_id=event.id,
            event_type=event.type,
            processed=processed,
            status=status,
            **fields,
        )

    async def _escalate(self, event: InboundEvent, error: Exception, attempt_count: int) -> None:
        if self.escalation is None:
            return
        await self.escalation.notify_webhook_failure(
            event.id, event.type, str(error), attempt_count
        )
        await self.escalation.notify_critical_error(
            "webhook_processing",
            str(error),
            event_id=event.id,
            event_type=event.type,
            error_type=type(error).__name__,
        )
