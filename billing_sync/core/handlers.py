"""
Reconciliation handlers for Stripe webhook events.

Each handler applies one event category to the local record store using
upserts keyed by the provider's ids, so a handler can be re-run from the start
after a failed attempt and converge on the same state.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import structlog

from billing_sync.core.gateway import InboundEvent
from billing_sync.database.models import CustomerRecord
from billing_sync.database.repository import RecordStore
from billing_sync.monitoring.metrics import metrics

if TYPE_CHECKING:
    from billing_sync.core.escalation import EscalationPipeline
    from billing_sync.core.gateway import WebhookIngestionGateway

logger = structlog.get_logger(__name__)

# Metadata keys linking a provider customer to a local account, in priority order
ACCOUNT_METADATA_KEYS = ("account_id", "user_id")


@dataclass(frozen=True)
class HandlerResult:
    """Result of applying one event."""

    status: str  # applied, skipped
    event_type: str
    record_id: Optional[str] = None
    reason: Optional[str] = None


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, 0, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _account_id_from(*metadata_sources: Optional[Dict[str, Any]]) -> Optional[str]:
    for metadata in metadata_sources:
        if not metadata:
            continue
        for key in ACCOUNT_METADATA_KEYS:
            if metadata.get(key):
                return str(metadata[key])
    return None


def _object_id(value: Any) -> Optional[str]:
    """Provider references arrive either as an id or as an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def subscription_record_fields(
    subscription: Dict[str, Any], default_status: str = "active"
) -> Dict[str, Any]:
    """Map a provider subscription object onto SubscriptionRecord columns."""
    items = (subscription.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}

    # Newer API versions carry the billing period on the item.
    period_source = subscription if "current_period_start" in subscription else first_item

    return {
        "status": subscription.get("status") or default_status,
        "price_id": price.get("id"),
        "current_period_start": _timestamp(period_source.get("current_period_start")),
        "current_period_end": _timestamp(period_source.get("current_period_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
        "canceled_at": _timestamp(subscription.get("canceled_at")),
        "trial_start": _timestamp(subscription.get("trial_start")),
        "trial_end": _timestamp(subscription.get("trial_end")),
        "details": subscription.get("metadata") or None,
    }


class ReconciliationHandlers:
    """
    Applies provider events to the local system of record.

    Example:
        >>> handlers = ReconciliationHandlers(store, escalation)
        >>> handlers.register(gateway)
    """

    def __init__(self, store: RecordStore, escalation: Optional["EscalationPipeline"] = None):
        self.store = store
        self.escalation = escalation

    def routes(self) -> Dict[str, Callable[[InboundEvent], Awaitable[HandlerResult]]]:
        return {
            "checkout.session.completed": self.handle_checkout_session_completed,
            "payment_intent.succeeded": self.handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self.handle_payment_intent_failed,
            "customer.subscription.created": self.handle_subscription_changed,
            "customer.subscription.updated": self.handle_subscription_changed,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_invoice_payment_succeeded,
            "invoice.payment_failed": self.handle_invoice_payment_failed,
        }

    def register(self, gateway: "WebhookIngestionGateway") -> None:
        """Register every handler with an ingestion gateway."""
        for event_type, handler in self.routes().items():
            gateway.register_handler(event_type, handler)

    async def resolve_customer(
        self,
        stripe_customer_id: Optional[str],
        account_id: Optional[str],
        email: Optional[str] = None,
    ) -> Optional[CustomerRecord]:
        """
        Find or upsert the local customer for a provider customer id.

        With an account id the customer is upserted; without one only an
        existing mapping can be used.
        """
        if not stripe_customer_id:
            return None
        if account_id:
            return await self.store.upsert_customer(stripe_customer_id, account_id, email)
        return await self.store.find_customer_by_external_id(stripe_customer_id)

    async def handle_checkout_session_completed(self, event: InboundEvent) -> HandlerResult:
        """Link the checkout's customer to its account and record its subscription."""
        session = event.payload
        customer_id = _object_id(session.get("customer"))
        subscription_id = _object_id(session.get("subscription"))
        metadata = session.get("metadata") or {}
        email = (session.get("customer_details") or {}).get("email") or session.get(
            "customer_email"
        )

        customer = await self.resolve_customer(
            customer_id,
            _account_id_from(metadata, {"account_id": session.get("client_reference_id")}),
            email,
        )
        if customer is None:
            return self._skipped(event, f"no account linked to customer {customer_id}")

        if subscription_id:
            existing = await self.store.find_subscription_by_external_id(subscription_id)
            if existing is None:
                await self.store.upsert_subscription(
                    subscription_id,
                    customer.id,
                    status="active",
                    price_id=metadata.get("price_id"),
                )

        return self._applied(event, customer.stripe_customer_id)

    async def handle_payment_intent_succeeded(self, event: InboundEvent) -> HandlerResult:
        """Record a successful payment."""
        intent = event.payload
        customer = await self.resolve_customer(
            _object_id(intent.get("customer")), _account_id_from(intent.get("metadata"))
        )
        if customer is None:
            return self._skipped(event, "payment intent has no linked customer")

        record = await self.store.upsert_payment(
            intent["id"],
            "payment_intent",
            customer.id,
            amount_cents=intent.get("amount_received") or intent.get("amount") or 0,
            currency=(intent.get("currency") or "usd").lower(),
            status=intent.get("status") or "succeeded",
            paid_at=_timestamp(intent.get("created")),
            failure_message=None,
        )
        return self._applied(event, record.external_id)

    async def handle_payment_intent_failed(self, event: InboundEvent) -> HandlerResult:
        """Record a failed payment and escalate it."""
        intent = event.payload
        last_error = intent.get("last_payment_error") or {}
        stripe_customer_id = _object_id(intent.get("customer"))

        customer = await self.resolve_customer(
            stripe_customer_id, _account_id_from(intent.get("metadata"))
        )
        result: HandlerResult
        if customer is None:
            result = self._skipped(event, "payment intent has no linked customer")
        else:
            record = await self.store.upsert_payment(
                intent["id"],
                "payment_intent",
                customer.id,
                amount_cents=intent.get("amount") or 0,
                currency=(intent.get("currency") or "usd").lower(),
                status="failed",
                failure_message=last_error.get("message"),
            )
            result = self._applied(event, record.external_id)

        if self.escalation is not None:
            await self.escalation.notify_payment_failure(
                last_error.get("message") or "Payment failed",
                payment_intent_id=intent["id"],
                customer_id=stripe_customer_id,
                amount=intent.get("amount"),
                currency=intent.get("currency"),
                error_code=last_error.get("code"),
                event_id=event.id,
            )
        return result

    async def handle_subscription_changed(self, event: InboundEvent) -> HandlerResult:
        """Mirror a created or updated subscription."""
        return await self._apply_subscription(event)

    async def handle_subscription_deleted(self, event: InboundEvent) -> HandlerResult:
        """Mirror a deleted subscription as canceled."""
        return await self._apply_subscription(event, default_status="canceled")

    async def _apply_subscription(
        self, event: InboundEvent, default_status: str = "active"
    ) -> HandlerResult:
        subscription = event.payload
        customer = await self.resolve_customer(
            _object_id(subscription.get("customer")),
            _account_id_from(subscription.get("metadata")),
        )
        if customer is None:
            return self._skipped(event, "subscription customer is not linked to an account")

        record = await self.store.upsert_subscription(
            subscription["id"],
            customer.id,
            **subscription_record_fields(subscription, default_status),
        )
        return self._applied(event, record.stripe_subscription_id)

    async def handle_invoice_payment_succeeded(self, event: InboundEvent) -> HandlerResult:
        """Record a paid invoice."""
        invoice = event.payload
        customer = await self._invoice_customer(invoice)
        if customer is None:
            return self._skipped(event, "invoice customer is not linked to an account")

        paid_at = (invoice.get("status_transitions") or {}).get("paid_at") or invoice.get(
            "created"
        )
        record = await self.store.upsert_payment(
            invoice["id"],
            "invoice",
            customer.id,
            stripe_subscription_id=_object_id(invoice.get("subscription")),
            amount_cents=invoice.get("amount_paid") or 0,
            currency=(invoice.get("currency") or "usd").lower(),
            status="paid",
            paid_at=_timestamp(paid_at),
            failure_message=None,
        )
        return self._applied(event, record.external_id)

    async def handle_invoice_payment_failed(self, event: InboundEvent) -> HandlerResult:
        """Record a failed invoice payment and escalate it."""
        invoice = event.payload
        customer = await self._invoice_customer(invoice)

        result: HandlerResult
        if customer is None:
            result = self._skipped(event, "invoice customer is not linked to an account")
        else:
            record = await self.store.upsert_payment(
                invoice["id"],
                "invoice",
                customer.id,
                stripe_subscription_id=_object_id(invoice.get("subscription")),
                amount_cents=invoice.get("amount_due") or 0,
                currency=(invoice.get("currency") or "usd").lower(),
                status="failed",
                failure_message=f"attempt {invoice.get('attempt_count') or 1} failed",
            )
            result = self._applied(event, record.external_id)

        if self.escalation is not None:
            await self.escalation.notify_payment_failure(
                "Invoice payment failed",
                customer_id=_object_id(invoice.get("customer")),
                amount=invoice.get("amount_due"),
                currency=invoice.get("currency"),
                invoice_id=invoice["id"],
                event_id=event.id,
            )
        return result

    async def _invoice_customer(self, invoice: Dict[str, Any]) -> Optional[CustomerRecord]:
        subscription_details = invoice.get("subscription_details") or {}
        return await self.resolve_customer(
            _object_id(invoice.get("customer")),
            _account_id_from(invoice.get("metadata"), subscription_details.get("metadata")),
            invoice.get("customer_email"),
        )

    @staticmethod
    def _applied(event: InboundEvent, record_id: Optional[str]) -> HandlerResult:
        metrics.record_reconciliation_result(event.type, "applied")
        logger.info(
            "reconciliation_applied",
            event_id=event.id,
            event_type=event.type,
            record_id=record_id,
        )
        return HandlerResult(status="applied", event_type=event.type, record_id=record_id)

    @staticmethod
    def _skipped(event: InboundEvent, reason: str) -> HandlerResult:
        metrics.record_reconciliation_result(event.type, "skipped")
        logger.warning(
            "reconciliation_skipped",
            event_id=event.id,
            event_type=event.type,
            reason=reason,
        )
        return HandlerResult(status="skipped", event_type=event.type, reason=reason)
