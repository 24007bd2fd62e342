"""
Integration tests for reconciliation handlers against SQLite.
"""
from datetime import datetime, timezone
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from billing_sync.core.gateway import InboundEvent, WebhookIngestionGateway
from billing_sync.core.handlers import ReconciliationHandlers, subscription_record_fields
from billing_sync.core.idempotency import InMemoryIdempotencyLedger
from billing_sync.database.repository import SqlAlchemyRecordStore
from conftest import WEBHOOK_SECRET, event_body, sign_payload


def _event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> InboundEvent:
    return InboundEvent(id=event_id, type=event_type, payload=obj)


def _utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes
    return value.replace(tzinfo=timezone.utc)


@pytest.fixture
def escalation() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def handlers(store: SqlAlchemyRecordStore, escalation: AsyncMock) -> ReconciliationHandlers:
    return ReconciliationHandlers(store, escalation)


@pytest.mark.integration
class TestSubscriptionHandlers:
    @pytest.mark.asyncio
    async def test_subscription_update_is_mirrored(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        subscription_object: Dict[str, Any],
    ) -> None:
        """A past_due update scheduled for cancellation overwrites the active row."""
        await handlers.handle_subscription_changed(
            _event("customer.subscription.created", subscription_object)
        )
        updated = {
            **subscription_object,
            "status": "past_due",
            "cancel_at_period_end": True,
            "items": {"data": [{"id": "si_123", "price": {"id": "price_pro"}}]},
        }

        result = await handlers.handle_subscription_changed(
            _event("customer.subscription.updated", updated, event_id="evt_2")
        )

        assert result.status == "applied"
        assert result.record_id == "sub_123"
        record = await store.find_subscription_by_external_id("sub_123")
        assert record.status == "past_due"
        assert record.cancel_at_period_end is True
        assert record.price_id == "price_pro"
        assert _utc(record.current_period_end) == datetime.fromtimestamp(
            1_702_592_000, timezone.utc
        )
        customer = await store.find_customer_by_external_id("cus_123")
        assert record.customer_id == customer.id
        assert customer.account_id == "acct_123"

    @pytest.mark.asyncio
    async def test_subscription_deleted_defaults_to_canceled(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        subscription_object: Dict[str, Any],
    ) -> None:
        deleted = {**subscription_object, "status": None, "canceled_at": 1_702_000_000}

        await handlers.handle_subscription_deleted(
            _event("customer.subscription.deleted", deleted)
        )

        record = await store.find_subscription_by_external_id("sub_123")
        assert record.status == "canceled"
        assert record.canceled_at is not None

    @pytest.mark.asyncio
    async def test_unlinked_customer_is_skipped(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        subscription_object: Dict[str, Any],
    ) -> None:
        orphan = {**subscription_object, "metadata": {}}

        result = await handlers.handle_subscription_changed(
            _event("customer.subscription.updated", orphan)
        )

        assert result.status == "skipped"
        assert await store.find_subscription_by_external_id("sub_123") is None

    @pytest.mark.asyncio
    async def test_known_customer_needs_no_metadata(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        subscription_object: Dict[str, Any],
    ) -> None:
        await store.upsert_customer("cus_123", "acct_123")

        result = await handlers.handle_subscription_changed(
            _event("customer.subscription.updated", {**subscription_object, "metadata": {}})
        )

        assert result.status == "applied"

    def test_period_read_from_item_on_newer_api_versions(
        self, subscription_object: Dict[str, Any]
    ) -> None:
        subscription = {
            key: value
            for key, value in subscription_object.items()
            if key not in ("current_period_start", "current_period_end")
        }
        subscription["items"] = {
            "data": [
                {
                    "id": "si_1",
                    "price": {"id": "price_basic"},
                    "current_period_start": 1_700_000_000,
                    "current_period_end": 1_702_592_000,
                }
            ]
        }

        fields = subscription_record_fields(subscription)

        assert fields["current_period_end"] == datetime.fromtimestamp(1_702_592_000, timezone.utc)
        assert fields["details"] == {"account_id": "acct_123"}


@pytest.mark.integration
class TestCheckoutHandler:
    @pytest.mark.asyncio
    async def test_links_customer_and_records_subscription(
        self, handlers: ReconciliationHandlers, store: SqlAlchemyRecordStore
    ) -> None:
        session = {
            "id": "cs_123",
            "object": "checkout.session",
            "customer": "cus_123",
            "subscription": "sub_123",
            "client_reference_id": "acct_123",
            "customer_details": {"email": "user@example.com"},
            "metadata": {"price_id": "price_basic"},
        }

        result = await handlers.handle_checkout_session_completed(
            _event("checkout.session.completed", session)
        )

        assert result.status == "applied"
        customer = await store.find_customer_by_account_id("acct_123")
        assert customer.stripe_customer_id == "cus_123"
        assert customer.email == "user@example.com"
        subscription = await store.find_subscription_by_external_id("sub_123")
        assert subscription.status == "active"
        assert subscription.price_id == "price_basic"

    @pytest.mark.asyncio
    async def test_does_not_overwrite_newer_subscription_state(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        subscription_object: Dict[str, Any],
    ) -> None:
        await handlers.handle_subscription_changed(
            _event("customer.subscription.updated", {**subscription_object, "status": "trialing"})
        )

        await handlers.handle_checkout_session_completed(
            _event(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "customer": "cus_123",
                    "subscription": "sub_123",
                    "metadata": {"account_id": "acct_123"},
                },
                event_id="evt_2",
            )
        )

        subscription = await store.find_subscription_by_external_id("sub_123")
        assert subscription.status == "trialing"


@pytest.mark.integration
class TestPaymentHandlers:
    @pytest.mark.asyncio
    async def test_payment_intent_succeeded(
        self, handlers: ReconciliationHandlers, store: SqlAlchemyRecordStore
    ) -> None:
        intent = {
            "id": "pi_123",
            "customer": "cus_123",
            "amount": 5000,
            "amount_received": 5000,
            "currency": "USD",
            "status": "succeeded",
            "created": 1_700_000_000,
            "metadata": {"user_id": "acct_123"},
        }

        await handlers.handle_payment_intent_succeeded(_event("payment_intent.succeeded", intent))

        payment = await store.find_payment_by_external_id("pi_123")
        assert payment.kind == "payment_intent"
        assert payment.amount_cents == 5000
        assert payment.currency == "usd"
        assert payment.status == "succeeded"

    @pytest.mark.asyncio
    async def test_payment_intent_failed_is_escalated(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        escalation: AsyncMock,
    ) -> None:
        await store.upsert_customer("cus_123", "acct_123")
        intent = {
            "id": "pi_456",
            "customer": "cus_123",
            "amount": 1500,
            "currency": "usd",
            "last_payment_error": {"message": "Your card was declined.", "code": "card_declined"},
        }

        result = await handlers.handle_payment_intent_failed(
            _event("payment_intent.payment_failed", intent)
        )

        assert result.status == "applied"
        payment = await store.find_payment_by_external_id("pi_456")
        assert payment.status == "failed"
        assert payment.failure_message == "Your card was declined."
        escalation.notify_payment_failure.assert_awaited_once()
        kwargs = escalation.notify_payment_failure.await_args.kwargs
        assert kwargs["payment_intent_id"] == "pi_456"
        assert kwargs["error_code"] == "card_declined"

    @pytest.mark.asyncio
    async def test_invoice_replay_converges(
        self, handlers: ReconciliationHandlers, store: SqlAlchemyRecordStore
    ) -> None:
        """Applying the same invoice twice leaves a single row."""
        invoice = {
            "id": "in_123",
            "customer": "cus_123",
            "subscription": "sub_123",
            "amount_paid": 2000,
            "currency": "usd",
            "status_transitions": {"paid_at": 1_700_000_500},
            "subscription_details": {"metadata": {"account_id": "acct_123"}},
        }

        first = await handlers.handle_invoice_payment_succeeded(
            _event("invoice.payment_succeeded", invoice)
        )
        before = await store.find_payment_by_external_id("in_123")
        await handlers.handle_invoice_payment_succeeded(
            _event("invoice.payment_succeeded", invoice)
        )
        after = await store.find_payment_by_external_id("in_123")

        assert first.status == "applied"
        assert before.id == after.id
        assert after.kind == "invoice"
        assert after.amount_cents == 2000
        assert after.stripe_subscription_id == "sub_123"
        assert _utc(after.paid_at) == datetime.fromtimestamp(1_700_000_500, timezone.utc)

    @pytest.mark.asyncio
    async def test_invoice_failure_for_unknown_customer_still_escalates(
        self, handlers: ReconciliationHandlers, escalation: AsyncMock
    ) -> None:
        invoice = {"id": "in_999", "customer": "cus_unknown", "amount_due": 900}

        result = await handlers.handle_invoice_payment_failed(
            _event("invoice.payment_failed", invoice)
        )

        assert result.status == "skipped"
        escalation.notify_payment_failure.assert_awaited_once()


@pytest.mark.integration
class TestGatewayRegistration:
    def test_registers_every_route(self, handlers: ReconciliationHandlers) -> None:
        gateway = WebhookIngestionGateway(WEBHOOK_SECRET, InMemoryIdempotencyLedger())

        handlers.register(gateway)

        assert set(gateway.event_handlers) == {
            "checkout.session.completed",
            "payment_intent.succeeded",
            "payment_intent.payment_failed",
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "invoice.payment_succeeded",
            "invoice.payment_failed",
        }

    @pytest.mark.asyncio
    async def test_signed_delivery_reaches_the_store(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        subscription_object: Dict[str, Any],
    ) -> None:
        gateway = WebhookIngestionGateway(WEBHOOK_SECRET, InMemoryIdempotencyLedger())
        handlers.register(gateway)
        body = event_body("evt_sub", "customer.subscription.updated", subscription_object)

        result = await gateway.ingest(body.encode(), sign_payload(body))

        assert result.processed
        assert result.handler_result.status == "applied"
        assert (await store.find_subscription_by_external_id("sub_123")) is not None

    @pytest.mark.asyncio
    async def test_unlinked_customer_delivery_is_not_processed(
        self,
        handlers: ReconciliationHandlers,
        store: SqlAlchemyRecordStore,
        subscription_object: Dict[str, Any],
    ) -> None:
        gateway = WebhookIngestionGateway(WEBHOOK_SECRET, InMemoryIdempotencyLedger())
        handlers.register(gateway)
        orphan = {**subscription_object, "customer": "cus_unknown", "metadata": {}}
        body = event_body("evt_orphan", "customer.subscription.updated", orphan)

        result = await gateway.ingest(body.encode(), sign_payload(body))

        assert result.status == "skipped"
        assert result.to_response()["processed"] is False
        assert await store.find_subscription_by_external_id("sub_123") is None
