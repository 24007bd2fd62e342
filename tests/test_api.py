"""
API tests through the ASGI app with a mocked Stripe SDK.
"""
import time
from unittest.mock import MagicMock

import pytest
import stripe
from httpx import AsyncClient

from billing_sync.api.container import STRIPE_INTEGRATION, ServiceContainer
from billing_sync.core.circuit_breaker import CircuitState
from conftest import event_body, sign_payload

CHECKOUT_REQUEST = {
    "account_id": "acct_123",
    "email": "user@example.com",
    "price_id": "price_basic",
    "mode": "subscription",
    "success_url": "https://app.example.com/success",
    "cancel_url": "https://app.example.com/cancel",
}


def _checkout_completed(event_id: str = "evt_checkout") -> str:
    return event_body(
        event_id,
        "checkout.session.completed",
        {
            "id": "cs_123",
            "customer": "cus_123",
            "subscription": "sub_123",
            "client_reference_id": "acct_123",
            "metadata": {"price_id": "price_basic"},
        },
    )


@pytest.mark.integration
class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_processes_signed_event(
        self, client: AsyncClient, container: ServiceContainer
    ) -> None:
        body = _checkout_completed()

        response = await client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign_payload(body)},
        )

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "processed": True,
            "eventId": "evt_checkout",
            "eventType": "checkout.session.completed",
        }
        customer = await container.store.find_customer_by_account_id("acct_123")
        assert customer.stripe_customer_id == "cus_123"

    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged_unprocessed(self, client: AsyncClient) -> None:
        body = _checkout_completed()
        headers = {"Stripe-Signature": sign_payload(body)}

        await client.post("/webhooks/stripe", content=body, headers=headers)
        response = await client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["processed"] is False

    @pytest.mark.asyncio
    async def test_missing_signature(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/stripe", content=_checkout_completed())

        assert response.status_code == 400
        assert response.json()["type"] == "MissingSignatureError"

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client: AsyncClient) -> None:
        body = _checkout_completed()

        response = await client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign_payload(body, secret="whsec_wrong")},
        )

        assert response.status_code == 400
        assert response.json()["type"] == "InvalidSignatureError"

    @pytest.mark.asyncio
    async def test_only_post_is_allowed(self, client: AsyncClient) -> None:
        response = await client.get("/webhooks/stripe")

        assert response.status_code == 405

    @pytest.mark.asyncio
    async def test_handler_failure_still_acknowledged(
        self, client: AsyncClient, container: ServiceContainer
    ) -> None:
        async def broken(event):
            raise RuntimeError("downstream unavailable")

        container.gateway.register_handler("customer.created", broken)
        body = event_body("evt_broken", "customer.created", {"id": "cus_1"})

        response = await client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": sign_payload(body)},
        )

        assert response.status_code == 200
        assert response.json()["processed"] is False


@pytest.mark.integration
class TestBillingEndpoints:
    @pytest.mark.asyncio
    async def test_create_checkout_session(
        self, client: AsyncClient, stripe_sdk: MagicMock
    ) -> None:
        stripe_sdk.Customer.create.return_value = {"id": "cus_new"}
        stripe_sdk.checkout.Session.create.return_value = {
            "id": "cs_123",
            "url": "https://checkout.stripe.com/c/cs_123",
        }

        response = await client.post("/billing/checkout-sessions", json=CHECKOUT_REQUEST)

        assert response.status_code == 201
        assert response.json() == {
            "session_id": "cs_123",
            "url": "https://checkout.stripe.com/c/cs_123",
            "customer_id": "cus_new",
        }

    @pytest.mark.asyncio
    async def test_validation_error(self, client: AsyncClient) -> None:
        response = await client.post(
            "/billing/checkout-sessions", json={**CHECKOUT_REQUEST, "price_id": "prod_123"}
        )

        assert response.status_code == 400
        body = response.json()
        assert body["type"] == "invalid_request"
        assert "price_id" in body["details"]

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_429_with_retry_after(
        self, client: AsyncClient, stripe_sdk: MagicMock
    ) -> None:
        stripe_sdk.Subscription.retrieve.side_effect = stripe.RateLimitError(
            "Too many requests", headers={"Retry-After": "30"}
        )

        response = await client.post("/billing/subscriptions/sub_123", json={"action": "get"})

        assert response.status_code == 429
        assert response.headers["Retry-After"] in ("29", "30")
        body = response.json()
        assert body["type"] == "rate_limit"
        assert body["operation"] == "retrieve_subscription"
        assert body["error"] == "Rate limit exceeded"

    @pytest.mark.asyncio
    async def test_card_error_maps_to_402(
        self, client: AsyncClient, stripe_sdk: MagicMock
    ) -> None:
        stripe_sdk.Subscription.modify.side_effect = stripe.CardError(
            "Your card was declined", "card", "card_declined"
        )

        response = await client.post(
            "/billing/subscriptions/sub_123", json={"action": "cancel"}
        )

        assert response.status_code == 402
        assert response.json()["type"] == "card_error"

    @pytest.mark.asyncio
    async def test_authentication_error_maps_to_401(
        self, client: AsyncClient, stripe_sdk: MagicMock
    ) -> None:
        stripe_sdk.Invoice.list.side_effect = stripe.AuthenticationError("Invalid API key")

        response = await client.get("/billing/customers/cus_123/invoices")

        assert response.status_code == 401
        assert response.json()["type"] == "authentication"

    @pytest.mark.asyncio
    async def test_open_circuit_maps_to_503(
        self, client: AsyncClient, container: ServiceContainer, stripe_sdk: MagicMock
    ) -> None:
        breaker = container.breakers.get(STRIPE_INTEGRATION)
        breaker.state = CircuitState.OPEN
        breaker.last_failure_at = time.monotonic()

        response = await client.post(
            "/billing/portal-sessions",
            json={"customer_id": "cus_123", "return_url": "https://app.example.com"},
        )

        assert response.status_code == 503
        assert response.json()["type"] == "circuit_open"
        stripe_sdk.billing_portal.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_validate_promo_code(
        self, client: AsyncClient, stripe_sdk: MagicMock
    ) -> None:
        stripe_sdk.Coupon.retrieve.return_value = {
            "id": "WELCOME10",
            "valid": True,
            "percent_off": 10.0,
            "duration": "once",
        }

        response = await client.post("/billing/promo-codes/validate", json={"code": "welcome10"})

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["code"] == "WELCOME10"
        assert body["discount_type"] == "percentage"


@pytest.mark.integration
class TestAdminAndMonitoring:
    @pytest.mark.asyncio
    async def test_circuit_breaker_states(self, client: AsyncClient) -> None:
        response = await client.get("/admin/circuit-breakers")

        assert response.status_code == 200
        breakers = response.json()["breakers"]
        assert [b["integration"] for b in breakers] == [STRIPE_INTEGRATION]
        assert breakers[0]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_ledger_purge(self, client: AsyncClient) -> None:
        response = await client.post("/admin/ledger/purge")

        assert response.status_code == 200
        assert response.json() == {"purged": 0}

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert "redis" not in body["checks"]

    @pytest.mark.asyncio
    async def test_health_degraded_when_breaker_open(
        self, client: AsyncClient, container: ServiceContainer
    ) -> None:
        container.breakers.get(STRIPE_INTEGRATION).state = CircuitState.OPEN

        health = await client.get("/health")
        ready = await client.get("/health/ready")

        assert health.json()["status"] == "degraded"
        assert ready.status_code == 200

    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        await client.get("/health/live")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["service"] == "billing-sync-test"
