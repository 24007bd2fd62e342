"""
Stripe API client with retry logic and circuit breaker.

Every call runs through a RetryExecutor, so failures are classified, retried
when transient, counted by the integration's circuit breaker, and escalated
when terminal. The blocking SDK runs in a worker thread.
"""
import asyncio
import uuid
from typing import Any, Callable, Dict, Optional

import stripe
import structlog

from billing_sync.config import Settings
from billing_sync.core.backoff import RetryProfile
from billing_sync.core.retry import RetryExecutor

logger = structlog.get_logger(__name__)


def new_idempotency_key(prefix: str) -> str:
    """Generate an idempotency key for one logical create request."""
    return f"{prefix}:{uuid.uuid4().hex}"


def to_plain(obj: Any) -> Dict[str, Any]:
    """Convert an SDK object to a plain dict."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeClient:
    """
    Stripe API client with retry logic and circuit breaker.

    Features:
    - Classified retries with exponential backoff
    - Circuit breaker shared by every call to Stripe
    - Idempotency keys reused across retries of one request
    """

    def __init__(
        self,
        executor: RetryExecutor,
        settings: Settings,
        sdk: Any = stripe,
    ):
        """
        Initialize Stripe client.

        Args:
            executor: Retry executor guarding the Stripe integration
            settings: Application settings
            sdk: The stripe module (replaceable in tests)
        """
        self.executor = executor
        self.settings = settings
        self.sdk = sdk
        sdk.api_key = settings.stripe_secret_key
        sdk.api_version = settings.stripe_api_version

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    async def _call(
        self,
        operation_name: str,
        func: Callable[..., Any],
        *args: Any,
        profile: Optional[RetryProfile] = None,
        cancel_event: Optional[asyncio.Event] = None,
        **kwargs: Any,
    ) -> Any:
        async def attempt() -> Any:
            return await asyncio.to_thread(func, *args, **kwargs)

        return await self.executor.execute(
            attempt,
            operation_name,
            profile=profile,
            cancel_event=cancel_event,
        )

    async def create_customer(
        self, email: Optional[str], account_id: str, idempotency_key: str
    ) -> Dict[str, Any]:
        """
        Create a Stripe customer linked to a local account.

        Args:
            email: Customer email
            account_id: Local account id, stored in metadata
            idempotency_key: Key reused across retries

        Returns:
            Dict[str, Any]: Created customer
        """
        logger.info("creating_stripe_customer", account_id=account_id)
        customer = await self._call(
            "create_customer",
            self.sdk.Customer.create,
            email=email,
            metadata={"account_id": account_id},
            idempotency_key=idempotency_key,
        )
        return to_plain(customer)

    async def retrieve_coupon(self, coupon_id: str) -> Dict[str, Any]:
        return to_plain(await self._call("retrieve_coupon", self.sdk.Coupon.retrieve, coupon_id))

    async def list_coupons(
        self, limit: int = 100, profile: Optional[RetryProfile] = None
    ) -> list[Dict[str, Any]]:
        result = await self._call(
            "list_coupons", self.sdk.Coupon.list, limit=limit, profile=profile
        )
        return [to_plain(coupon) for coupon in to_plain(result).get("data", [])]

    async def create_checkout_session(
        self, params: Dict[str, Any], idempotency_key: str
    ) -> Dict[str, Any]:
        """
        Create a Checkout Session.

        Args:
            params: Session parameters
            idempotency_key: Key reused across retries

        Returns:
            Dict[str, Any]: Created session
        """
        logger.info(
            "creating_checkout_session",
            mode=params.get("mode"),
            customer=params.get("customer"),
        )
        session = await self._call(
            "create_checkout_session",
            self.sdk.checkout.Session.create,
            idempotency_key=idempotency_key,
            **params,
        )
        session = to_plain(session)
        logger.info("checkout_session_created", session_id=session.get("id"))
        return session

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return to_plain(
            await self._call(
                "retrieve_subscription", self.sdk.Subscription.retrieve, subscription_id
            )
        )

    async def update_subscription(self, subscription_id: str, **params: Any) -> Dict[str, Any]:
        logger.info("updating_subscription", subscription_id=subscription_id)
        return to_plain(
            await self._call(
                "update_subscription", self.sdk.Subscription.modify, subscription_id, **params
            )
        )

    async def cancel_subscription(self, subscription_id: str, **params: Any) -> Dict[str, Any]:
        logger.info("canceling_subscription", subscription_id=subscription_id)
        return to_plain(
            await self._call(
                "cancel_subscription", self.sdk.Subscription.cancel, subscription_id, **params
            )
        )

    async def list_invoices(
        self,
        customer: Optional[str] = None,
        limit: int = 10,
        profile: Optional[RetryProfile] = None,
    ) -> list[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if customer:
            params["customer"] = customer
        result = await self._call("list_invoices", self.sdk.Invoice.list, profile=profile, **params)
        return [to_plain(invoice) for invoice in to_plain(result).get("data", [])]

    async def create_portal_session(self, customer: str, return_url: str) -> Dict[str, Any]:
        return to_plain(
            await self._call(
                "create_portal_session",
                self.sdk.billing_portal.Session.create,
                customer=customer,
                return_url=return_url,
            )
        )
