"""
Outbound billing operations.

Validates requests locally, then drives the Stripe client. Provider failures
surface as PaymentProviderError subclasses; rejected input raises
BillingValidationError.
"""
import hashlib
import re
import time
from typing import Any, Dict, List, Optional

import structlog

from billing_sync.core.backoff import RATE_LIMIT_RETRY_PROFILE, RetryProfile
from billing_sync.core.errors import BillingValidationError, PermanentProviderError
from billing_sync.core.handlers import subscription_record_fields
from billing_sync.database.repository import RecordStore
from billing_sync.integrations.stripe_client import StripeClient, new_idempotency_key

logger = structlog.get_logger(__name__)

CHECKOUT_MODES = ("payment", "subscription")
SUBSCRIPTION_ACTIONS = ("get", "update", "cancel", "pause", "resume")
PRORATION_BEHAVIORS = ("create_prorations", "none", "always_invoice")
PAUSE_BEHAVIORS = ("mark_uncollectible", "keep_as_draft", "void")

PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9\-_]+$")
MAX_TRIAL_DAYS = 730


def _require_url(value: str, field: str) -> None:
    if not value or not value.startswith(("https://", "http://")):
        raise BillingValidationError(f"{field} must be an absolute http(s) URL")


def _require_prefixed_id(value: Optional[str], prefix: str, field: str) -> None:
    if not value or not value.startswith(prefix):
        raise BillingValidationError(f"{field} must start with '{prefix}'")


def customer_idempotency_key(account_id: str, email: Optional[str]) -> str:
    """Key one customer creation by account and the parameters sent with it."""
    digest = hashlib.sha256((email or "").strip().lower().encode("utf-8")).hexdigest()
    return f"customer:{account_id}:{digest[:16]}"


def normalize_promo_code(code: str) -> str:
    return code.strip().upper()


class BillingService:
    """
    Checkout, subscription management, invoices and promo codes.

    Example:
        >>> service = BillingService(stripe_client, store)
        >>> session = await service.create_checkout_session(
        ...     "acct_1", "a@example.com", "price_123", "subscription",
        ...     "https://app/success", "https://app/cancel",
        ... )
    """

    def __init__(
        self,
        client: StripeClient,
        store: RecordStore,
        analytics_profile: RetryProfile = RATE_LIMIT_RETRY_PROFILE,
    ):
        """
        Initialize billing service.

        Args:
            client: Retry-wrapped Stripe client
            store: Local record store
            analytics_profile: Retry profile for bulk list queries
        """
        self.client = client
        self.store = store
        self.analytics_profile = analytics_profile

    async def create_checkout_session(
        self,
        account_id: str,
        email: Optional[str],
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        promo_code: Optional[str] = None,
        trial_days: Optional[int] = None,
        quantity: int = 1,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a Checkout Session for an account.

        Reuses the account's Stripe customer or creates and mirrors one, and
        applies a validated promo code as a session discount.

        Returns:
            Dict[str, Any]: session_id, url and customer_id

        Raises:
            BillingValidationError: Invalid input or unusable promo code
            PaymentProviderError: Terminal provider failure
        """
        if not account_id:
            raise BillingValidationError("account_id is required")
        if mode not in CHECKOUT_MODES:
            raise BillingValidationError(f"mode must be one of {CHECKOUT_MODES}")
        _require_prefixed_id(price_id, "price_", "price_id")
        _require_url(success_url, "success_url")
        _require_url(cancel_url, "cancel_url")
        if quantity < 1:
            raise BillingValidationError("quantity must be at least 1")
        if trial_days is not None:
            if mode != "subscription":
                raise BillingValidationError("trial_days requires subscription mode")
            if not 1 <= trial_days <= MAX_TRIAL_DAYS:
                raise BillingValidationError(f"trial_days must be between 1 and {MAX_TRIAL_DAYS}")

        discount_coupon: Optional[str] = None
        if promo_code:
            promo = await self.validate_promo_code(promo_code)
            if not promo["valid"]:
                raise BillingValidationError(promo["reason"])
            discount_coupon = promo["code"]

        customer_id = await self._ensure_customer(account_id, email)

        session_metadata = {**(metadata or {}), "account_id": account_id, "price_id": price_id}
        params: Dict[str, Any] = {
            "mode": mode,
            "customer": customer_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [{"price": price_id, "quantity": quantity}],
            "client_reference_id": account_id,
            "metadata": session_metadata,
        }
        if discount_coupon:
            params["discounts"] = [{"coupon": discount_coupon}]
        else:
            params["allow_promotion_codes"] = True
        if mode == "subscription":
            subscription_data: Dict[str, Any] = {"metadata": {"account_id": account_id}}
            if trial_days:
                subscription_data["trial_period_days"] = trial_days
            params["subscription_data"] = subscription_data

        session = await self.client.create_checkout_session(
            params, idempotency_key=new_idempotency_key(f"checkout:{account_id}")
        )
        return {
            "session_id": session["id"],
            "url": session.get("url"),
            "customer_id": customer_id,
        }

    async def _ensure_customer(self, account_id: str, email: Optional[str]) -> str:
        existing = await self.store.find_customer_by_account_id(account_id)
        if existing is not None:
            return existing.stripe_customer_id

        customer = await self.client.create_customer(
            email,
            account_id,
            idempotency_key=customer_idempotency_key(account_id, email),
        )
        await self.store.upsert_customer(customer["id"], account_id, email)
        logger.info("customer_linked", account_id=account_id, customer_id=customer["id"])
        return customer["id"]

    async def validate_promo_code(self, code: str) -> Dict[str, Any]:
        """
        Check that a promo code names a redeemable coupon.

        Returns:
            Dict[str, Any]: valid flag, normalized code, and either a reason or
            the discount's type and value
        """
        normalized = normalize_promo_code(code)
        if not normalized or not PROMO_CODE_PATTERN.match(normalized):
            return {"valid": False, "code": normalized, "reason": "Promo code format is invalid"}

        try:
            coupon = await self.client.retrieve_coupon(normalized)
        except PermanentProviderError as e:
            if e.classified is not None and e.classified.code == "resource_missing":
                return {"valid": False, "code": normalized, "reason": "Promo code not found"}
            raise

        reason = self._coupon_unusable_reason(coupon)
        if reason is not None:
            return {"valid": False, "code": normalized, "reason": reason}

        if coupon.get("percent_off"):
            discount_type, discount_value = "percentage", coupon["percent_off"]
        else:
            discount_type, discount_value = "fixed", coupon.get("amount_off")
        return {
            "valid": True,
            "code": normalized,
            "discount_type": discount_type,
            "discount_value": discount_value,
            "currency": coupon.get("currency"),
            "duration": coupon.get("duration"),
        }

    @staticmethod
    def _coupon_unusable_reason(coupon: Dict[str, Any]) -> Optional[str]:
        if not coupon.get("valid", False):
            return "Promo code has expired or is no longer valid"
        max_redemptions = coupon.get("max_redemptions")
        if max_redemptions and coupon.get("times_redeemed", 0) >= max_redemptions:
            return "Promo code has reached its usage limit"
        redeem_by = coupon.get("redeem_by")
        if redeem_by and time.time() > redeem_by:
            return "Promo code has expired"
        return None

    async def manage_subscription(
        self,
        subscription_id: str,
        action: str,
        new_price_id: Optional[str] = None,
        proration_behavior: str = "create_prorations",
        cancel_at_period_end: bool = True,
        pause_behavior: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Get or mutate a subscription.

        Mutations are mirrored into the local store when the subscription's
        customer is known locally.

        Args:
            subscription_id: Stripe subscription id (sub_...)
            action: get, update, cancel, pause or resume
            new_price_id: Target price for update
            proration_behavior: Proration mode for update
            cancel_at_period_end: Cancel at period end instead of immediately
            pause_behavior: Collection behavior while paused
            metadata: Metadata to set on the subscription

        Returns:
            Dict[str, Any]: Subscription summary
        """
        _require_prefixed_id(subscription_id, "sub_", "subscription_id")
        if action not in SUBSCRIPTION_ACTIONS:
            raise BillingValidationError(f"action must be one of {SUBSCRIPTION_ACTIONS}")

        extra: Dict[str, Any] = {"metadata": metadata} if metadata else {}

        if action == "get":
            subscription = await self.client.retrieve_subscription(subscription_id)
            return self._summarize(subscription)

        if action == "update":
            _require_prefixed_id(new_price_id, "price_", "new_price_id")
            if proration_behavior not in PRORATION_BEHAVIORS:
                raise BillingValidationError(
                    f"proration_behavior must be one of {PRORATION_BEHAVIORS}"
                )
            current = await self.client.retrieve_subscription(subscription_id)
            items = (current.get("items") or {}).get("data") or []
            if not items:
                raise BillingValidationError("Subscription has no items to update")
            subscription = await self.client.update_subscription(
                subscription_id,
                items=[{"id": items[0]["id"], "price": new_price_id}],
                proration_behavior=proration_behavior,
                **extra,
            )
        elif action == "cancel":
            if cancel_at_period_end:
                subscription = await self.client.update_subscription(
                    subscription_id, cancel_at_period_end=True, **extra
                )
            else:
                subscription = await self.client.cancel_subscription(subscription_id)
        elif action == "pause":
            if pause_behavior not in PAUSE_BEHAVIORS:
                raise BillingValidationError(f"pause_behavior must be one of {PAUSE_BEHAVIORS}")
            subscription = await self.client.update_subscription(
                subscription_id, pause_collection={"behavior": pause_behavior}, **extra
            )
        else:
            # An empty string unsets pause_collection.
            subscription = await self.client.update_subscription(
                subscription_id, pause_collection="", **extra
            )

        await self._mirror_subscription(subscription)
        logger.info(
            "subscription_managed",
            subscription_id=subscription_id,
            action=action,
            status=subscription.get("status"),
        )
        return self._summarize(subscription)

    async def _mirror_subscription(self, subscription: Dict[str, Any]) -> None:
        customer_ref = subscription.get("customer")
        stripe_customer_id = (
            customer_ref.get("id") if isinstance(customer_ref, dict) else customer_ref
        )
        if not stripe_customer_id:
            return
        customer = await self.store.find_customer_by_external_id(stripe_customer_id)
        if customer is None:
            logger.warning(
                "subscription_mirror_skipped",
                subscription_id=subscription.get("id"),
                customer_id=stripe_customer_id,
            )
            return
        await self.store.upsert_subscription(
            subscription["id"], customer.id, **subscription_record_fields(subscription)
        )

    @staticmethod
    def _summarize(subscription: Dict[str, Any]) -> Dict[str, Any]:
        pause = subscription.get("pause_collection") or None
        return {
            "id": subscription["id"],
            "status": subscription.get("status"),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
            "cancel_at": subscription.get("cancel_at"),
            "current_period_end": subscription.get("current_period_end"),
            "pause_collection": (
                {"behavior": pause.get("behavior"), "resumes_at": pause.get("resumes_at")}
                if pause
                else None
            ),
        }

    async def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """List a customer's most recent invoices."""
        _require_prefixed_id(customer_id, "cus_", "customer_id")
        if not 1 <= limit <= 100:
            raise BillingValidationError("limit must be between 1 and 100")

        invoices = await self.client.list_invoices(customer=customer_id, limit=limit)
        return [
            {
                "id": invoice["id"],
                "number": invoice.get("number"),
                "status": invoice.get("status"),
                "amount_due": invoice.get("amount_due", 0),
                "amount_paid": invoice.get("amount_paid", 0),
                "currency": invoice.get("currency"),
                "created": invoice.get("created"),
                "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                "invoice_pdf": invoice.get("invoice_pdf"),
            }
            for invoice in invoices
        ]

    async def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        """Create a billing portal session."""
        _require_prefixed_id(customer_id, "cus_", "customer_id")
        _require_url(return_url, "return_url")
        session = await self.client.create_portal_session(customer_id, return_url)
        return {"url": session.get("url")}

    async def promo_analytics(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Per-coupon usage and discount totals.

        Bulk list queries run under the rate-limit retry profile.
        """
        if not 1 <= limit <= 100:
            raise BillingValidationError("limit must be between 1 and 100")

        coupons = await self.client.list_coupons(limit=limit, profile=self.analytics_profile)
        invoices = await self.client.list_invoices(limit=100, profile=self.analytics_profile)

        report = []
        for coupon in coupons:
            discounted = [
                invoice for invoice in invoices if _invoice_coupon_id(invoice) == coupon["id"]
            ]
            total_discount = sum(_invoice_discount_amount(invoice, coupon) for invoice in discounted)
            report.append(
                {
                    "coupon_id": coupon["id"],
                    "name": coupon.get("name"),
                    "valid": bool(coupon.get("valid", False)),
                    "times_redeemed": coupon.get("times_redeemed", 0),
                    "max_redemptions": coupon.get("max_redemptions"),
                    "invoice_count": len(discounted),
                    "total_discount_amount": total_discount,
                }
            )
        return report


def _invoice_coupon_id(invoice: Dict[str, Any]) -> Optional[str]:
    discount = invoice.get("discount") or {}
    coupon = discount.get("coupon") or {}
    return coupon.get("id")


def _invoice_discount_amount(invoice: Dict[str, Any], coupon: Dict[str, Any]) -> int:
    amounts = invoice.get("total_discount_amounts") or []
    if amounts:
        return sum(item.get("amount", 0) for item in amounts)
    if coupon.get("amount_off"):
        return coupon["amount_off"]
    return round(invoice.get("total", 0) * (coupon.get("percent_off") or 0) / 100)
