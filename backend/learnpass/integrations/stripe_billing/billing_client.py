"""
Card billing client built on the Stripe SDK.

One StripeBillingClient is created at application startup and shared by
every request; it holds the API key and an HTTPX transport with a
request timeout. Methods return plain dicts so callers never depend on
SDK object types. SDK failures (including timeouts) are raised as
StripeBillingError.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

logger = logging.getLogger(__name__)


class StripeBillingError(Exception):
    """Error from the card billing API."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class WebhookSignatureError(Exception):
    """Webhook payload could not be verified."""


def to_plain_dict(obj: Any) -> Dict[str, Any]:
    """Convert an SDK object (or a dict) into a plain JSON-compatible dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


def construct_event(payload: bytes, sig_header: Optional[str], webhook_secret: Optional[str]) -> Dict[str, Any]:
    """Verify a webhook signature and return the event as a dict."""
    if not webhook_secret:
        raise WebhookSignatureError("Webhook secret not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}")
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(f"Invalid signature: {e}")
    return to_plain_dict(event)


class StripeBillingClient:
    """
    Async wrapper over the subscription, invoice and refund APIs.

    Handles:
    - Reading subscriptions, invoices and customers
    - Scheduling/cancelling, pausing and resuming subscriptions
    - Swapping a subscription's price
    - Applying retention coupons
    - Issuing refunds
    """

    def __init__(self, api_key: str, timeout_seconds: float = 20.0, max_network_retries: int = 0):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self._http_client = stripe.HTTPXClient(timeout=timeout_seconds)
        self._client = stripe.StripeClient(
            api_key,
            http_client=self._http_client,
            max_network_retries=max_network_retries,
        )
        self.timeout_seconds = timeout_seconds

    async def close(self) -> None:
        await self._http_client.close_async()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _call(self, operation: str, coro) -> Dict[str, Any]:
        try:
            result = await coro
        except stripe.StripeError as e:
            message = e.user_message or str(e)
            logger.error("Stripe API call failed", extra={
                "operation": operation,
                "stripe_code": e.code,
                "http_status": e.http_status,
                "error_type": type(e).__name__,
            })
            raise StripeBillingError(message, code=e.code, details={"http_status": e.http_status})
        return to_plain_dict(result)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call(
            "subscriptions.retrieve",
            self._client.v1.subscriptions.retrieve_async(subscription_id),
        )

    async def retrieve_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return await self._call(
            "invoices.retrieve",
            self._client.v1.invoices.retrieve_async(invoice_id, params={"expand": ["payments"]}),
        )

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return await self._call(
            "customers.retrieve",
            self._client.v1.customers.retrieve_async(customer_id),
        )

    # ------------------------------------------------------------------
    # Subscription mutations
    # ------------------------------------------------------------------

    async def _update_subscription(self, subscription_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Updating subscription", extra={
            "subscription_id": subscription_id,
            "fields": sorted(params),
        })
        return await self._call(
            "subscriptions.update",
            self._client.v1.subscriptions.update_async(subscription_id, params=params),
        )

    async def set_cancel_at_period_end(self, subscription_id: str, value: bool) -> Dict[str, Any]:
        return await self._update_subscription(subscription_id, {"cancel_at_period_end": value})

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> Dict[str, Any]:
        if at_period_end:
            return await self.set_cancel_at_period_end(subscription_id, True)
        logger.info("Cancelling subscription immediately", extra={"subscription_id": subscription_id})
        return await self._call(
            "subscriptions.cancel",
            self._client.v1.subscriptions.cancel_async(subscription_id),
        )

    async def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self.set_cancel_at_period_end(subscription_id, False)

    async def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._update_subscription(
            subscription_id,
            {"pause_collection": {"behavior": "mark_uncollectible"}},
        )

    async def resume_from_pause(self, subscription_id: str) -> Dict[str, Any]:
        # Empty string unsets pause_collection
        return await self._update_subscription(subscription_id, {"pause_collection": ""})

    async def update_subscription_price(
        self,
        subscription_id: str,
        price_id: str,
        item_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Swap the price of the first subscription item."""
        if item_id is None:
            subscription = await self.retrieve_subscription(subscription_id)
            items = (subscription.get("items") or {}).get("data") or []
            if not items:
                raise StripeBillingError(
                    "Subscription has no items to update",
                    code="no_items",
                    details={"subscription_id": subscription_id},
                )
            item_id = items[0]["id"]
        return await self._update_subscription(
            subscription_id,
            {
                "items": [{"id": item_id, "price": price_id}],
                "proration_behavior": "create_prorations",
            },
        )

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------

    async def ensure_coupon(self, coupon_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Return the coupon, creating it with params when it does not exist yet."""
        try:
            return await self._call(
                "coupons.retrieve",
                self._client.v1.coupons.retrieve_async(coupon_id),
            )
        except StripeBillingError as e:
            if e.code != "resource_missing":
                raise
        logger.info("Creating coupon", extra={"coupon_id": coupon_id})
        return await self._call(
            "coupons.create",
            self._client.v1.coupons.create_async(params={"id": coupon_id, **params}),
        )

    async def apply_coupon(self, subscription_id: str, coupon_id: str) -> Dict[str, Any]:
        """Discount the subscription and withdraw any scheduled cancellation."""
        return await self._update_subscription(
            subscription_id,
            {"discounts": [{"coupon": coupon_id}], "cancel_at_period_end": False},
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def create_refund(
        self,
        payment_intent_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
    ) -> Dict[str, Any]:
        if not payment_intent_id and not charge_id:
            raise ValueError("A payment intent or charge is required for a refund")
        params: Dict[str, Any] = {}
        if payment_intent_id:
            params["payment_intent"] = payment_intent_id
        else:
            params["charge"] = charge_id
        if amount_cents is not None:
            params["amount"] = amount_cents
        logger.info("Creating refund", extra={
            "payment_intent_id": payment_intent_id,
            "charge_id": charge_id,
            "amount_cents": amount_cents,
        })
        return await self._call(
            "refunds.create",
            self._client.v1.refunds.create_async(params=params),
        )


def _ref_id(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


def _invoice_payment_ref(invoice: Mapping[str, Any], field: str) -> Optional[str]:
    # Older API versions put the reference on the invoice, newer ones on its payments list
    ref = _ref_id(invoice.get(field))
    if ref:
        return ref
    for payment in (invoice.get("payments") or {}).get("data") or []:
        ref = _ref_id((payment.get("payment") or {}).get(field))
        if ref:
            return ref
    return None


def invoice_payment_intent(invoice: Mapping[str, Any]) -> Optional[str]:
    """Payment intent id of an invoice, from either invoice API shape."""
    return _invoice_payment_ref(invoice, "payment_intent")


def invoice_charge(invoice: Mapping[str, Any]) -> Optional[str]:
    """Charge id of an invoice, from either invoice API shape."""
    return _invoice_payment_ref(invoice, "charge")
