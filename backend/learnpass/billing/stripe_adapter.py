"""
Card billing source adapter.

Translates card-billing webhook events into subscription mirror,
entitlement and revenue ledger writes. The same subscription derivation
path (apply_subscription) is reused by the admin gateway and the
reconciliation job, so every writer derives state identically.

Handled events:
- customer.subscription.created / updated / deleted
- invoice.payment_succeeded / invoice.payment_failed
- payment_intent.succeeded (one-off purchases with a product_type)
- charge.refunded / refund.created

Anything else is acknowledged and ignored.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from learnpass.billing.derivation import (
    StripeSubscriptionState,
    SubscriptionStore,
    from_epoch_seconds,
)
from learnpass.billing.ledger import (
    RevenueLedger,
    completed_payload,
    failed_payload,
    refund_payload,
)
from learnpass.billing.plan_catalog import PlanCatalog, UnknownProductError
from learnpass.integrations.stripe_billing.billing_client import (
    StripeBillingClient,
    StripeBillingError,
    invoice_charge,
    invoice_payment_intent,
)
from learnpass.models.base import utcnow
from learnpass.models.entitlement import Entitlement
from learnpass.models.profile import Profile
from learnpass.models.revenue_ledger import ProductType
from learnpass.models.subscription_record import PaymentSource, SubscriptionRecord
from learnpass.platform.errors import ExternalProviderError

logger = logging.getLogger(__name__)

SOURCE = PaymentSource.STRIPE.value

ONE_OFF_PRODUCT_TYPES = {
    ProductType.CERTIFICATION.value,
    ProductType.EVENT.value,
    ProductType.SEATS.value,
}


@dataclass
class EventResult:
    """Outcome of processing one provider event."""

    event_type: str
    handled: bool = True
    user_id: Optional[str] = None
    ledger_inserted: Optional[bool] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "handled": self.handled,
            "user_id": self.user_id,
            "ledger_inserted": self.ledger_inserted,
            **self.details,
        }


def _id_of(value: Any) -> Optional[str]:
    """Ids arrive either bare or as expanded objects."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


def _metadata_user_id(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not metadata:
        return None
    return metadata.get("user_id") or metadata.get("userId")


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = _id_of(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _id_of(details.get("subscription"))


def invoice_metadata(invoice: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    details = (
        invoice.get("subscription_details")
        or (invoice.get("parent") or {}).get("subscription_details")
        or {}
    )
    merged.update(details.get("metadata") or {})
    merged.update(invoice.get("metadata") or {})
    return merged


def invoice_price_id(invoice: Mapping[str, Any]) -> Optional[str]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        price = line.get("price")
        if isinstance(price, Mapping) and price.get("id"):
            return price["id"]
        price_details = (line.get("pricing") or {}).get("price_details") or {}
        if price_details.get("price"):
            return _id_of(price_details["price"])
    return None


class StripeEventProcessor:
    """Applies card-billing events; commits once per event."""

    def __init__(
        self,
        db_session: Session,
        catalog: PlanCatalog,
        client: Optional[StripeBillingClient] = None,
    ):
        self.db = db_session
        self.catalog = catalog
        self.client = client
        self.store = SubscriptionStore(db_session, catalog)
        self.ledger = RevenueLedger(db_session)

    # ------------------------------------------------------------------
    # User resolution
    # ------------------------------------------------------------------

    def _profile_for_customer(self, customer_id: Optional[str]) -> Optional[Profile]:
        if not customer_id:
            return None
        return self.db.query(Profile).filter(Profile.stripe_customer_id == customer_id).first()

    def _link_customer(self, user_id: str, customer_id: Optional[str]) -> None:
        if not customer_id:
            return
        profile = self.db.query(Profile).filter(Profile.id == user_id).first()
        if profile is not None and not profile.stripe_customer_id:
            profile.stripe_customer_id = customer_id

    async def resolve_user_id(
        self,
        metadata: Optional[Mapping[str, Any]],
        customer_id: Optional[str],
    ) -> Optional[str]:
        """Object metadata, then the linked profile, then the customer's metadata."""
        user_id = _metadata_user_id(metadata)
        if user_id:
            self._link_customer(user_id, customer_id)
            return user_id

        profile = self._profile_for_customer(customer_id)
        if profile is not None:
            return profile.id

        if customer_id and self.client is not None:
            try:
                customer = await self.client.retrieve_customer(customer_id)
            except StripeBillingError as e:
                raise ExternalProviderError("stripe", e.message, provider_code=e.code)
            user_id = _metadata_user_id(customer.get("metadata"))
            if user_id:
                self._link_customer(user_id, customer_id)
                return user_id
        return None

    # ------------------------------------------------------------------
    # Shared derivation path
    # ------------------------------------------------------------------

    async def apply_subscription(
        self,
        subscription: Mapping[str, Any],
        user_id: Optional[str] = None,
    ) -> Optional[Tuple[SubscriptionRecord, Entitlement]]:
        """
        Derive and upsert from a provider subscription object.

        Flushes only; callers commit. Returns None when the subscription
        cannot be tied to a user.
        """
        state = StripeSubscriptionState.from_provider(subscription)
        derived = state.derive(self.catalog)

        if user_id is None:
            existing = self.store.find_record_by_external_id(SOURCE, state.subscription_id)
            if existing is not None and not state.user_id_hint:
                user_id = existing.user_id
            else:
                user_id = await self.resolve_user_id(state.metadata, state.customer_id)
        if user_id is None:
            logger.warning("Subscription has no resolvable user, skipping", extra={
                "subscription_id": state.subscription_id,
                "customer_id": state.customer_id,
            })
            return None

        self._link_customer(user_id, state.customer_id)
        return self.store.apply(user_id, derived)

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    async def process(self, event: Mapping[str, Any]) -> EventResult:
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        handler = {
            "customer.subscription.created": self._on_subscription,
            "customer.subscription.updated": self._on_subscription,
            "customer.subscription.deleted": self._on_subscription,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
            "payment_intent.succeeded": self._on_payment_intent,
            "charge.refunded": self._on_charge_refunded,
            "refund.created": self._on_refund,
        }.get(event_type)

        if handler is None:
            logger.info("Ignoring unhandled event type", extra={
                "event_type": event_type,
                "event_id": event.get("id"),
            })
            return EventResult(event_type=event_type, handled=False)

        try:
            result = await handler(event, obj)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Failed to process billing event", extra={
                "event_type": event_type,
                "event_id": event.get("id"),
            })
            raise

        logger.info("Processed billing event", extra={
            "event_type": event_type,
            "event_id": event.get("id"),
            "user_id": result.user_id,
            "ledger_inserted": result.ledger_inserted,
        })
        return result

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_subscription(self, event: Mapping, subscription: Mapping) -> EventResult:
        applied = await self.apply_subscription(subscription)
        if applied is None:
            return EventResult(event_type=event["type"], handled=False)
        record, entitlement = applied
        return EventResult(
            event_type=event["type"],
            user_id=record.user_id,
            details={"status": record.status, "plan": record.plan},
        )

    def _plan_for_price(self, price_id: Optional[str]) -> Optional[str]:
        """Plan context for ledger rows; money is recorded even without one."""
        if not price_id:
            return None
        try:
            return self.catalog.plan_for_stripe_price(price_id).plan.value
        except UnknownProductError:
            logger.warning("Ledger entry for unknown price", extra={"price_id": price_id})
            return None

    async def _on_invoice_paid(self, event: Mapping, invoice: Mapping) -> EventResult:
        amount = int(invoice.get("amount_paid") or 0)
        if amount <= 0:
            return EventResult(event_type=event["type"], handled=False, details={"reason": "zero_amount"})

        user_id = await self.resolve_user_id(invoice_metadata(invoice), _id_of(invoice.get("customer")))
        if user_id is None:
            logger.warning("Paid invoice has no resolvable user", extra={"invoice_id": invoice.get("id")})
            return EventResult(event_type=event["type"], handled=False)

        payment_intent_id = invoice_payment_intent(invoice)
        charge_id = invoice_charge(invoice)
        subscription_id = invoice_subscription_id(invoice)
        transitions = invoice.get("status_transitions") or {}
        occurred_at = from_epoch_seconds(transitions.get("paid_at") or invoice.get("created")) or utcnow()

        payload = completed_payload(
            SOURCE,
            user_id=user_id,
            amount_cents=amount,
            occurred_at=occurred_at,
            product_type=ProductType.SUBSCRIPTION.value,
            plan=self._plan_for_price(invoice_price_id(invoice)),
            currency=invoice.get("currency") or "usd",
            subscription_id=subscription_id,
            metadata={
                "invoice_id": invoice.get("id"),
                "payment_intent_id": payment_intent_id,
                "charge_id": charge_id,
                "event_id": event.get("id"),
            },
        )
        result = self.ledger.record(SOURCE, invoice["id"], payload)
        return EventResult(event_type=event["type"], user_id=user_id, ledger_inserted=result.inserted)

    async def _on_invoice_failed(self, event: Mapping, invoice: Mapping) -> EventResult:
        user_id = await self.resolve_user_id(invoice_metadata(invoice), _id_of(invoice.get("customer")))
        if user_id is None:
            return EventResult(event_type=event["type"], handled=False)

        payload = failed_payload(
            SOURCE,
            user_id=user_id,
            amount_cents=int(invoice.get("amount_due") or 0),
            occurred_at=from_epoch_seconds(event.get("created")) or utcnow(),
            plan=self._plan_for_price(invoice_price_id(invoice)),
            currency=invoice.get("currency") or "usd",
            subscription_id=invoice_subscription_id(invoice),
            metadata={
                "invoice_id": invoice.get("id"),
                "attempt_count": invoice.get("attempt_count"),
            },
        )
        # Each failed attempt is its own event; the invoice id is kept for the success
        result = self.ledger.record(SOURCE, event["id"], payload)
        return EventResult(event_type=event["type"], user_id=user_id, ledger_inserted=result.inserted)

    async def _on_payment_intent(self, event: Mapping, intent: Mapping) -> EventResult:
        metadata = intent.get("metadata") or {}
        product_type = metadata.get("product_type") or metadata.get("type")
        if product_type not in ONE_OFF_PRODUCT_TYPES:
            # Subscription payments are recorded from their invoice
            return EventResult(event_type=event["type"], handled=False, details={"reason": "not_one_off"})

        user_id = await self.resolve_user_id(metadata, _id_of(intent.get("customer")))
        if user_id is None:
            logger.warning("Payment has no resolvable user", extra={"payment_intent_id": intent.get("id")})
            return EventResult(event_type=event["type"], handled=False)

        charge_id = _id_of(intent.get("latest_charge"))
        payload = completed_payload(
            SOURCE,
            user_id=user_id,
            amount_cents=int(intent.get("amount_received") or intent.get("amount") or 0),
            occurred_at=from_epoch_seconds(intent.get("created")) or utcnow(),
            product_type=product_type,
            currency=intent.get("currency") or "usd",
            metadata={
                "payment_intent_id": intent.get("id"),
                "charge_id": charge_id,
                "item_id": metadata.get("item_id"),
                "event_id": event.get("id"),
            },
        )
        result = self.ledger.record(SOURCE, intent["id"], payload)
        return EventResult(event_type=event["type"], user_id=user_id, ledger_inserted=result.inserted)

    async def _record_refund(
        self,
        refund_id: str,
        amount_cents: int,
        charge_id: Optional[str],
        payment_intent_id: Optional[str],
        invoice_id: Optional[str],
        metadata: Optional[Mapping[str, Any]],
        customer_id: Optional[str],
        occurred_at,
        currency: str,
    ) -> Tuple[Optional[str], Optional[bool]]:
        user_id = await self.resolve_user_id(metadata, customer_id)
        original = self.ledger.find_original(
            SOURCE,
            [invoice_id, payment_intent_id, charge_id],
            user_id=user_id,
        )
        if user_id is None and original is not None:
            user_id = original.user_id
        if user_id is None:
            logger.warning("Refund has no resolvable user", extra={"refund_id": refund_id})
            return None, None
        if original is None:
            logger.warning("Refund without a matching original entry", extra={
                "refund_id": refund_id,
                "charge_id": charge_id,
                "payment_intent_id": payment_intent_id,
            })

        payload = refund_payload(
            SOURCE,
            user_id=user_id,
            refund_amount_cents=amount_cents,
            occurred_at=occurred_at,
            original=original,
            refund_of=invoice_id or payment_intent_id or charge_id,
            currency=currency,
            metadata={
                "refund_id": refund_id,
                "charge_id": charge_id,
                "payment_intent_id": payment_intent_id,
            },
        )
        result = self.ledger.record(SOURCE, refund_id, payload)
        return user_id, result.inserted

    async def _on_charge_refunded(self, event: Mapping, charge: Mapping) -> EventResult:
        refunds = (charge.get("refunds") or {}).get("data") or []
        if not refunds:
            # Newer API versions omit the list; refund.created carries each refund
            return EventResult(event_type=event["type"], handled=False, details={"reason": "no_refund_list"})

        user_id = None
        inserted_any = False
        for refund in refunds:
            if refund.get("status") in ("failed", "canceled"):
                continue
            user_id, inserted = await self._record_refund(
                refund_id=refund["id"],
                amount_cents=int(refund.get("amount") or 0),
                charge_id=charge.get("id"),
                payment_intent_id=_id_of(charge.get("payment_intent")),
                invoice_id=_id_of(charge.get("invoice")),
                metadata=charge.get("metadata"),
                customer_id=_id_of(charge.get("customer")),
                occurred_at=from_epoch_seconds(refund.get("created")) or utcnow(),
                currency=charge.get("currency") or "usd",
            )
            inserted_any = inserted_any or bool(inserted)
        return EventResult(event_type=event["type"], user_id=user_id, ledger_inserted=inserted_any)

    async def _on_refund(self, event: Mapping, refund: Mapping) -> EventResult:
        if refund.get("status") in ("failed", "canceled"):
            return EventResult(event_type=event["type"], handled=False, details={"reason": refund.get("status")})
        user_id, inserted = await self._record_refund(
            refund_id=refund["id"],
            amount_cents=int(refund.get("amount") or 0),
            charge_id=_id_of(refund.get("charge")),
            payment_intent_id=_id_of(refund.get("payment_intent")),
            invoice_id=None,
            metadata=refund.get("metadata"),
            customer_id=None,
            occurred_at=from_epoch_seconds(refund.get("created")) or utcnow(),
            currency=refund.get("currency") or "usd",
        )
        if user_id is None:
            return EventResult(event_type=event["type"], handled=False)
        return EventResult(event_type=event["type"], user_id=user_id, ledger_inserted=inserted)
