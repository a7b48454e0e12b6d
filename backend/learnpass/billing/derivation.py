"""
Derivation of canonical access state from per-source provider state.

Each payment source has its own state variant (StripeSubscriptionState,
AppleReceiptState) that knows how to read the provider's payload and
derive a DerivedState. SubscriptionStore then upserts the raw mirror row
for (user, source) and recomputes the user's single Entitlement from all
of their mirror rows.

Writes are flushed, never committed here; the calling adapter or gateway
commits once every step has succeeded.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from learnpass.billing.plan_catalog import Plan, PlanCatalog
from learnpass.models.base import utcnow
from learnpass.models.entitlement import Entitlement, EntitlementStatus
from learnpass.models.subscription_record import PaymentSource, SubscriptionRecord
from learnpass.platform.errors import ValidationError

logger = logging.getLogger(__name__)


# Card-billing subscription status -> canonical status
STRIPE_STATUS_MAP = {
    "active": EntitlementStatus.ACTIVE,
    "trialing": EntitlementStatus.ACTIVE,
    "past_due": EntitlementStatus.PAST_DUE,
    "unpaid": EntitlementStatus.PAST_DUE,
    "incomplete": EntitlementStatus.PAST_DUE,
    "canceled": EntitlementStatus.CANCELED,
    "incomplete_expired": EntitlementStatus.EXPIRED,
    "paused": EntitlementStatus.PAUSED,
}

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def from_epoch_seconds(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def from_epoch_millis(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class DerivedState:
    """Canonical view of one source's subscription, ready to persist."""

    source: str
    external_id: str
    plan: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    paused: bool = False
    plan_assumed: bool = False
    provider_metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StripeSubscriptionState:
    """A card-billing subscription object as returned by the provider."""

    subscription_id: str
    provider_status: str
    price_id: Optional[str]
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    pause_collection: Optional[dict] = None
    metadata: dict = field(default_factory=dict)
    item_id: Optional[str] = None

    @classmethod
    def from_provider(cls, subscription: Mapping[str, Any]) -> "StripeSubscriptionState":
        subscription_id = subscription.get("id")
        if not subscription_id:
            raise ValidationError("Subscription payload has no id")

        items = (subscription.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or subscription.get("plan") or {}

        # Newer API versions report the billing period on the item
        period_start = subscription.get("current_period_start") or first_item.get("current_period_start")
        period_end = subscription.get("current_period_end") or first_item.get("current_period_end")

        customer = subscription.get("customer")
        if isinstance(customer, Mapping):
            customer = customer.get("id")

        return cls(
            subscription_id=subscription_id,
            provider_status=str(subscription.get("status") or ""),
            price_id=price.get("id"),
            customer_id=customer,
            current_period_start=from_epoch_seconds(period_start),
            current_period_end=from_epoch_seconds(period_end),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            pause_collection=subscription.get("pause_collection") or None,
            metadata=dict(subscription.get("metadata") or {}),
            item_id=first_item.get("id"),
        )

    @property
    def user_id_hint(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.metadata.get("userId")

    def derive(self, catalog: PlanCatalog, now: Optional[datetime] = None) -> DerivedState:
        now = now or utcnow()
        match = catalog.plan_for_stripe_price(self.price_id)

        status = STRIPE_STATUS_MAP.get(self.provider_status)
        if status is None:
            raise ValidationError(
                f"Unrecognised subscription status: {self.provider_status}",
                details={"subscription_id": self.subscription_id},
            )
        paused = self.pause_collection is not None or status == EntitlementStatus.PAUSED
        if paused and status == EntitlementStatus.ACTIVE:
            status = EntitlementStatus.PAUSED
        if (
            status == EntitlementStatus.ACTIVE
            and self.current_period_end is not None
            and self.current_period_end <= now
        ):
            status = EntitlementStatus.EXPIRED

        return DerivedState(
            source=PaymentSource.STRIPE.value,
            external_id=self.subscription_id,
            plan=match.plan.value,
            status=status.value,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
            paused=paused,
            provider_metadata={
                "provider_status": self.provider_status,
                "price_id": self.price_id,
                "customer_id": self.customer_id,
                "pause_collection": self.pause_collection,
            },
        )


@dataclass(frozen=True)
class AppleReceiptState:
    """The relevant purchase from a verified App Store receipt."""

    product_id: str
    transaction_id: Optional[str]
    original_transaction_id: str
    purchase_date: Optional[datetime]
    expires_date: Optional[datetime]
    cancellation_date: Optional[datetime] = None
    auto_renew: bool = True
    environment: Optional[str] = None

    @classmethod
    def from_verification(
        cls,
        response: Mapping[str, Any],
        transaction_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> "AppleReceiptState":
        """
        Pick the purchase to mirror from a status-0 verification response.

        The entry matching transaction_id wins; otherwise the purchase
        with the latest expiry (or purchase) date.
        """
        purchases: List[Mapping[str, Any]] = list(
            response.get("latest_receipt_info")
            or (response.get("receipt") or {}).get("in_app")
            or []
        )
        if not purchases:
            raise ValidationError("Receipt contains no purchases")

        chosen = None
        if transaction_id:
            chosen = next(
                (p for p in purchases if str(p.get("transaction_id")) == str(transaction_id)),
                None,
            )
        if chosen is None:
            chosen = max(
                purchases,
                key=lambda p: int(p.get("expires_date_ms") or p.get("purchase_date_ms") or 0),
            )

        original_id = str(chosen.get("original_transaction_id") or chosen.get("transaction_id") or "")
        if not original_id:
            raise ValidationError("Receipt purchase has no transaction id")

        auto_renew = True
        for info in response.get("pending_renewal_info") or []:
            if str(info.get("original_transaction_id")) == original_id:
                auto_renew = str(info.get("auto_renew_status", "1")) == "1"
                break

        return cls(
            product_id=str(chosen.get("product_id") or product_id or ""),
            transaction_id=str(chosen.get("transaction_id") or transaction_id or "") or None,
            original_transaction_id=original_id,
            purchase_date=from_epoch_millis(chosen.get("purchase_date_ms")),
            expires_date=from_epoch_millis(chosen.get("expires_date_ms")),
            cancellation_date=from_epoch_millis(chosen.get("cancellation_date_ms")),
            auto_renew=auto_renew,
            environment=response.get("environment"),
        )

    def derive(self, catalog: PlanCatalog, now: Optional[datetime] = None) -> DerivedState:
        now = now or utcnow()
        match = catalog.plan_for_apple_product(self.product_id)

        if self.cancellation_date is not None:
            status = EntitlementStatus.CANCELED
        elif self.expires_date is None or self.expires_date > now:
            status = EntitlementStatus.ACTIVE
        else:
            status = EntitlementStatus.EXPIRED

        metadata = {
            "product_id": self.product_id,
            "transaction_id": self.transaction_id,
            "environment": self.environment,
        }
        if match.assumed:
            metadata["plan_assumed"] = True

        return DerivedState(
            source=PaymentSource.APPLE.value,
            external_id=self.original_transaction_id,
            plan=match.plan.value,
            status=status.value,
            current_period_start=self.purchase_date,
            current_period_end=self.expires_date,
            cancel_at_period_end=not self.auto_renew,
            plan_assumed=match.assumed,
            provider_metadata=metadata,
        )


class SubscriptionStore:
    """Upserts for subscription_records and entitlements."""

    def __init__(self, db_session: Session, catalog: PlanCatalog):
        self.db = db_session
        self.catalog = catalog

    def get_entitlement(self, user_id: str) -> Optional[Entitlement]:
        return self.db.query(Entitlement).filter(Entitlement.user_id == user_id).first()

    def ensure_entitlement(self, user_id: str) -> Entitlement:
        """Return the user's entitlement, creating the free/active row if missing."""
        entitlement = self.get_entitlement(user_id)
        if entitlement is None:
            entitlement = Entitlement(
                user_id=user_id,
                plan=Plan.FREE.value,
                status=EntitlementStatus.ACTIVE.value,
                cancel_at_period_end=False,
            )
            self.db.add(entitlement)
            self.db.flush()
            logger.info("Created free entitlement", extra={"user_id": user_id})
        return entitlement

    def get_record(self, user_id: str, source: str) -> Optional[SubscriptionRecord]:
        return self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.source == source,
        ).first()

    def find_record_by_external_id(self, source: str, external_id: str) -> Optional[SubscriptionRecord]:
        return self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.source == source,
            SubscriptionRecord.external_id == external_id,
        ).order_by(SubscriptionRecord.updated_at.desc()).first()

    def records_for_user(self, user_id: str) -> List[SubscriptionRecord]:
        return self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.user_id == user_id,
        ).all()

    def apply(
        self,
        user_id: str,
        derived: DerivedState,
        now: Optional[datetime] = None,
    ) -> Tuple[SubscriptionRecord, Entitlement]:
        """Overwrite the (user, source) mirror row and re-derive the entitlement."""
        now = now or utcnow()
        record = self.get_record(user_id, derived.source)
        if record is None:
            record = SubscriptionRecord(user_id=user_id, source=derived.source)
            self.db.add(record)

        record.external_id = derived.external_id
        record.status = derived.status
        record.plan = derived.plan
        record.current_period_start = derived.current_period_start
        record.current_period_end = derived.current_period_end
        record.cancel_at_period_end = derived.cancel_at_period_end
        if derived.paused:
            record.paused_at = record.paused_at or now
        else:
            record.paused_at = None
        record.provider_metadata = derived.provider_metadata or None
        record.updated_at = now
        self.db.flush()

        logger.info("Subscription record upserted", extra={
            "user_id": user_id,
            "source": derived.source,
            "external_id": derived.external_id,
            "status": derived.status,
            "plan": derived.plan,
            "plan_assumed": derived.plan_assumed,
        })

        entitlement = self.recompute_entitlement(user_id, now=now, latest=record)
        return record, entitlement

    def _is_current_paid(self, record: SubscriptionRecord, now: datetime) -> bool:
        period_end = _aware(record.current_period_end)
        return (
            record.status == EntitlementStatus.ACTIVE.value
            and self.catalog.is_paid(record.plan)
            and (period_end is None or period_end > now)
        )

    def recompute_entitlement(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        latest: Optional[SubscriptionRecord] = None,
    ) -> Entitlement:
        """
        Merge every mirror row of the user into the single entitlement.

        The active paid row with the latest period end wins. With none,
        the most recently written row supplies status and period, and the
        entitlement keeps its prior plan.
        """
        now = now or utcnow()
        entitlement = self.ensure_entitlement(user_id)
        records = self.records_for_user(user_id)
        if not records:
            return entitlement

        current = [r for r in records if self._is_current_paid(r, now)]
        if current:
            best = max(current, key=lambda r: _aware(r.current_period_end) or _FAR_FUTURE)
            entitlement.plan = best.plan
            entitlement.status = EntitlementStatus.ACTIVE.value
        else:
            best = latest or max(records, key=lambda r: _aware(r.updated_at) or now)
            status = best.status
            if status == EntitlementStatus.ACTIVE.value:
                # Lapsed (or unpaid) row: never grant access from it
                status = EntitlementStatus.EXPIRED.value
            entitlement.status = status

        entitlement.current_period_start = best.current_period_start
        entitlement.current_period_end = best.current_period_end
        entitlement.cancel_at_period_end = bool(best.cancel_at_period_end)
        entitlement.source = best.source
        entitlement.external_subscription_id = best.external_id
        entitlement.updated_at = now
        self.db.flush()

        logger.info("Entitlement recomputed", extra={
            "user_id": user_id,
            "plan": entitlement.plan,
            "status": entitlement.status,
            "source": entitlement.source,
            "cancel_at_period_end": entitlement.cancel_at_period_end,
        })
        return entitlement

    def set_cancel_at_period_end(self, user_id: str, source: str, value: bool) -> Optional[Entitlement]:
        """Flip the scheduled-cancellation flag on the mirror row and the entitlement."""
        record = self.get_record(user_id, source)
        if record is not None:
            record.cancel_at_period_end = value
        entitlement = self.get_entitlement(user_id)
        if entitlement is not None and entitlement.source == source:
            entitlement.cancel_at_period_end = value
        self.db.flush()
        return entitlement
