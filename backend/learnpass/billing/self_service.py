"""
Member-initiated changes to their own card-billing subscription.

- cancel: the subscription ends at the close of the current period; an
  optional exit survey is stored with the reason given
- retention offer: once per user, a free-months coupon is applied and any
  scheduled cancellation is withdrawn

Both follow the admin gateway's ordering. The provider is called first and
the subscription it returns runs through the shared derivation path, so
Entitlement and Subscription Record move together. A provider failure
writes nothing locally; a local failure after provider success is reported
with resync_required=True.

In-app purchase subscriptions are managed by the store and are rejected.
"""

import calendar
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from learnpass.billing.derivation import StripeSubscriptionState, SubscriptionStore
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.billing.stripe_adapter import StripeEventProcessor
from learnpass.config.settings import DEFAULT_RETENTION_COUPON_ID
from learnpass.integrations.stripe_billing.billing_client import (
    StripeBillingClient,
    StripeBillingError,
)
from learnpass.models.base import utcnow
from learnpass.models.entitlement import Entitlement, EntitlementStatus
from learnpass.models.retention import ExitSurvey, RetentionOffer, RetentionOfferType
from learnpass.models.subscription_record import PaymentSource
from learnpass.platform.errors import (
    AppError,
    ConflictError,
    ExternalProviderError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RETENTION_MONTHS_FREE = 2

RETENTION_COUPON_PARAMS = {
    "percent_off": 100,
    "duration": "repeating",
    "duration_in_months": RETENTION_MONTHS_FREE,
    "name": "Retention Offer - 2 Months Free",
    "metadata": {"type": "retention"},
}


def add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SubscriptionSelfService:
    """Cancellation and retention for the caller's own subscription."""

    def __init__(
        self,
        db_session: Session,
        catalog: PlanCatalog,
        client: StripeBillingClient,
        retention_coupon_id: str = DEFAULT_RETENTION_COUPON_ID,
    ):
        self.db = db_session
        self.catalog = catalog
        self.client = client
        self.retention_coupon_id = retention_coupon_id
        self.store = SubscriptionStore(db_session, catalog)
        self.processor = StripeEventProcessor(db_session, catalog, client)

    def _active_card_entitlement(self, user_id: str, store_message: str) -> Entitlement:
        entitlement = self.store.get_entitlement(user_id)
        if entitlement is None:
            raise NotFoundError("Subscription")
        if entitlement.source != PaymentSource.STRIPE.value or not entitlement.external_subscription_id:
            raise ValidationError(store_message, details={"source": entitlement.source})
        if entitlement.status != EntitlementStatus.ACTIVE.value:
            raise ValidationError("Subscription is not active", details={"status": entitlement.status})
        return entitlement

    async def _persist(self, user_id: str, subscription: Dict[str, Any], operation: str) -> bool:
        """Run the provider's subscription through derivation and commit; False if not persisted."""
        try:
            applied = await self.processor.apply_subscription(subscription, user_id=user_id)
            self.db.commit()
        except (SQLAlchemyError, AppError):
            self.db.rollback()
            logger.exception("Provider change applied but local state not persisted", extra={
                "user_id": user_id,
                "operation": operation,
                "subscription_id": subscription.get("id"),
            })
            return False
        return applied is not None

    async def cancel_at_period_end(
        self,
        user_id: str,
        reason: Optional[str] = None,
        details: Optional[str] = None,
    ) -> Dict[str, Any]:
        entitlement = self._active_card_entitlement(
            user_id,
            "No card subscription found. App Store subscriptions are cancelled in the Apple ID settings.",
        )
        subscription_id = entitlement.external_subscription_id
        plan = entitlement.plan

        try:
            subscription = await self.client.set_cancel_at_period_end(subscription_id, True)
        except StripeBillingError as e:
            raise ExternalProviderError("stripe", e.message, provider_code=e.code)

        period_end = StripeSubscriptionState.from_provider(subscription).current_period_end
        if reason:
            self.db.add(ExitSurvey(
                user_id=user_id,
                reason=reason,
                details=details,
                subscription_id=subscription_id,
                plan=plan,
            ))
        persisted = await self._persist(user_id, subscription, "cancel")

        logger.info("Member scheduled subscription cancellation", extra={
            "user_id": user_id,
            "subscription_id": subscription_id,
            "plan": plan,
            "reason": reason,
            "cancel_at": _iso(period_end),
        })
        return {
            "success": True,
            "message": "Your subscription will be cancelled at the end of your billing period.",
            "cancel_at": _iso(period_end),
            "current_period_end": _iso(period_end),
            "resync_required": not persisted,
        }

    async def apply_retention_offer(
        self,
        user_id: str,
        reason: Optional[str] = None,
        offer_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        offer_type = offer_type or RetentionOfferType.TWO_MONTHS_FREE.value
        if offer_type not in {t.value for t in RetentionOfferType}:
            raise ValidationError(f"Unknown offer type: {offer_type}", details={"offer_type": offer_type})

        entitlement = self._active_card_entitlement(
            user_id,
            "No card subscription found. App Store subscriptions cannot receive this offer.",
        )
        existing = self.db.query(RetentionOffer).filter(RetentionOffer.user_id == user_id).first()
        if existing is not None:
            raise ConflictError("Retention offer already used", details={"offer_id": existing.id})

        subscription_id = entitlement.external_subscription_id
        try:
            await self.client.ensure_coupon(self.retention_coupon_id, RETENTION_COUPON_PARAMS)
            subscription = await self.client.apply_coupon(subscription_id, self.retention_coupon_id)
        except StripeBillingError as e:
            raise ExternalProviderError("stripe", e.message, provider_code=e.code)

        free_until = add_months(now, RETENTION_MONTHS_FREE)
        self.db.add(RetentionOffer(
            user_id=user_id,
            offer_type=offer_type,
            reason=reason,
            coupon_id=self.retention_coupon_id,
            subscription_id=subscription_id,
            free_until=free_until,
            accepted_at=now,
        ))
        entitlement.retention_offer_applied = True
        persisted = await self._persist(user_id, subscription, "retention_offer")

        logger.info("Retention offer applied", extra={
            "user_id": user_id,
            "subscription_id": subscription_id,
            "offer_type": offer_type,
            "free_until": free_until.isoformat(),
        })
        return {
            "success": True,
            "message": "Retention offer applied successfully!",
            "free_until": free_until.isoformat(),
            "months_free": RETENTION_MONTHS_FREE,
            "resync_required": not persisted,
        }
