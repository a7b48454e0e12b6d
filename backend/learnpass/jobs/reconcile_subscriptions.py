"""
Subscription reconciliation job.

Runs hourly to re-read card-billing subscriptions from the provider and
re-derive local state, so the mirror and entitlements converge even when
webhooks are missed. Also expires entitlements whose paid period has
lapsed without a provider event.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from learnpass.billing.plan_catalog import PlanCatalog, get_plan_catalog
from learnpass.billing.stripe_adapter import StripeEventProcessor
from learnpass.integrations.stripe_billing.billing_client import (
    StripeBillingClient,
    StripeBillingError,
)
from learnpass.models.entitlement import Entitlement, EntitlementStatus
from learnpass.models.subscription_record import PaymentSource, SubscriptionRecord
from learnpass.platform.errors import AppError

logger = logging.getLogger(__name__)

# Mirror rows the provider can still change
NON_TERMINAL_STATUSES = (
    EntitlementStatus.ACTIVE.value,
    EntitlementStatus.PAST_DUE.value,
    EntitlementStatus.PAUSED.value,
)


class SubscriptionReconciliationJob:
    """
    Reconciles local subscription state with the card billing API.

    Should run hourly via cron or task scheduler.
    Handles:
    - Missed subscription webhooks
    - Lapsed paid periods
    """

    def __init__(
        self,
        db_session: Session,
        client: Optional[StripeBillingClient],
        catalog: Optional[PlanCatalog] = None,
    ):
        self.db_session = db_session
        self.client = client
        self.catalog = catalog or get_plan_catalog()
        self.processor = StripeEventProcessor(db_session, self.catalog, client)

    async def run(self, now: Optional[datetime] = None) -> dict:
        """
        Execute the reconciliation job.

        Returns:
            Summary of reconciliation results
        """
        now = now or datetime.now(timezone.utc)
        logger.info("Starting subscription reconciliation job")

        results = {
            "started_at": now.isoformat(),
            "subscriptions_checked": 0,
            "subscriptions_updated": 0,
            "entitlements_expired": 0,
            "errors": [],
        }

        if self.client is not None:
            records = self.db_session.query(SubscriptionRecord).filter(
                SubscriptionRecord.source == PaymentSource.STRIPE.value,
                SubscriptionRecord.status.in_(NON_TERMINAL_STATUSES),
            ).all()
            results["subscriptions_checked"] = len(records)

            for record in records:
                try:
                    await self._reconcile_record(record, results)
                except (StripeBillingError, AppError) as e:
                    self.db_session.rollback()
                    error_msg = f"Failed to reconcile subscription {record.external_id}: {e}"
                    logger.error(error_msg, extra={
                        "user_id": record.user_id,
                        "subscription_id": record.external_id,
                    })
                    results["errors"].append(error_msg)
        else:
            logger.warning("No billing client configured; skipping provider re-read")

        self._expire_lapsed_entitlements(now, results)

        results["completed_at"] = datetime.now(timezone.utc).isoformat()
        logger.info("Subscription reconciliation completed", extra=results)
        return results

    async def _reconcile_record(self, record: SubscriptionRecord, results: dict) -> None:
        """
        Re-read one subscription and run it through the derivation path.

        Args:
            record: Card-billing mirror row
            results: Results dict to update
        """
        before = (record.status, record.plan, record.current_period_end, record.cancel_at_period_end)
        subscription = await self.client.retrieve_subscription(record.external_id)
        applied = await self.processor.apply_subscription(subscription, user_id=record.user_id)
        self.db_session.commit()

        if applied is None:
            return
        updated, _ = applied
        after = (updated.status, updated.plan, updated.current_period_end, updated.cancel_at_period_end)
        if after != before:
            logger.warning("Subscription drift corrected", extra={
                "user_id": record.user_id,
                "subscription_id": record.external_id,
                "local_status": before[0],
                "provider_status": after[0],
            })
            results["subscriptions_updated"] += 1

    def _expire_lapsed_entitlements(self, now: datetime, results: dict) -> None:
        """
        Expire active paid entitlements whose period end has passed.

        Args:
            now: Reference time
            results: Results dict to update
        """
        lapsed = self.db_session.query(Entitlement).filter(
            Entitlement.status == EntitlementStatus.ACTIVE.value,
            Entitlement.plan.in_(sorted(self.catalog.paid_plans())),
            Entitlement.current_period_end.isnot(None),
            Entitlement.current_period_end < now,
        ).all()

        for entitlement in lapsed:
            logger.info("Expiring entitlement after period end", extra={
                "user_id": entitlement.user_id,
                "plan": entitlement.plan,
                "current_period_end": entitlement.current_period_end.isoformat(),
            })
            entitlement.status = EntitlementStatus.EXPIRED.value
            results["entitlements_expired"] += 1

        if lapsed:
            self.db_session.commit()


async def run_reconciliation(
    db_session: Session,
    client: Optional[StripeBillingClient],
    catalog: Optional[PlanCatalog] = None,
) -> dict:
    """
    Convenience function to run reconciliation job.

    Args:
        db_session: Database session
        client: Card billing client (None skips the provider re-read)
        catalog: Plan catalog (defaults to the process catalog)

    Returns:
        Job results summary
    """
    job = SubscriptionReconciliationJob(db_session, client, catalog)
    return await job.run()


async def _main() -> dict:
    from learnpass.config.settings import get_settings
    from learnpass.database.session import create_db_engine, create_session_factory

    settings = get_settings()
    engine = create_db_engine(settings.database_url)
    session = create_session_factory(engine)()
    client = None
    if settings.stripe_secret_key:
        client = StripeBillingClient(settings.stripe_secret_key, settings.provider_timeout_seconds)
    try:
        return await run_reconciliation(session, client, get_plan_catalog(settings.plan_catalog_path))
    finally:
        session.close()
        if client is not None:
            await client.close()


# Entry point for cron/scheduler
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    results = asyncio.run(_main())
    logger.info("Reconciliation completed: %s", results)
