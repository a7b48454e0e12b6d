"""
Member self-service routes for the caller's own card subscription.

- POST /api/subscription/cancel: cancel at period end, optional exit survey
- POST /api/subscription/retention-offer: accept the one-time retention offer
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from learnpass.api.dependencies.providers import get_catalog, get_settings_from_app, get_stripe_client
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.billing.self_service import SubscriptionSelfService
from learnpass.config.settings import Settings
from learnpass.database.session import get_db_session
from learnpass.integrations.stripe_billing.billing_client import StripeBillingClient
from learnpass.platform.auth import CurrentUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255, description="Exit survey reason")
    details: Optional[str] = Field(None, max_length=5000)


class RetentionOfferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: Optional[str] = Field(None, max_length=255)
    offer_type: Optional[str] = Field(None, alias="offerType")


def _service(
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
    client: StripeBillingClient = Depends(get_stripe_client),
    settings: Settings = Depends(get_settings_from_app),
) -> SubscriptionSelfService:
    return SubscriptionSelfService(db, catalog, client, retention_coupon_id=settings.retention_coupon_id)


@router.post("/cancel")
async def cancel_subscription(
    body: CancelSubscriptionRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SubscriptionSelfService = Depends(_service),
):
    """Schedule the caller's subscription to end with the current period; access continues until then."""
    return await service.cancel_at_period_end(user.user_id, reason=body.reason, details=body.details)


@router.post("/retention-offer")
async def apply_retention_offer(
    body: RetentionOfferRequest,
    user: CurrentUser = Depends(get_current_user),
    service: SubscriptionSelfService = Depends(_service),
):
    """Apply the one-time retention discount and withdraw any scheduled cancellation."""
    return await service.apply_retention_offer(user.user_id, reason=body.reason, offer_type=body.offer_type)
