"""
Admin API routes for live subscription mutations and revenue reporting.

All routes require a bearer token whose profile holds the admin role.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from learnpass.api.dependencies.providers import get_catalog, get_retry_policy, get_stripe_client
from learnpass.billing.admin_gateway import AdminAction, AdminActionGateway, AdminCommand
from learnpass.billing.ledger import RevenueLedger
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.billing.retry import RetryPolicy
from learnpass.database.session import get_db_session
from learnpass.integrations.stripe_billing.billing_client import StripeBillingClient
from learnpass.models.subscription_record import PaymentSource
from learnpass.platform.auth import CurrentUser, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# Request/Response Models

class AdminSubscriptionRequest(BaseModel):
    """One administrative command against a subscription or payment."""
    action: AdminAction
    source: str = Field(PaymentSource.STRIPE.value, description="Payment source of the subscription")
    subscription_id: Optional[str] = None
    price_id: Optional[str] = Field(None, description="New price for update_plan")
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount_cents: Optional[int] = Field(None, gt=0, description="Partial refund amount")
    at_period_end: bool = Field(True, description="cancel only: defer to period end")


class AdminSubscriptionResponse(BaseModel):
    action: str
    subscription: Optional[Dict[str, Any]] = None
    refund: Optional[Dict[str, Any]] = None
    entitlement: Optional[Dict[str, Any]] = None
    resync_required: bool = False


@router.post("/subscriptions", response_model=AdminSubscriptionResponse)
async def mutate_subscription(
    body: AdminSubscriptionRequest,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
    client: StripeBillingClient = Depends(get_stripe_client),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
):
    """Run an admin action at the provider and re-derive local state from its response."""
    gateway = AdminActionGateway(db, catalog, client, retry_policy)
    command = AdminCommand(
        action=body.action,
        source=body.source,
        subscription_id=body.subscription_id,
        price_id=body.price_id,
        payment_intent_id=body.payment_intent_id,
        charge_id=body.charge_id,
        invoice_id=body.invoice_id,
        amount_cents=body.amount_cents,
        at_period_end=body.at_period_end,
    )
    result = await gateway.execute(admin, command)
    return AdminSubscriptionResponse(**result)


@router.get("/revenue/summary")
def revenue_summary(
    days: int = Query(30, ge=1, le=366),
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Ledger totals for the last `days` days against the window before it."""
    return RevenueLedger(db).compare_periods(days=days)
