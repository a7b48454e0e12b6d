"""
Card billing webhook handler.

SECURITY:
- Every delivery MUST pass signature verification
- No bearer authentication (requests come from the provider, not users)
- The owning user is derived from provider data, never from the caller
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from learnpass.api.dependencies.providers import (
    get_catalog,
    get_optional_stripe_client,
    get_settings_from_app,
)
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.billing.stripe_adapter import StripeEventProcessor
from learnpass.config.settings import Settings
from learnpass.database.session import get_db_session
from learnpass.integrations.stripe_billing.billing_client import (
    WebhookSignatureError,
    construct_event,
)
from learnpass.platform.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings_from_app),
):
    body = await request.body()
    try:
        event = construct_event(body, request.headers.get("Stripe-Signature"), settings.stripe_webhook_secret)
    except WebhookSignatureError as e:
        logger.warning("Invalid webhook signature", extra={"path": request.url.path})
        raise ValidationError(str(e))

    processor = StripeEventProcessor(db, catalog, get_optional_stripe_client(request))
    result = await processor.process(event)
    return {"received": True, "handled": result.handled}
