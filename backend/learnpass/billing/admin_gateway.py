"""
Administrative subscription mutations.

The gateway issues the command at the payments provider and then feeds
the provider's returned subscription through the same derivation path the
webhook adapter uses, so the local mirror reflects what was actually
changed rather than what was asked for.

Ordering guarantees:
- provider failure or timeout: error to the caller, nothing written locally
- provider success, local write failure: provider change stands, the
  response carries resync_required=True and the next event reconverges
- refunds never write the ledger; the refund webhook does
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.billing.retry import RetryExhaustedError, RetryPolicy
from learnpass.billing.stripe_adapter import StripeEventProcessor
from learnpass.integrations.stripe_billing.billing_client import (
    StripeBillingClient,
    StripeBillingError,
    invoice_charge,
    invoice_payment_intent,
)
from learnpass.models.subscription_record import PaymentSource
from learnpass.platform.errors import (
    AppError,
    AuthorizationError,
    ExternalProviderError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class AdminAction(str, Enum):
    CANCEL = "cancel"
    RESUME = "resume"
    PAUSE = "pause"
    RESUME_FROM_PAUSE = "resume_from_pause"
    UPDATE_PLAN = "update_plan"
    REFUND = "refund"


@dataclass
class AdminCommand:
    action: AdminAction
    source: str = PaymentSource.STRIPE.value
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount_cents: Optional[int] = None
    at_period_end: bool = True


class AdminActionGateway:
    """Admin-only mutation path for card-billing subscriptions and payments."""

    def __init__(
        self,
        db_session: Session,
        catalog: PlanCatalog,
        client: StripeBillingClient,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.db = db_session
        self.catalog = catalog
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.processor = StripeEventProcessor(db_session, catalog, client)

    async def execute(self, actor, command: AdminCommand) -> Dict[str, Any]:
        if actor is None or not actor.is_admin:
            logger.warning("Non-admin attempted admin action", extra={
                "user_id": getattr(actor, "user_id", None),
                "action": command.action.value,
            })
            raise AuthorizationError()

        if command.source != PaymentSource.STRIPE.value:
            raise ValidationError(
                f"Admin actions are not supported for source '{command.source}'",
                details={"source": command.source},
            )

        logger.info("Executing admin action", extra={
            "admin_id": actor.user_id,
            "action": command.action.value,
            "subscription_id": command.subscription_id,
        })

        if command.action == AdminAction.REFUND:
            return await self._refund(command)
        return await self._mutate_subscription(command)

    # ------------------------------------------------------------------
    # Subscription mutations
    # ------------------------------------------------------------------

    async def _call_provider(self, command: AdminCommand) -> Dict[str, Any]:
        subscription_id = command.subscription_id
        if command.action == AdminAction.CANCEL:
            return await self.client.cancel_subscription(subscription_id, at_period_end=command.at_period_end)
        if command.action == AdminAction.RESUME:
            return await self.client.resume_subscription(subscription_id)
        if command.action == AdminAction.PAUSE:
            return await self.client.pause_subscription(subscription_id)
        if command.action == AdminAction.RESUME_FROM_PAUSE:
            return await self.client.resume_from_pause(subscription_id)
        if command.action == AdminAction.UPDATE_PLAN:
            return await self.client.update_subscription_price(subscription_id, command.price_id)
        raise ValidationError(f"Unsupported action: {command.action}")

    async def _mutate_subscription(self, command: AdminCommand) -> Dict[str, Any]:
        if not command.subscription_id:
            raise ValidationError("subscription_id is required", details={"action": command.action.value})
        if command.action == AdminAction.UPDATE_PLAN:
            if not command.price_id:
                raise ValidationError("price_id is required for update_plan")
            # Unknown prices are rejected before the provider is touched
            self.catalog.plan_for_stripe_price(command.price_id)

        try:
            subscription = await self._call_provider(command)
        except StripeBillingError as e:
            raise ExternalProviderError("stripe", e.message, provider_code=e.code)

        result: Dict[str, Any] = {
            "action": command.action.value,
            "subscription": subscription,
            "resync_required": False,
        }

        try:
            applied = await self.processor.apply_subscription(subscription)
            self.db.commit()
        except (SQLAlchemyError, AppError):
            self.db.rollback()
            logger.exception("Provider change applied but local state not persisted", extra={
                "action": command.action.value,
                "subscription_id": command.subscription_id,
            })
            result["resync_required"] = True
            return result

        if applied is None:
            result["resync_required"] = True
            return result

        record, entitlement = applied
        result["entitlement"] = {
            "user_id": entitlement.user_id,
            "plan": entitlement.plan,
            "status": entitlement.status,
            "cancel_at_period_end": entitlement.cancel_at_period_end,
            "current_period_end": (
                entitlement.current_period_end.isoformat() if entitlement.current_period_end else None
            ),
        }
        return result

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def _payment_for_invoice(self, invoice_id: str) -> Dict[str, Optional[str]]:
        """Wait (bounded) until the invoice exposes the payment to refund."""

        def _has_payment(invoice: Dict[str, Any]) -> bool:
            return bool(invoice_payment_intent(invoice) or invoice_charge(invoice))

        try:
            invoice = await self.retry_policy.poll(
                lambda: self.client.retrieve_invoice(invoice_id),
                _has_payment,
                description=f"payment for invoice {invoice_id}",
            )
        except RetryExhaustedError:
            raise ExternalProviderError("stripe", f"Invoice {invoice_id} has no payment to refund")

        return {"payment_intent_id": invoice_payment_intent(invoice), "charge_id": invoice_charge(invoice)}

    async def _refund(self, command: AdminCommand) -> Dict[str, Any]:
        if not (command.payment_intent_id or command.charge_id or command.invoice_id):
            raise ValidationError("One of payment_intent_id, charge_id or invoice_id is required")
        if command.amount_cents is not None and command.amount_cents <= 0:
            raise ValidationError("amount_cents must be positive", details={"amount_cents": command.amount_cents})

        payment_intent_id = command.payment_intent_id
        charge_id = command.charge_id
        try:
            if not payment_intent_id and not charge_id:
                resolved = await self._payment_for_invoice(command.invoice_id)
                payment_intent_id = resolved["payment_intent_id"]
                charge_id = resolved["charge_id"]

            refund = await self.client.create_refund(
                payment_intent_id=payment_intent_id,
                charge_id=None if payment_intent_id else charge_id,
                amount_cents=command.amount_cents,
            )
        except StripeBillingError as e:
            raise ExternalProviderError("stripe", e.message, provider_code=e.code)

        logger.info("Refund issued", extra={
            "refund_id": refund.get("id"),
            "payment_intent_id": payment_intent_id,
            "charge_id": charge_id,
            "amount_cents": refund.get("amount"),
        })
        return {"action": AdminAction.REFUND.value, "refund": refund}
