"""
App Store in-app purchase adapter.

Verifies a client-submitted receipt, mirrors the purchase, recomputes the
entitlement and records the transaction in the revenue ledger. Anything
short of a valid verification fails before the first write.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from learnpass.billing.derivation import AppleReceiptState, SubscriptionStore
from learnpass.billing.ledger import RevenueLedger, completed_payload
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.integrations.apple.receipt_client import (
    STATUS_VALID,
    AppleReceiptClient,
    AppleVerificationError,
    describe_status,
)
from learnpass.models.base import utcnow
from learnpass.models.entitlement import EntitlementStatus
from learnpass.models.revenue_ledger import ProductType
from learnpass.models.subscription_record import PaymentSource
from learnpass.platform.errors import ExternalProviderError, ValidationError

logger = logging.getLogger(__name__)

SOURCE = PaymentSource.APPLE.value

# Statuses caused by the submitted receipt rather than the App Store
CLIENT_RECEIPT_STATUSES = {21000, 21002, 21003, 21006, 21008, 21010}


class AppleReceiptService:
    """Receipt verification -> mirror, entitlement and ledger writes."""

    def __init__(self, db_session: Session, catalog: PlanCatalog, client: AppleReceiptClient):
        self.db = db_session
        self.catalog = catalog
        self.client = client
        self.store = SubscriptionStore(db_session, catalog)
        self.ledger = RevenueLedger(db_session)

    async def _verify(self, receipt: str) -> dict:
        try:
            body = await self.client.verify_receipt(receipt)
        except AppleVerificationError as e:
            raise ExternalProviderError("apple", e.message, provider_code=str(e.status) if e.status else None)

        status = body.get("status")
        if status != STATUS_VALID:
            message = describe_status(status) if isinstance(status, int) else "Invalid verification response"
            logger.warning("Receipt verification rejected", extra={"apple_status": status})
            if status in CLIENT_RECEIPT_STATUSES:
                raise ValidationError(message, details={"provider": "apple", "provider_status": status})
            raise ExternalProviderError("apple", message, provider_code=str(status))
        return body

    async def verify_and_apply(
        self,
        user_id: str,
        receipt: str,
        product_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> dict:
        if not user_id:
            raise ValidationError("userId is required")
        if not receipt:
            raise ValidationError("receipt is required")

        body = await self._verify(receipt)
        state = AppleReceiptState.from_verification(body, transaction_id=transaction_id, product_id=product_id)
        derived = state.derive(self.catalog)

        try:
            self.store.apply(user_id, derived)

            ledger_inserted = None
            if state.transaction_id and derived.status != EntitlementStatus.CANCELED.value:
                amount = self.catalog.list_price(derived.plan)
                if amount > 0:
                    payload = completed_payload(
                        SOURCE,
                        user_id=user_id,
                        amount_cents=amount,
                        occurred_at=state.purchase_date or utcnow(),
                        product_type=ProductType.SUBSCRIPTION.value,
                        plan=derived.plan,
                        currency=self.catalog.get(derived.plan).currency,
                        subscription_id=state.original_transaction_id,
                        metadata={
                            "product_id": state.product_id,
                            "original_transaction_id": state.original_transaction_id,
                            "environment": state.environment,
                            "plan_assumed": derived.plan_assumed,
                        },
                    )
                    ledger_inserted = self.ledger.record(SOURCE, state.transaction_id, payload).inserted

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Receipt applied", extra={
            "user_id": user_id,
            "original_transaction_id": state.original_transaction_id,
            "plan": derived.plan,
            "status": derived.status,
            "ledger_inserted": ledger_inserted,
        })
        return {
            "success": True,
            "plan": derived.plan,
            "status": derived.status,
            "expiresAt": derived.current_period_end.isoformat() if derived.current_period_end else None,
            "planAssumed": derived.plan_assumed,
        }
