"""
Shared pytest fixtures for entitlement and billing tests.

Databases are in-memory SQLite built from the real models. Provider
clients are in-process fakes injected through constructors and app.state.
"""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import learnpass.models  # noqa: F401  (registers tables)
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.config.settings import DEFAULT_PLAN_CATALOG_PATH
from learnpass.db_base import Base
from learnpass.integrations.stripe_billing.billing_client import StripeBillingError
from learnpass.models.profile import Profile, ProfileRole
from learnpass.models.entitlement import Entitlement


def epoch(value: datetime) -> int:
    return int(value.timestamp())


def make_subscription(
    subscription_id: str = "sub_123",
    status: str = "active",
    price_id: str = "price_signature_monthly",
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
    pause_collection: Optional[dict] = None,
    metadata: Optional[dict] = None,
    customer: str = "cus_123",
) -> Dict[str, Any]:
    """A card-billing subscription object as the provider returns it."""
    now = datetime.now(timezone.utc)
    period_start = period_start or now - timedelta(days=10)
    period_end = period_end or now + timedelta(days=20)
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "cancel_at_period_end": cancel_at_period_end,
        "pause_collection": pause_collection,
        "current_period_start": epoch(period_start),
        "current_period_end": epoch(period_end),
        "metadata": {"user_id": "user-1"} if metadata is None else metadata,
        "items": {
            "object": "list",
            "data": [{"id": "si_1", "price": {"id": price_id}}],
        },
    }


def make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": event_type,
        "created": epoch(datetime.now(timezone.utc)),
        "data": {"object": obj},
    }


class FakeStripeClient:
    """In-memory stand-in for StripeBillingClient."""

    def __init__(self, subscriptions: Optional[List[Dict[str, Any]]] = None):
        self.subscriptions: Dict[str, Dict[str, Any]] = {
            s["id"]: copy.deepcopy(s) for s in (subscriptions or [])
        }
        self.invoices: Dict[str, List[Dict[str, Any]]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.refunds: List[Dict[str, Any]] = []
        self.coupons: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Optional[StripeBillingError] = None

    def _check(self, name: str, *args):
        self.calls.append((name,) + args)
        if self.fail_with is not None:
            raise self.fail_with

    def _sub(self, subscription_id: str) -> Dict[str, Any]:
        if subscription_id not in self.subscriptions:
            raise StripeBillingError(f"No such subscription: '{subscription_id}'", code="resource_missing")
        return self.subscriptions[subscription_id]

    async def retrieve_subscription(self, subscription_id):
        self._check("retrieve_subscription", subscription_id)
        return copy.deepcopy(self._sub(subscription_id))

    async def retrieve_customer(self, customer_id):
        self._check("retrieve_customer", customer_id)
        return copy.deepcopy(self.customers.get(customer_id, {"id": customer_id, "metadata": {}}))

    async def retrieve_invoice(self, invoice_id):
        self._check("retrieve_invoice", invoice_id)
        versions = self.invoices[invoice_id]
        # Each read returns the next version until the last one sticks
        return copy.deepcopy(versions.pop(0) if len(versions) > 1 else versions[0])

    async def set_cancel_at_period_end(self, subscription_id, value):
        self._check("set_cancel_at_period_end", subscription_id, value)
        sub = self._sub(subscription_id)
        sub["cancel_at_period_end"] = value
        return copy.deepcopy(sub)

    async def cancel_subscription(self, subscription_id, at_period_end=True):
        if at_period_end:
            return await self.set_cancel_at_period_end(subscription_id, True)
        self._check("cancel_subscription", subscription_id)
        sub = self._sub(subscription_id)
        sub["status"] = "canceled"
        return copy.deepcopy(sub)

    async def resume_subscription(self, subscription_id):
        return await self.set_cancel_at_period_end(subscription_id, False)

    async def pause_subscription(self, subscription_id):
        self._check("pause_subscription", subscription_id)
        sub = self._sub(subscription_id)
        sub["pause_collection"] = {"behavior": "mark_uncollectible"}
        return copy.deepcopy(sub)

    async def resume_from_pause(self, subscription_id):
        self._check("resume_from_pause", subscription_id)
        sub = self._sub(subscription_id)
        sub["pause_collection"] = None
        return copy.deepcopy(sub)

    async def update_subscription_price(self, subscription_id, price_id, item_id=None):
        self._check("update_subscription_price", subscription_id, price_id)
        sub = self._sub(subscription_id)
        sub["items"]["data"][0]["price"] = {"id": price_id}
        return copy.deepcopy(sub)

    async def ensure_coupon(self, coupon_id, params):
        self._check("ensure_coupon", coupon_id)
        if coupon_id not in self.coupons:
            self.coupons[coupon_id] = {"id": coupon_id, "object": "coupon", **params}
        return copy.deepcopy(self.coupons[coupon_id])

    async def apply_coupon(self, subscription_id, coupon_id):
        self._check("apply_coupon", subscription_id, coupon_id)
        sub = self._sub(subscription_id)
        sub["discounts"] = [{"coupon": coupon_id}]
        sub["cancel_at_period_end"] = False
        return copy.deepcopy(sub)

    async def create_refund(self, payment_intent_id=None, charge_id=None, amount_cents=None):
        self._check("create_refund", payment_intent_id, charge_id, amount_cents)
        refund = {
            "id": f"re_{len(self.refunds) + 1}",
            "object": "refund",
            "payment_intent": payment_intent_id,
            "charge": charge_id,
            "amount": amount_cents or 2700,
            "status": "succeeded",
        }
        self.refunds.append(refund)
        return copy.deepcopy(refund)

    async def close(self):
        self.calls.append(("close",))


class FakeAppleClient:
    """Returns canned verifyReceipt bodies."""

    def __init__(self, response: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.response = response or {"status": 0}
        self.error = error
        self.receipts: List[str] = []

    async def verify_receipt(self, receipt_data):
        self.receipts.append(receipt_data)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.response)

    async def close(self):
        pass


def apple_response(
    product_id: str = "com.bobuniversity.signature.monthly",
    transaction_id: str = "1000000001",
    original_transaction_id: str = "1000000000",
    purchase_date: Optional[datetime] = None,
    expires_date: Optional[datetime] = None,
    auto_renew: bool = True,
    status: int = 0,
    cancellation_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    purchase_date = purchase_date or now - timedelta(days=1)
    expires_date = expires_date or now + timedelta(days=29)
    purchase = {
        "product_id": product_id,
        "transaction_id": transaction_id,
        "original_transaction_id": original_transaction_id,
        "purchase_date_ms": str(epoch(purchase_date) * 1000),
        "expires_date_ms": str(epoch(expires_date) * 1000),
    }
    if cancellation_date is not None:
        purchase["cancellation_date_ms"] = str(epoch(cancellation_date) * 1000)
    return {
        "status": status,
        "environment": "Production",
        "latest_receipt_info": [purchase],
        "pending_renewal_info": [
            {
                "original_transaction_id": original_transaction_id,
                "auto_renew_status": "1" if auto_renew else "0",
            }
        ],
    }


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite shared across threads (TestClient runs in a worker thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog():
    return PlanCatalog.load(str(DEFAULT_PLAN_CATALOG_PATH))


@pytest.fixture
def fake_stripe():
    return FakeStripeClient()


@pytest.fixture
def make_profile(db_session):
    def _make(user_id: str = "user-1", role: str = ProfileRole.MEMBER.value, **fields) -> Profile:
        profile = Profile(id=user_id, role=role, **fields)
        db_session.add(profile)
        db_session.add(Entitlement(user_id=user_id, plan="free", status="active"))
        db_session.commit()
        return profile
    return _make
