"""
Tests for subscription derivation and the entitlement merge.

Tests cover:
1. Card-billing status mapping
2. Receipt status mapping
3. Mirror upsert per (user, source)
4. Entitlement recompute across sources
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import apple_response, make_subscription
from learnpass.billing.derivation import (
    AppleReceiptState,
    DerivedState,
    StripeSubscriptionState,
    SubscriptionStore,
)
from learnpass.billing.plan_catalog import UnknownProductError
from learnpass.models.entitlement import Entitlement, EntitlementStatus
from learnpass.models.subscription_record import SubscriptionRecord
from learnpass.platform.errors import ValidationError


def _now():
    return datetime.now(timezone.utc)


class TestStripeDerivation:

    @pytest.mark.parametrize("provider_status,expected", [
        ("active", "active"),
        ("trialing", "active"),
        ("past_due", "past_due"),
        ("unpaid", "past_due"),
        ("incomplete", "past_due"),
        ("canceled", "canceled"),
        ("incomplete_expired", "expired"),
    ])
    def test_status_mapping(self, catalog, provider_status, expected):
        state = StripeSubscriptionState.from_provider(make_subscription(status=provider_status))

        assert state.derive(catalog).status == expected

    def test_pause_collection_means_paused(self, catalog):
        sub = make_subscription(pause_collection={"behavior": "mark_uncollectible"})

        derived = StripeSubscriptionState.from_provider(sub).derive(catalog)

        assert derived.status == "paused"
        assert derived.paused is True

    def test_active_with_past_period_end_is_expired(self, catalog):
        sub = make_subscription(period_start=_now() - timedelta(days=40), period_end=_now() - timedelta(days=10))

        derived = StripeSubscriptionState.from_provider(sub).derive(catalog)

        assert derived.status == "expired"

    def test_plan_from_price(self, catalog):
        derived = StripeSubscriptionState.from_provider(
            make_subscription(price_id="price_salon_monthly")
        ).derive(catalog)

        assert derived.plan == "salon"
        assert derived.external_id == "sub_123"

    def test_cancel_flag_copied(self, catalog):
        derived = StripeSubscriptionState.from_provider(
            make_subscription(cancel_at_period_end=True)
        ).derive(catalog)

        assert derived.cancel_at_period_end is True
        assert derived.status == "active"

    def test_unknown_price_is_error(self, catalog):
        state = StripeSubscriptionState.from_provider(make_subscription(price_id="price_mystery"))

        with pytest.raises(UnknownProductError):
            state.derive(catalog)

    def test_period_read_from_item_when_missing_on_subscription(self, catalog):
        sub = make_subscription()
        end = sub.pop("current_period_end")
        sub["items"]["data"][0]["current_period_end"] = end

        state = StripeSubscriptionState.from_provider(sub)

        assert state.current_period_end == datetime.fromtimestamp(end, tz=timezone.utc)

    def test_user_hint_from_metadata(self):
        state = StripeSubscriptionState.from_provider(make_subscription(metadata={"userId": "u-9"}))

        assert state.user_id_hint == "u-9"

    def test_payload_without_id_rejected(self):
        with pytest.raises(ValidationError):
            StripeSubscriptionState.from_provider({"status": "active"})


class TestAppleDerivation:

    def test_active_receipt(self, catalog):
        state = AppleReceiptState.from_verification(apple_response())

        derived = state.derive(catalog)

        assert derived.status == "active"
        assert derived.plan == "signature"
        assert derived.external_id == "1000000000"
        assert derived.cancel_at_period_end is False

    def test_expired_receipt(self, catalog):
        response = apple_response(
            purchase_date=_now() - timedelta(days=60),
            expires_date=_now() - timedelta(days=30),
        )

        derived = AppleReceiptState.from_verification(response).derive(catalog)

        assert derived.status == "expired"

    def test_auto_renew_off_schedules_cancel(self, catalog):
        derived = AppleReceiptState.from_verification(apple_response(auto_renew=False)).derive(catalog)

        assert derived.cancel_at_period_end is True
        assert derived.status == "active"

    def test_cancellation_date_is_canceled(self, catalog):
        derived = AppleReceiptState.from_verification(
            apple_response(cancellation_date=_now() - timedelta(hours=1))
        ).derive(catalog)

        assert derived.status == "canceled"

    def test_latest_purchase_chosen(self, catalog):
        response = apple_response(transaction_id="old", expires_date=_now() - timedelta(days=1))
        newer = dict(response["latest_receipt_info"][0])
        newer["transaction_id"] = "new"
        newer["expires_date_ms"] = str(int((_now() + timedelta(days=30)).timestamp()) * 1000)
        response["latest_receipt_info"].append(newer)

        state = AppleReceiptState.from_verification(response)

        assert state.transaction_id == "new"

    def test_requested_transaction_chosen(self):
        response = apple_response(transaction_id="t-1")

        state = AppleReceiptState.from_verification(response, transaction_id="t-1")

        assert state.transaction_id == "t-1"

    def test_legacy_product_marked_assumed(self, catalog):
        derived = AppleReceiptState.from_verification(
            apple_response(product_id="com.bobuniversity.studio.annual.legacy")
        ).derive(catalog)

        assert derived.plan == "studio"
        assert derived.plan_assumed is True
        assert derived.provider_metadata["plan_assumed"] is True

    def test_empty_receipt_rejected(self):
        with pytest.raises(ValidationError):
            AppleReceiptState.from_verification({"status": 0, "latest_receipt_info": []})


class TestSubscriptionStore:

    def _derived(self, source="stripe", status="active", plan="signature", end_days=20, **kwargs):
        now = _now()
        return DerivedState(
            source=source,
            external_id=kwargs.pop("external_id", f"{source}-ext"),
            plan=plan,
            status=status,
            current_period_start=now - timedelta(days=10),
            current_period_end=now + timedelta(days=end_days),
            **kwargs,
        )

    def test_ensure_entitlement_creates_free_active(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)

        entitlement = store.ensure_entitlement("user-1")
        db_session.commit()

        assert entitlement.plan == "free"
        assert entitlement.status == "active"
        assert store.ensure_entitlement("user-1").id == entitlement.id

    def test_apply_upserts_one_row_per_source(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)

        store.apply("user-1", self._derived(status="past_due"))
        store.apply("user-1", self._derived(status="active"))
        db_session.commit()

        rows = db_session.query(SubscriptionRecord).filter_by(user_id="user-1").all()
        assert len(rows) == 1
        assert rows[0].status == "active"

    def test_active_paid_row_sets_entitlement(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)

        _, entitlement = store.apply("user-1", self._derived())
        db_session.commit()

        assert entitlement.plan == "signature"
        assert entitlement.status == "active"
        assert entitlement.source == "stripe"
        assert entitlement.current_period_end > _now()

    def test_expired_row_keeps_prior_plan(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)
        store.ensure_entitlement("user-1")

        _, entitlement = store.apply(
            "user-1",
            self._derived(source="apple", status="expired", plan="studio", end_days=-5),
        )
        db_session.commit()

        # Never promoted from an expired purchase
        assert entitlement.plan == "free"
        assert entitlement.status == "expired"

    def test_lapse_degrades_status_not_plan(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)
        store.apply("user-1", self._derived(plan="signature"))

        _, entitlement = store.apply("user-1", self._derived(status="canceled", plan="signature"))
        db_session.commit()

        assert entitlement.plan == "signature"
        assert entitlement.status == "canceled"

    def test_other_active_source_wins(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)
        store.apply("user-1", self._derived(source="apple", plan="studio", end_days=15))

        _, entitlement = store.apply("user-1", self._derived(source="stripe", status="canceled"))
        db_session.commit()

        assert entitlement.status == "active"
        assert entitlement.plan == "studio"
        assert entitlement.source == "apple"

    def test_latest_period_end_wins(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)
        store.apply("user-1", self._derived(source="apple", plan="studio", end_days=5))

        _, entitlement = store.apply("user-1", self._derived(source="stripe", plan="signature", end_days=25))
        db_session.commit()

        assert entitlement.plan == "signature"

    def test_active_paid_entitlement_period_is_in_future(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)
        now = _now()

        store.apply("user-1", self._derived(status="active", end_days=-1))
        db_session.commit()

        for entitlement in db_session.query(Entitlement).all():
            if entitlement.status == "active" and entitlement.plan in catalog.paid_plans():
                assert entitlement.current_period_end is None or entitlement.current_period_end > now

    def test_set_cancel_at_period_end(self, db_session, catalog):
        store = SubscriptionStore(db_session, catalog)
        store.apply("user-1", self._derived())

        entitlement = store.set_cancel_at_period_end("user-1", "stripe", True)
        db_session.commit()

        assert entitlement.cancel_at_period_end is True
        assert entitlement.status == EntitlementStatus.ACTIVE.value
        assert store.get_record("user-1", "stripe").cancel_at_period_end is True
