"""
Tests for the admin subscription gateway.

Tests cover:
1. Only admins may act
2. Provider first, then the shared derivation path
3. Provider failure leaves local state untouched
4. Local failure after provider success reports resync_required
5. Refunds poll the invoice and never write the ledger
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from conftest import FakeStripeClient, make_subscription
from learnpass.access.validator import AccessValidator
from learnpass.billing.admin_gateway import AdminAction, AdminActionGateway, AdminCommand
from learnpass.billing.plan_catalog import UnknownProductError
from learnpass.billing.retry import RetryPolicy
from learnpass.billing.stripe_adapter import StripeEventProcessor
from learnpass.integrations.stripe_billing.billing_client import StripeBillingError
from learnpass.models.content import Video
from learnpass.models.entitlement import Entitlement
from learnpass.models.revenue_ledger import RevenueLedgerEntry
from learnpass.platform.auth import CurrentUser
from learnpass.platform.errors import AuthorizationError, ExternalProviderError, ValidationError


ADMIN = CurrentUser(user_id="admin-1", role="admin", has_profile=True)
MEMBER = CurrentUser(user_id="user-2", role="member", has_profile=True)

FAST_RETRY = RetryPolicy(interval_seconds=0, max_attempts=3)


@pytest.fixture
def stripe_with_sub():
    return FakeStripeClient(subscriptions=[make_subscription()])


@pytest_asyncio.fixture
async def gateway(db_session, catalog, stripe_with_sub):
    # Mirror the subscription locally first, as the created webhook would
    processor = StripeEventProcessor(db_session, catalog, stripe_with_sub)
    await processor.apply_subscription(make_subscription())
    db_session.commit()
    return AdminActionGateway(db_session, catalog, stripe_with_sub, retry_policy=FAST_RETRY)


def _entitlement(db_session, user_id="user-1"):
    return db_session.query(Entitlement).filter_by(user_id=user_id).one()


class TestAuthorization:

    @pytest.mark.asyncio
    async def test_non_admin_rejected(self, gateway, stripe_with_sub):
        with pytest.raises(AuthorizationError):
            await gateway.execute(MEMBER, AdminCommand(action=AdminAction.CANCEL, subscription_id="sub_123"))

        assert stripe_with_sub.calls == []

    @pytest.mark.asyncio
    async def test_missing_actor_rejected(self, gateway):
        with pytest.raises(AuthorizationError):
            await gateway.execute(None, AdminCommand(action=AdminAction.CANCEL, subscription_id="sub_123"))

    @pytest.mark.asyncio
    async def test_non_card_source_rejected(self, gateway, stripe_with_sub):
        command = AdminCommand(action=AdminAction.CANCEL, source="apple", subscription_id="1000000000")

        with pytest.raises(ValidationError):
            await gateway.execute(ADMIN, command)

        assert stripe_with_sub.calls == []


class TestSubscriptionMutations:

    @pytest.mark.asyncio
    async def test_deferred_cancel_keeps_access(self, gateway, db_session, catalog):
        db_session.add(Video(id="vid-1", title="Balayage", playback_id="pb-1", is_published=True))
        db_session.commit()

        result = await gateway.execute(ADMIN, AdminCommand(action=AdminAction.CANCEL, subscription_id="sub_123"))

        entitlement = _entitlement(db_session)
        assert result["resync_required"] is False
        assert result["entitlement"]["cancel_at_period_end"] is True
        assert entitlement.status == "active"
        assert entitlement.cancel_at_period_end is True
        assert AccessValidator(db_session, catalog).check_access("user-1", "vid-1").granted is True

    @pytest.mark.asyncio
    async def test_immediate_cancel(self, gateway, db_session):
        command = AdminCommand(action=AdminAction.CANCEL, subscription_id="sub_123", at_period_end=False)

        await gateway.execute(ADMIN, command)

        entitlement = _entitlement(db_session)
        assert entitlement.status == "canceled"
        assert entitlement.plan == "signature"

    @pytest.mark.asyncio
    async def test_resume_clears_scheduled_cancel(self, gateway, db_session):
        await gateway.execute(ADMIN, AdminCommand(action=AdminAction.CANCEL, subscription_id="sub_123"))

        await gateway.execute(ADMIN, AdminCommand(action=AdminAction.RESUME, subscription_id="sub_123"))

        assert _entitlement(db_session).cancel_at_period_end is False

    @pytest.mark.asyncio
    async def test_pause_and_resume_from_pause(self, gateway, db_session):
        await gateway.execute(ADMIN, AdminCommand(action=AdminAction.PAUSE, subscription_id="sub_123"))
        assert _entitlement(db_session).status == "paused"

        await gateway.execute(ADMIN, AdminCommand(action=AdminAction.RESUME_FROM_PAUSE, subscription_id="sub_123"))
        assert _entitlement(db_session).status == "active"

    @pytest.mark.asyncio
    async def test_update_plan(self, gateway, db_session):
        command = AdminCommand(
            action=AdminAction.UPDATE_PLAN,
            subscription_id="sub_123",
            price_id="price_studio_monthly",
        )

        result = await gateway.execute(ADMIN, command)

        assert result["entitlement"]["plan"] == "studio"
        assert _entitlement(db_session).plan == "studio"

    @pytest.mark.asyncio
    async def test_update_plan_unknown_price_never_reaches_provider(self, gateway, stripe_with_sub):
        command = AdminCommand(action=AdminAction.UPDATE_PLAN, subscription_id="sub_123", price_id="price_bogus")

        with pytest.raises(UnknownProductError):
            await gateway.execute(ADMIN, command)

        assert stripe_with_sub.calls == []

    @pytest.mark.asyncio
    async def test_subscription_id_required(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.execute(ADMIN, AdminCommand(action=AdminAction.PAUSE))


class TestFailureOrdering:

    @pytest.mark.asyncio
    async def test_provider_failure_writes_nothing(self, gateway, db_session, stripe_with_sub):
        stripe_with_sub.fail_with = StripeBillingError("Connection to provider timed out", code="timeout")

        with pytest.raises(ExternalProviderError):
            await gateway.execute(ADMIN, AdminCommand(action=AdminAction.CANCEL, subscription_id="sub_123"))

        entitlement = _entitlement(db_session)
        assert entitlement.status == "active"
        assert entitlement.cancel_at_period_end is False

    @pytest.mark.asyncio
    async def test_local_failure_after_provider_success_requires_resync(self, gateway, stripe_with_sub):
        failure = OperationalError("UPDATE subscription_records", {}, Exception("database is locked"))

        with patch.object(gateway.processor, "apply_subscription", AsyncMock(side_effect=failure)):
            result = await gateway.execute(
                ADMIN, AdminCommand(action=AdminAction.CANCEL, subscription_id="sub_123")
            )

        assert result["resync_required"] is True
        assert stripe_with_sub.subscriptions["sub_123"]["cancel_at_period_end"] is True
        assert "entitlement" not in result


class TestRefunds:

    @pytest.mark.asyncio
    async def test_refund_by_payment_intent(self, gateway, db_session, stripe_with_sub):
        command = AdminCommand(action=AdminAction.REFUND, payment_intent_id="pi_1", amount_cents=1000)

        result = await gateway.execute(ADMIN, command)

        assert result["refund"]["payment_intent"] == "pi_1"
        assert result["refund"]["amount"] == 1000
        assert db_session.query(RevenueLedgerEntry).count() == 0

    @pytest.mark.asyncio
    async def test_refund_waits_for_invoice_payment(self, gateway, stripe_with_sub):
        stripe_with_sub.invoices["in_9"] = [
            {"id": "in_9", "payment_intent": None},
            {"id": "in_9", "payment_intent": None},
            {"id": "in_9", "payment_intent": "pi_9"},
        ]

        result = await gateway.execute(ADMIN, AdminCommand(action=AdminAction.REFUND, invoice_id="in_9"))

        assert result["refund"]["payment_intent"] == "pi_9"
        reads = [c for c in stripe_with_sub.calls if c[0] == "retrieve_invoice"]
        assert len(reads) == 3

    @pytest.mark.asyncio
    async def test_refund_gives_up_after_bounded_attempts(self, gateway, stripe_with_sub):
        stripe_with_sub.invoices["in_9"] = [{"id": "in_9", "payment_intent": None}]

        with pytest.raises(ExternalProviderError):
            await gateway.execute(ADMIN, AdminCommand(action=AdminAction.REFUND, invoice_id="in_9"))

        assert not any(c[0] == "create_refund" for c in stripe_with_sub.calls)

    @pytest.mark.asyncio
    async def test_refund_requires_a_payment_reference(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.execute(ADMIN, AdminCommand(action=AdminAction.REFUND))

    @pytest.mark.asyncio
    async def test_refund_amount_must_be_positive(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.execute(
                ADMIN, AdminCommand(action=AdminAction.REFUND, payment_intent_id="pi_1", amount_cents=0)
            )
