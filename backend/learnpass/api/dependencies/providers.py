"""Helpers for getting process-wide collaborators from app state."""

from typing import Optional

from fastapi import Request

from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.billing.retry import RetryPolicy
from learnpass.config.settings import Settings
from learnpass.integrations.apple.receipt_client import AppleReceiptClient
from learnpass.integrations.stripe_billing.billing_client import StripeBillingClient
from learnpass.platform.errors import ExternalProviderError


def get_settings_from_app(request: Request) -> Settings:
    return request.app.state.settings


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.plan_catalog


def get_retry_policy(request: Request) -> RetryPolicy:
    return RetryPolicy.from_settings(request.app.state.settings)


def get_optional_stripe_client(request: Request) -> Optional[StripeBillingClient]:
    return getattr(request.app.state, "stripe_client", None)


def get_stripe_client(request: Request) -> StripeBillingClient:
    client = get_optional_stripe_client(request)
    if client is None:
        raise ExternalProviderError("stripe", "Card billing is not configured")
    return client


def get_apple_client(request: Request) -> AppleReceiptClient:
    client = getattr(request.app.state, "apple_client", None)
    if client is None:
        raise ExternalProviderError("apple", "Receipt verification is not configured")
    return client
