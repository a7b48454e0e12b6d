"""
Application assembly.

Provider clients, the plan catalog and the session factory are created
once per process in the lifespan and stored on app.state; every request
reads them from there. Anything passed to create_app() is used as-is and
left open on shutdown (tests inject fakes this way).
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from learnpass import __version__
from learnpass.api.routes import (
    access,
    admin_subscriptions,
    health,
    iap,
    profiles,
    subscription,
    teams,
    webhooks_stripe,
)
from learnpass.billing.plan_catalog import PlanCatalog, get_plan_catalog
from learnpass.config.settings import Settings, get_settings
from learnpass.database.session import create_db_engine, create_session_factory, init_db
from learnpass.integrations.apple.receipt_client import AppleReceiptClient
from learnpass.integrations.stripe_billing.billing_client import StripeBillingClient
from learnpass.platform.errors import install_error_handling

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    stripe_client: Optional[StripeBillingClient] = None,
    apple_client: Optional[AppleReceiptClient] = None,
    session_factory: Optional[sessionmaker] = None,
    catalog: Optional[PlanCatalog] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        app.state.settings = settings
        app.state.plan_catalog = catalog or get_plan_catalog(settings.plan_catalog_path)

        if session_factory is not None:
            app.state.session_factory = session_factory
        else:
            engine = create_db_engine(settings.database_url)
            init_db(engine)
            app.state.session_factory = create_session_factory(engine)

        missing = settings.missing_provider_settings()
        if missing:
            logger.warning("Provider settings missing", extra={"missing": missing})

        app.state.stripe_client = stripe_client
        if stripe_client is None and settings.stripe_secret_key:
            app.state.stripe_client = StripeBillingClient(
                settings.stripe_secret_key,
                timeout_seconds=settings.provider_timeout_seconds,
            )
            owned.append(app.state.stripe_client)

        app.state.apple_client = apple_client
        if apple_client is None and settings.apple_shared_secret:
            app.state.apple_client = AppleReceiptClient(
                settings.apple_shared_secret,
                timeout_seconds=settings.provider_timeout_seconds,
            )
            owned.append(app.state.apple_client)

        logger.info("Application started", extra={"version": __version__})
        try:
            yield
        finally:
            for client in owned:
                await client.close()
            logger.info("Application stopped")

    app = FastAPI(title="Learnpass entitlements", version=__version__, lifespan=lifespan)
    install_error_handling(app)

    app.include_router(health.router)
    app.include_router(profiles.router)
    app.include_router(access.router)
    app.include_router(iap.router)
    app.include_router(subscription.router)
    app.include_router(teams.router)
    app.include_router(admin_subscriptions.router)
    app.include_router(webhooks_stripe.router)
    return app
