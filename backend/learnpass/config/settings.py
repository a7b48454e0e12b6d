"""
Runtime configuration loaded from environment variables.

Settings are read once at startup and never mutated afterwards; provider
credentials in particular are shared read-only by every request.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_PLAN_CATALOG_PATH = Path(__file__).parent / "plans.json"

# Provider calls must never hang a request
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 20.0

# Bounded polling while a provider object materialises asynchronously
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_POLL_MAX_ATTEMPTS = 5

DEFAULT_RETENTION_COUPON_ID = "learnpass_retention_2mo_free"


@dataclass(frozen=True)
class Settings:
    """Immutable service configuration."""

    database_url: str = "sqlite:///./learnpass.db"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    apple_shared_secret: Optional[str] = None
    auth_jwt_secret: Optional[str] = None
    auth_jwt_algorithm: str = "HS256"
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS
    plan_catalog_path: str = str(DEFAULT_PLAN_CATALOG_PATH)
    retention_coupon_id: str = DEFAULT_RETENTION_COUPON_ID

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            apple_shared_secret=os.getenv("APPLE_SHARED_SECRET"),
            auth_jwt_secret=os.getenv("AUTH_JWT_SECRET"),
            auth_jwt_algorithm=os.getenv("AUTH_JWT_ALGORITHM", cls.auth_jwt_algorithm),
            provider_timeout_seconds=float(
                os.getenv("PROVIDER_TIMEOUT_SECONDS", str(DEFAULT_PROVIDER_TIMEOUT_SECONDS))
            ),
            poll_interval_seconds=float(
                os.getenv("INVOICE_POLL_INTERVAL_SECONDS", str(DEFAULT_POLL_INTERVAL_SECONDS))
            ),
            poll_max_attempts=int(
                os.getenv("INVOICE_POLL_MAX_ATTEMPTS", str(DEFAULT_POLL_MAX_ATTEMPTS))
            ),
            plan_catalog_path=os.getenv("PLAN_CATALOG_PATH", str(DEFAULT_PLAN_CATALOG_PATH)),
            retention_coupon_id=os.getenv("RETENTION_COUPON_ID", DEFAULT_RETENTION_COUPON_ID),
        )

    def missing_provider_settings(self) -> list[str]:
        """Names of unset variables the providers need (values never logged)."""
        required = {
            "STRIPE_SECRET_KEY": self.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": self.stripe_webhook_secret,
            "APPLE_SHARED_SECRET": self.apple_shared_secret,
            "AUTH_JWT_SECRET": self.auth_jwt_secret,
        }
        return [name for name, value in required.items() if not value]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (tests)."""
    global _settings
    _settings = None
