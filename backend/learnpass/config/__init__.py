"""Configuration module for backend services."""

from learnpass.config.settings import (
    DEFAULT_PLAN_CATALOG_PATH,
    Settings,
    get_settings,
    reset_settings,
)

__all__ = [
    "DEFAULT_PLAN_CATALOG_PATH",
    "Settings",
    "get_settings",
    "reset_settings",
]
