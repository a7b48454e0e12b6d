"""
Learnpass entitlement and revenue reconciliation backend.

Reconciles card-billing and in-app purchase sources into one canonical
entitlement per user and an append-only revenue ledger.
"""

__version__ = "0.1.0"
