"""
Database models for entitlements, subscription mirrors and the revenue ledger.

Importing this package registers every table on the shared Base metadata.
"""

from learnpass.models.base import TimestampMixin, UTCDateTime, JSONType, utcnow
from learnpass.models.profile import Profile, ProfileRole
from learnpass.models.team import Team, TeamInvite, InviteStatus, DEFAULT_MAX_SEATS
from learnpass.models.entitlement import Entitlement, EntitlementStatus
from learnpass.models.subscription_record import SubscriptionRecord, PaymentSource
from learnpass.models.revenue_ledger import (
    RevenueLedgerEntry,
    LedgerStatus,
    ProductType,
)
from learnpass.models.content import Video
from learnpass.models.retention import ExitSurvey, RetentionOffer, RetentionOfferType

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "JSONType",
    "utcnow",
    # Identity
    "Profile",
    "ProfileRole",
    # Teams
    "Team",
    "TeamInvite",
    "InviteStatus",
    "DEFAULT_MAX_SEATS",
    # Access state
    "Entitlement",
    "EntitlementStatus",
    "SubscriptionRecord",
    "PaymentSource",
    # Ledger
    "RevenueLedgerEntry",
    "LedgerStatus",
    "ProductType",
    # Content
    "Video",
    # Retention
    "ExitSurvey",
    "RetentionOffer",
    "RetentionOfferType",
]
