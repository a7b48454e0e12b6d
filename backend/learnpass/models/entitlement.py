"""
Entitlement model - the canonical access state of one user.

Exactly one row per user. Rows are only written through
SubscriptionStore (source adapters, admin gateway, team-join rule) as an
upsert keyed on user_id; the last write wins.

Invariant: status=active with a paid plan implies current_period_end is
null or in the future at write time. cancel_at_period_end never changes
status by itself.
"""

import enum
import uuid

from sqlalchemy import Column, String, Boolean, UniqueConstraint

from learnpass.db_base import Base
from learnpass.models.base import TimestampMixin, UTCDateTime


class EntitlementStatus(str, enum.Enum):
    """Canonical access status values."""
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    EXPIRED = "expired"
    PAUSED = "paused"


class Entitlement(Base, TimestampMixin):
    """Merged access record derived from the user's subscription records."""

    __tablename__ = "entitlements"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning user (unique)"
    )
    plan = Column(String(32), nullable=False, default="free")
    status = Column(
        String(32),
        nullable=False,
        default=EntitlementStatus.ACTIVE.value
    )
    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    retention_offer_applied = Column(Boolean, nullable=False, default=False)

    # Which subscription record the current state was derived from
    source = Column(String(50), nullable=True)
    external_subscription_id = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_entitlements_user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Entitlement(user_id={self.user_id}, plan={self.plan}, "
            f"status={self.status}, cancel_at_period_end={self.cancel_at_period_end})>"
        )
