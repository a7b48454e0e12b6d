"""
Subscription record model - the raw per-source mirror.

One row per (user, source) holding the latest state that provider
reported. Support tooling reads this table to see what the provider says;
access decisions never read it directly.
"""

import enum
import uuid

from sqlalchemy import Column, String, Boolean, Index, UniqueConstraint

from learnpass.db_base import Base
from learnpass.models.base import TimestampMixin, UTCDateTime, JSONType


class PaymentSource(str, enum.Enum):
    """Payment sources a subscription can come from."""
    STRIPE = "stripe"    # card billing
    APPLE = "apple"      # iOS in-app purchase
    GOOGLE = "google"    # Android in-app purchase


class SubscriptionRecord(Base, TimestampMixin):
    """Latest known provider state for one user and one source."""

    __tablename__ = "subscription_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    source = Column(String(50), nullable=False)
    external_id = Column(
        String(255),
        nullable=False,
        comment="Provider subscription id or original transaction id"
    )
    status = Column(String(32), nullable=False)
    plan = Column(String(32), nullable=True)
    current_period_start = Column(UTCDateTime, nullable=True)
    current_period_end = Column(UTCDateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    paused_at = Column(UTCDateTime, nullable=True)
    provider_metadata = Column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "source", name="uq_subscription_records_user_source"),
        Index("ix_subscription_records_source_external", "source", "external_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, source={self.source}, "
            f"external_id={self.external_id}, status={self.status})>"
        )
