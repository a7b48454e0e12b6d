"""
Cancellation feedback and retention offers.

An exit survey is stored when a user cancels their own card-billing
subscription and gives a reason. A retention offer is the one-time
discount a user can accept instead of leaving; at most one per user.
"""

import enum
import uuid

from sqlalchemy import Column, String, Text, UniqueConstraint

from learnpass.db_base import Base
from learnpass.models.base import TimestampMixin, UTCDateTime


class RetentionOfferType(str, enum.Enum):
    TWO_MONTHS_FREE = "two_months_free"


class ExitSurvey(Base, TimestampMixin):
    """Why a user scheduled their subscription to end."""

    __tablename__ = "exit_surveys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    reason = Column(String(255), nullable=False)
    details = Column(Text, nullable=True)
    subscription_id = Column(String(255), nullable=True)
    plan = Column(String(32), nullable=True)


class RetentionOffer(Base, TimestampMixin):
    """A retention discount applied to a user's subscription."""

    __tablename__ = "retention_offers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    offer_type = Column(
        String(50),
        nullable=False,
        default=RetentionOfferType.TWO_MONTHS_FREE.value
    )
    reason = Column(String(255), nullable=True)
    coupon_id = Column(String(255), nullable=False)
    subscription_id = Column(String(255), nullable=False)
    free_until = Column(UTCDateTime, nullable=False)
    accepted_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_retention_offers_user_id"),
    )

    def __repr__(self) -> str:
        return f"<RetentionOffer(user_id={self.user_id}, offer_type={self.offer_type}, free_until={self.free_until})>"
