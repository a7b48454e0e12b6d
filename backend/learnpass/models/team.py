"""
Team account models.

A team (salon) owns a number of seats; members join through invites.
"""

import enum
import uuid

from sqlalchemy import Column, String, Integer, ForeignKey

from learnpass.db_base import Base
from learnpass.models.base import TimestampMixin, UTCDateTime


DEFAULT_MAX_SEATS = 5


class InviteStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class Team(Base, TimestampMixin):
    """A team account with a seat limit."""

    __tablename__ = "teams"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    owner_id = Column(String(255), nullable=False, index=True)
    max_seats = Column(Integer, nullable=False, default=DEFAULT_MAX_SEATS)


class TeamInvite(Base, TimestampMixin):
    """Invitation for a user to join a team."""

    __tablename__ = "team_invites"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    team_id = Column(String(36), ForeignKey("teams.id"), nullable=False, index=True)
    invited_user_id = Column(String(255), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=InviteStatus.PENDING.value)
    expires_at = Column(UTCDateTime, nullable=True)
    responded_at = Column(UTCDateTime, nullable=True)
