"""
User profile model.

A profile is created once per authenticated user. The role column is the
only source for administrative authorization; it is never taken from a
token claim or request body.
"""

import enum

from sqlalchemy import Column, String, ForeignKey

from learnpass.db_base import Base
from learnpass.models.base import TimestampMixin


class ProfileRole(str, enum.Enum):
    """Roles a profile can hold."""
    MEMBER = "member"
    ADMIN = "admin"


class Profile(Base, TimestampMixin):
    """One row per user, keyed on the identity provider's user id."""

    __tablename__ = "profiles"

    id = Column(
        String(255),
        primary_key=True,
        comment="User identifier (token subject)"
    )
    email = Column(String(320), nullable=True)
    full_name = Column(String(255), nullable=True)
    role = Column(
        String(32),
        nullable=False,
        default=ProfileRole.MEMBER.value,
        comment="member or admin"
    )
    team_id = Column(
        String(36),
        ForeignKey("teams.id"),
        nullable=True,
        index=True,
        comment="Team account the user belongs to, if any"
    )
    stripe_customer_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Card-billing customer id, used to resolve webhook owners"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == ProfileRole.ADMIN.value

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, role={self.role}, team_id={self.team_id})>"
