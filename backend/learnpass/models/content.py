"""
Video content model.

Only the columns the access validator needs are modelled here; upload and
transcoding state live in the media pipeline.
"""

import uuid

from sqlalchemy import Column, String, Boolean, Integer

from learnpass.db_base import Base
from learnpass.models.base import TimestampMixin


class Video(Base, TimestampMixin):
    """A playable content item and its access policy."""

    __tablename__ = "videos"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(500), nullable=False)
    playback_id = Column(
        String(255),
        nullable=True,
        comment="Playable stream reference; returned only on granted access"
    )
    is_free = Column(Boolean, nullable=False, default=False)
    is_published = Column(Boolean, nullable=False, default=False)
    drip_days = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Staged-release delay from the current period start"
    )
