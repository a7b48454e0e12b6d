"""
Access decisions for playable content.

Order of checks:
1. unpublished content is never available
2. free content is always granted
3. otherwise the user's entitlement must be active, on a paid plan and
   inside its period
4. staged release: the content unlocks drip_days after the entitlement's
   current period start; with no recorded period start there is no delay

A denied decision never carries the content reference; the playback id
is the capability and is only handed out alongside a grant.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.models.base import utcnow
from learnpass.models.content import Video
from learnpass.models.entitlement import Entitlement, EntitlementStatus
from learnpass.platform.errors import NotFoundError

logger = logging.getLogger(__name__)


REASON_NOT_AVAILABLE = "not available"
REASON_SUBSCRIPTION_REQUIRED = "subscription required"

SECONDS_PER_DAY = 86400


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def unlock_reason(days: int) -> str:
    unit = "day" if days == 1 else "days"
    return f"This content unlocks in {days} {unit}"


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    reason: Optional[str] = None
    content: Optional[Dict[str, Any]] = None
    days_remaining: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.granted and self.content is not None:
            raise ValueError("A denied decision cannot carry a content reference")

    @classmethod
    def deny(cls, reason: str, days_remaining: Optional[int] = None) -> "AccessDecision":
        return cls(granted=False, reason=reason, content=None, days_remaining=days_remaining)

    @classmethod
    def grant(cls, video: Video) -> "AccessDecision":
        return cls(
            granted=True,
            content={
                "id": video.id,
                "title": video.title,
                "playback_id": video.playback_id,
            },
        )

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"hasAccess": self.granted, "video": self.content if self.granted else None}
        if self.reason:
            body["reason"] = self.reason
        if self.days_remaining is not None:
            body["daysRemaining"] = self.days_remaining
        return body


class AccessValidator:
    """Read-only: never writes entitlements or content."""

    def __init__(self, db_session: Session, catalog: PlanCatalog):
        self.db = db_session
        self.catalog = catalog

    def _has_paid_access(self, entitlement: Optional[Entitlement], now: datetime) -> bool:
        if entitlement is None:
            return False
        period_end = _aware(entitlement.current_period_end)
        return (
            entitlement.status == EntitlementStatus.ACTIVE.value
            and self.catalog.is_paid(entitlement.plan)
            and (period_end is None or period_end > now)
        )

    def check_access(
        self,
        user_id: str,
        content_id: str,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        now = now or utcnow()
        video = self.db.query(Video).filter(Video.id == content_id).first()
        if video is None:
            raise NotFoundError("Video", content_id)

        if not video.is_published:
            return AccessDecision.deny(REASON_NOT_AVAILABLE)

        if video.is_free:
            return AccessDecision.grant(video)

        entitlement = self.db.query(Entitlement).filter(Entitlement.user_id == user_id).first()
        if not self._has_paid_access(entitlement, now):
            logger.info("Access denied: no paid entitlement", extra={
                "user_id": user_id,
                "video_id": content_id,
                "status": entitlement.status if entitlement else None,
                "plan": entitlement.plan if entitlement else None,
            })
            return AccessDecision.deny(REASON_SUBSCRIPTION_REQUIRED)

        period_start = _aware(entitlement.current_period_start)
        if video.drip_days and video.drip_days > 0 and period_start is not None:
            unlock_at = period_start + timedelta(days=video.drip_days)
            if now < unlock_at:
                remaining = math.ceil((unlock_at - now).total_seconds() / SECONDS_PER_DAY)
                return AccessDecision.deny(unlock_reason(remaining), days_remaining=remaining)

        return AccessDecision.grant(video)
