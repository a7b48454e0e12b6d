"""
Team invites and the team-join cancellation rule.

A user joining a team must not keep paying for an individual plan. On
join, an active individual card-billing subscription is scheduled to
cancel at the end of its current period; access continues until then.
Reaching the provider is best-effort: a failure is logged and reported,
and the join goes ahead.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from learnpass.billing.derivation import SubscriptionStore
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.integrations.stripe_billing.billing_client import (
    StripeBillingClient,
    StripeBillingError,
)
from learnpass.models.base import utcnow
from learnpass.models.entitlement import EntitlementStatus
from learnpass.models.profile import Profile
from learnpass.models.subscription_record import PaymentSource
from learnpass.models.team import InviteStatus, Team, TeamInvite
from learnpass.platform.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

INVITE_ACTIONS = ("accept", "decline")


class TeamService:
    """Invite responses and team membership."""

    def __init__(
        self,
        db_session: Session,
        catalog: PlanCatalog,
        client: Optional[StripeBillingClient] = None,
    ):
        self.db = db_session
        self.catalog = catalog
        self.client = client
        self.store = SubscriptionStore(db_session, catalog)

    def _get_invite(self, invite_id: str) -> TeamInvite:
        invite = self.db.query(TeamInvite).filter(TeamInvite.id == invite_id).first()
        if invite is None:
            raise NotFoundError("Team invite", invite_id)
        return invite

    def _get_team(self, team_id: str) -> Team:
        team = self.db.query(Team).filter(Team.id == team_id).first()
        if team is None:
            raise NotFoundError("Team", team_id)
        return team

    def seats_used(self, team_id: str) -> int:
        return self.db.query(Profile).filter(Profile.team_id == team_id).count()

    async def schedule_individual_cancellation(self, user_id: str) -> Dict[str, Any]:
        """
        Schedule the user's individual card subscription to end at period end.

        Flushes the flag changes; the caller commits with the join.
        """
        now = utcnow()
        entitlement = self.store.get_entitlement(user_id)
        period_end = entitlement.current_period_end if entitlement else None
        applies = (
            entitlement is not None
            and entitlement.status == EntitlementStatus.ACTIVE.value
            and entitlement.plan in self.catalog.individual_plans()
            and entitlement.source == PaymentSource.STRIPE.value
            and bool(entitlement.external_subscription_id)
            and (period_end is None or period_end > now)
        )
        if not applies:
            return {"subscription_cancelled": False, "reason": "no_individual_subscription"}

        subscription_id = entitlement.external_subscription_id
        if entitlement.cancel_at_period_end:
            return {"subscription_cancelled": True, "reason": "already_scheduled"}

        if self.client is None:
            logger.warning("No billing client; individual subscription left for out-of-band cancel", extra={
                "user_id": user_id,
                "subscription_id": subscription_id,
            })
            return {"subscription_cancelled": False, "reason": "provider_unavailable"}

        try:
            await self.client.set_cancel_at_period_end(subscription_id, True)
        except StripeBillingError as e:
            logger.error("Failed to schedule individual subscription cancellation", extra={
                "user_id": user_id,
                "subscription_id": subscription_id,
                "error": e.message,
                "stripe_code": e.code,
            })
            return {"subscription_cancelled": False, "reason": "provider_error"}

        self.store.set_cancel_at_period_end(user_id, PaymentSource.STRIPE.value, True)
        logger.info("Individual subscription scheduled to cancel at period end", extra={
            "user_id": user_id,
            "subscription_id": subscription_id,
            "current_period_end": period_end.isoformat() if period_end else None,
        })
        return {"subscription_cancelled": True, "subscription_id": subscription_id}

    async def respond_to_invite(
        self,
        user_id: str,
        invite_id: str,
        action: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if action not in INVITE_ACTIONS:
            raise ValidationError(f"Invalid action: {action}", details={"allowed": list(INVITE_ACTIONS)})

        now = now or utcnow()
        invite = self._get_invite(invite_id)
        if invite.invited_user_id != user_id:
            raise AuthorizationError("Invite belongs to another user")
        if invite.status != InviteStatus.PENDING.value:
            raise ConflictError(
                f"Invite already {invite.status}",
                details={"invite_id": invite_id, "status": invite.status},
            )

        # Expiry applies to both answers
        if invite.expires_at is not None and invite.expires_at <= now:
            invite.status = InviteStatus.EXPIRED.value
            self.db.commit()
            raise ConflictError("Invite has expired", details={"invite_id": invite_id})

        if action == "decline":
            invite.status = InviteStatus.DECLINED.value
            invite.responded_at = now
            self.db.commit()
            logger.info("Team invite declined", extra={"user_id": user_id, "invite_id": invite_id})
            return {"action": action, "status": invite.status, "team_id": invite.team_id}

        team = self._get_team(invite.team_id)
        profile = self.db.query(Profile).filter(Profile.id == user_id).first()
        if profile is None:
            raise NotFoundError("Profile", user_id)
        if profile.team_id == team.id:
            raise ConflictError("Already a member of this team", details={"team_id": team.id})
        if self.seats_used(team.id) >= team.max_seats:
            raise ConflictError("Team has no available seats", details={
                "team_id": team.id,
                "max_seats": team.max_seats,
            })

        try:
            coupling = await self.schedule_individual_cancellation(user_id)
            profile.team_id = team.id
            invite.status = InviteStatus.ACCEPTED.value
            invite.responded_at = now
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Team invite accepted", extra={
            "user_id": user_id,
            "invite_id": invite_id,
            "team_id": team.id,
            "subscription_cancelled": coupling["subscription_cancelled"],
        })
        return {
            "action": action,
            "status": invite.status,
            "team_id": team.id,
            **coupling,
        }
