"""Team invite routes."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from learnpass.api.dependencies.providers import get_catalog, get_optional_stripe_client
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.database.session import get_db_session
from learnpass.platform.auth import CurrentUser, get_current_user
from learnpass.teams.service import TeamService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teams", tags=["teams"])


class InviteResponseRequest(BaseModel):
    action: Literal["accept", "decline"]


@router.post("/invites/{invite_id}")
async def respond_to_invite(
    invite_id: str,
    body: InviteResponseRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Accept or decline a team invite; accepting schedules any individual plan to end."""
    service = TeamService(db, catalog, get_optional_stripe_client(request))
    return await service.respond_to_invite(user.user_id, invite_id, body.action)
