"""Profile and entitlement routes for the signed-in user."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from learnpass.api.dependencies.providers import get_catalog
from learnpass.billing.derivation import SubscriptionStore
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.database.session import get_db_session
from learnpass.platform.auth import CurrentUser, get_current_user
from learnpass.platform.errors import NotFoundError
from learnpass.services.profile_service import ProfileService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["profiles"])


class CreateProfileRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=320)
    full_name: Optional[str] = Field(None, max_length=255)


class EntitlementResponse(BaseModel):
    user_id: str
    plan: str
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    source: Optional[str]


class ProfileResponse(BaseModel):
    id: str
    email: Optional[str]
    full_name: Optional[str]
    role: str
    team_id: Optional[str]
    entitlement: EntitlementResponse


def _entitlement_response(entitlement) -> EntitlementResponse:
    return EntitlementResponse(
        user_id=entitlement.user_id,
        plan=entitlement.plan,
        status=entitlement.status,
        current_period_start=entitlement.current_period_start,
        current_period_end=entitlement.current_period_end,
        cancel_at_period_end=entitlement.cancel_at_period_end,
        source=entitlement.source,
    )


@router.post("/profiles", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def create_profile(
    body: CreateProfileRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Create the caller's profile with a free entitlement. Role is always member."""
    profile, entitlement = ProfileService(db, catalog).create_profile(
        user.user_id,
        email=body.email,
        full_name=body.full_name,
    )
    return ProfileResponse(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        role=profile.role,
        team_id=profile.team_id,
        entitlement=_entitlement_response(entitlement),
    )


@router.get("/entitlement", response_model=EntitlementResponse)
def get_entitlement(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    entitlement = SubscriptionStore(db, catalog).get_entitlement(user.user_id)
    if entitlement is None:
        raise NotFoundError("Entitlement", user.user_id)
    return _entitlement_response(entitlement)
