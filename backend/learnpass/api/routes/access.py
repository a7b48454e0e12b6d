"""
Content access check.

The response only includes the video (and its playback id) when access
is granted.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from learnpass.access.validator import AccessValidator
from learnpass.api.dependencies.providers import get_catalog
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.database.session import get_db_session
from learnpass.platform.auth import CurrentUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["access"])


class AccessCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(..., alias="videoId", min_length=1)


class VideoRef(BaseModel):
    id: str
    title: str
    playback_id: Optional[str] = None


class AccessCheckResponse(BaseModel):
    hasAccess: bool
    reason: Optional[str] = None
    daysRemaining: Optional[int] = None
    video: Optional[VideoRef] = None


@router.post("/check", response_model=AccessCheckResponse)
def check_access(
    body: AccessCheckRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
):
    decision = AccessValidator(db, catalog).check_access(user.user_id, body.video_id)
    return decision.to_response()
