"""
Profile creation.

Every profile starts with a free/active entitlement, written in the same
commit so a user never exists without one.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from learnpass.billing.derivation import SubscriptionStore
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.models.entitlement import Entitlement
from learnpass.models.profile import Profile, ProfileRole
from learnpass.platform.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)


class ProfileService:
    def __init__(self, db_session: Session, catalog: PlanCatalog):
        self.db = db_session
        self.store = SubscriptionStore(db_session, catalog)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        return self.db.query(Profile).filter(Profile.id == user_id).first()

    def create_profile(
        self,
        user_id: str,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        role: str = ProfileRole.MEMBER.value,
    ) -> tuple[Profile, Entitlement]:
        if not user_id:
            raise ValidationError("user_id is required")
        if role not in {r.value for r in ProfileRole}:
            raise ValidationError(f"Invalid role: {role}")
        if self.get_profile(user_id) is not None:
            raise ConflictError("Profile already exists", details={"user_id": user_id})

        profile = Profile(id=user_id, email=email, full_name=full_name, role=role)
        try:
            self.db.add(profile)
            self.db.flush()
            entitlement = self.store.ensure_entitlement(user_id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Profile already exists", details={"user_id": user_id})

        logger.info("Profile created", extra={"user_id": user_id, "role": role})
        return profile, entitlement
