"""
Caller identity for API routes.

Requests carry a bearer JWT (HS256 by default) whose subject is the user
id. The administrative role is never read from the token; it comes from
the caller's profile row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from learnpass.config.settings import Settings
from learnpass.database.session import get_db_session
from learnpass.models.profile import Profile, ProfileRole
from learnpass.platform.errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str = ProfileRole.MEMBER.value
    email: Optional[str] = None
    has_profile: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ProfileRole.ADMIN.value


def create_access_token(
    user_id: str,
    secret: str,
    algorithm: str = "HS256",
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    """Mint a bearer token for user_id (tooling and tests)."""
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(token: str, secret: str, algorithm: str = "HS256") -> str:
    """Return the token subject or raise AuthenticationError."""
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.info("Rejected bearer token", extra={"error_type": type(e).__name__})
        raise AuthenticationError("Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Token has no subject")
    return str(subject)


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Missing bearer token")
    return token.strip()


def get_current_user(
    request: Request,
    db: Session = Depends(get_db_session),
) -> CurrentUser:
    settings: Settings = request.app.state.settings
    if not settings.auth_jwt_secret:
        logger.error("AUTH_JWT_SECRET is not configured")
        raise AuthenticationError("Authentication is not configured")

    user_id = decode_access_token(_bearer_token(request), settings.auth_jwt_secret, settings.auth_jwt_algorithm)
    profile = db.query(Profile).filter(Profile.id == user_id).first()
    if profile is None:
        return CurrentUser(user_id=user_id)
    return CurrentUser(user_id=user_id, role=profile.role, email=profile.email, has_profile=True)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        logger.warning("Admin route denied", extra={"user_id": user.user_id})
        raise AuthorizationError()
    return user
