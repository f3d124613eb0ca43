"""Caller identity: bearer credential -> verified identity -> registered user."""

import hashlib
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from proposals.config import AUTH_MODE_TRUSTED, get_settings
from proposals.database import get_db
from proposals.errors import Forbidden, NotFound, Unauthenticated
from proposals.models import User

logger = structlog.get_logger()

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    subject_id: str
    email: str
    email_verified: bool = False


class IdentityVerifier(Protocol):
    def verify(self, credential: str) -> Identity:
        ...


def _hash_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:12]


class JwtIdentityVerifier:
    """Verifies HS256 tokens issued by the identity provider."""

    def __init__(self, secret: str, audience: str):
        self.secret = secret
        self.audience = audience

    def verify(self, credential: str) -> Identity:
        try:
            payload: dict[str, Any] = jwt.decode(
                credential,
                self.secret,
                algorithms=["HS256"],
                audience=self.audience,
            )
        except jwt.ExpiredSignatureError:
            logger.warning("jwt_expired")
            raise Unauthenticated("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning("jwt_invalid", error=str(e))
            raise Unauthenticated("Invalid token")

        subject_id = payload.get("sub")
        email = payload.get("email")
        if not subject_id or not email:
            raise Unauthenticated("Invalid token payload")
        return Identity(
            subject_id=str(subject_id),
            email=email.strip().lower(),
            email_verified=bool(payload.get("email_verified", False)),
        )


class TrustedIdentityVerifier:
    """Treats the credential itself as the caller's email.

    Only for local development and tests.
    """

    def verify(self, credential: str) -> Identity:
        email = credential.strip().lower()
        if "@" not in email:
            raise Unauthenticated("Invalid credential")
        return Identity(subject_id=email, email=email, email_verified=True)


def get_verifier() -> IdentityVerifier:
    settings = get_settings()
    if settings.AUTH_MODE == AUTH_MODE_TRUSTED:
        if settings.is_production:
            raise Unauthenticated("Trusted identity mode is disabled in production")
        return TrustedIdentityVerifier()
    if not settings.AUTH_JWT_SECRET:
        logger.error("jwt_secret_missing")
        raise Unauthenticated("Authentication is not configured")
    return JwtIdentityVerifier(settings.AUTH_JWT_SECRET, settings.AUTH_JWT_AUDIENCE)


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    verifier: IdentityVerifier = Depends(get_verifier),
) -> Identity:
    if credentials is None:
        raise Unauthenticated("Not authenticated")
    identity = verifier.verify(credentials.credentials)
    logger.debug("caller_authenticated", email_hash=_hash_email(identity.email))
    return identity


def get_registered_user(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
) -> User:
    """The caller's account, approved or not."""
    user = db.query(User).filter(User.email == identity.email).first()
    if user is None:
        raise NotFound("User profile not found. Please register first.")
    return user


def get_current_user(user: User = Depends(get_registered_user)) -> User:
    if not user.is_approved:
        raise Forbidden("Your account is waiting for administrator approval")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise Forbidden("Administrator access required")
    return user
