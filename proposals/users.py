"""User registration and administrator approval of accounts."""

from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from proposals.errors import InvalidState, NotFound, ValidationError
from proposals.identity import Identity
from proposals.models import User, UserPosition

logger = structlog.get_logger()


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


def register_user(
    db: Session, identity: Identity, name: str, position: UserPosition
) -> User:
    """Create an account for a verified identity. New accounts start unapproved."""
    if not name or not name.strip():
        raise ValidationError("Name is required")
    existing = db.query(User).filter(User.email == identity.email).first()
    if existing is not None:
        raise InvalidState("This email is already registered")

    user = User(
        email=identity.email,
        name=name.strip(),
        position=position,
        is_admin=False,
        is_approved=False,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("user_registered", user_id=user.id, position=position.value)
    return user


def approve_user(db: Session, admin: User, user_id: int) -> User:
    user = get_user(db, user_id)
    if user.is_approved:
        raise InvalidState(f"User {user_id} is already approved")
    user.is_approved = True
    db.commit()
    db.refresh(user)
    logger.info("user_approved", user_id=user.id, approved_by=admin.id)
    return user


def list_users(db: Session, pending_only: bool = False) -> List[User]:
    query = db.query(User)
    if pending_only:
        query = query.filter(User.is_approved.is_(False))
    return query.order_by(User.id).all()


def list_reviewers(db: Session, exclude_user_id: Optional[int] = None) -> List[User]:
    """Approved users who can be assigned as reviewers."""
    query = db.query(User).filter(
        User.position == UserPosition.REVIEWER,
        User.is_approved.is_(True),
    )
    if exclude_user_id is not None:
        query = query.filter(User.id != exclude_user_id)
    return query.order_by(User.name, User.id).all()
