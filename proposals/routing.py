"""Approval routing: which reviewers and final approver handle a requested amount."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from proposals.errors import NotFound, ValidationError
from proposals.models import ApprovalRoute, Project, User, UserPosition


@dataclass(frozen=True)
class Route:
    reviewer_ids: Tuple[int, ...]
    final_approver_id: Optional[int]
    amount_threshold: Optional[Decimal] = None


def resolve_route(routes: Iterable[ApprovalRoute], requested_amount: Decimal) -> Route:
    """Select the route with the highest threshold not exceeding the amount.

    Falls back to the lowest-threshold route when every threshold is above
    the amount. Raises NotFound when no routes are configured.
    """
    ordered = sorted(routes, key=lambda r: Decimal(r.amount_threshold))
    if not ordered:
        raise NotFound("No approval routes are configured")

    selected = ordered[0]
    for route in ordered:
        if Decimal(route.amount_threshold) <= requested_amount:
            selected = route

    return Route(
        reviewer_ids=tuple(dict.fromkeys(int(rid) for rid in selected.reviewer_ids)),
        final_approver_id=selected.final_approver_user_id,
        amount_threshold=Decimal(selected.amount_threshold),
    )


def route_for_project(db: Session, project: Project) -> Route:
    """Resolve the route for a project, degrading to its explicit assignment."""
    routes = db.query(ApprovalRoute).all()
    try:
        return resolve_route(routes, Decimal(project.requested_amount))
    except NotFound:
        reviewer_ids: Tuple[int, ...] = (
            (project.reviewer_id,) if project.reviewer_id is not None else ()
        )
        return Route(
            reviewer_ids=reviewer_ids,
            final_approver_id=project.final_approver_user_id,
        )


def list_routes(db: Session) -> list[ApprovalRoute]:
    return db.query(ApprovalRoute).order_by(ApprovalRoute.amount_threshold).all()


def upsert_route(
    db: Session,
    amount_threshold: Decimal,
    reviewer_ids: list[int],
    final_approver_user_id: int,
) -> ApprovalRoute:
    """Create or replace the route for a threshold (administrators only)."""
    if amount_threshold < 0:
        raise ValidationError("Amount threshold must not be negative")
    if not reviewer_ids:
        raise ValidationError("At least one reviewer is required")

    users = {
        u.id: u
        for u in db.query(User)
        .filter(User.id.in_(set(reviewer_ids) | {final_approver_user_id}))
        .all()
    }
    for rid in reviewer_ids:
        user = users.get(rid)
        if user is None:
            raise NotFound(f"Reviewer {rid} not found")
        if user.position != UserPosition.REVIEWER:
            raise ValidationError(f"User {rid} is not a project reviewer")
    if final_approver_user_id not in users:
        raise NotFound(f"Final approver {final_approver_user_id} not found")
    if final_approver_user_id in reviewer_ids:
        raise ValidationError("The final approver cannot also be a reviewer")

    route = (
        db.query(ApprovalRoute)
        .filter(ApprovalRoute.amount_threshold == amount_threshold)
        .first()
    )
    if route is None:
        route = ApprovalRoute(amount_threshold=amount_threshold)
        db.add(route)
    route.reviewer_ids = list(dict.fromkeys(reviewer_ids))
    route.final_approver_user_id = final_approver_user_id
    db.commit()
    db.refresh(route)
    return route
