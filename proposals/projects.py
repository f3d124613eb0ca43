"""Project application CRUD, phase tracking and the approved-projects dashboard."""

from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from proposals.access import ensure_executor, ensure_participant, get_project
from proposals.errors import Forbidden, InvalidState, NotFound, ValidationError
from proposals.logging import audit_log
from proposals.models import (
    ApplicationStatus,
    BudgetEntry,
    KpiReport,
    Project,
    ProjectPhase,
    ProjectStatus,
    User,
    UserPosition,
)

logger = structlog.get_logger()

EDITABLE_FIELDS = (
    "name",
    "description",
    "requested_amount",
    "reviewer_id",
    "final_approver_user_id",
)


def _validate_amount(amount: Optional[Decimal]) -> None:
    if amount is None or amount <= 0:
        raise ValidationError("Requested amount must be greater than 0")


def _validate_assignees(
    db: Session,
    executor: User,
    reviewer_id: Optional[int],
    final_approver_user_id: Optional[int],
) -> None:
    if reviewer_id is not None:
        reviewer = db.get(User, reviewer_id)
        if reviewer is None:
            raise NotFound(f"Reviewer {reviewer_id} not found")
        if reviewer.position != UserPosition.REVIEWER:
            raise ValidationError(f"User {reviewer_id} is not a project reviewer")
        if reviewer.id == executor.id:
            raise ValidationError("The executor cannot review their own application")
    if final_approver_user_id is not None:
        if db.get(User, final_approver_user_id) is None:
            raise NotFound(f"Final approver {final_approver_user_id} not found")
        if final_approver_user_id == executor.id:
            raise ValidationError("The executor cannot approve their own application")
    if reviewer_id is not None and reviewer_id == final_approver_user_id:
        raise ValidationError("The final approver cannot also be the reviewer")


def create_project(
    db: Session,
    user: User,
    name: str,
    requested_amount: Decimal,
    description: str = "",
    reviewer_id: Optional[int] = None,
    final_approver_user_id: Optional[int] = None,
) -> Project:
    """Create a new application in draft status."""
    if user.position != UserPosition.EXECUTOR:
        raise Forbidden("Only executors can create project applications")
    if not name or not name.strip():
        raise ValidationError("Project name is required")
    _validate_amount(requested_amount)
    _validate_assignees(db, user, reviewer_id, final_approver_user_id)

    project = Project(
        name=name.strip(),
        description=description or "",
        requested_amount=requested_amount,
        executor_id=user.id,
        reviewer_id=reviewer_id,
        final_approver_user_id=final_approver_user_id,
        status=ProjectStatus.PLANNING,
        application_status=ApplicationStatus.DRAFT,
        reviewer_approvals={},
    )
    db.add(project)
    db.commit()
    db.refresh(project)

    logger.info("project_created", project_id=project.id, executor_id=user.id)
    return project


def get_project_for_user(db: Session, project_id: int, user: User) -> Project:
    project = get_project(db, project_id)
    ensure_participant(db, project, user)
    return project


def update_project(db: Session, project_id: int, user: User, changes: dict) -> Project:
    """Edit a draft application. Only fields in EDITABLE_FIELDS are applied."""
    project = get_project(db, project_id)
    ensure_executor(project, user, "edit the application")
    if project.application_status != ApplicationStatus.DRAFT:
        raise InvalidState("Only draft applications can be edited")

    updates = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
    if "name" in updates and (not updates["name"] or not updates["name"].strip()):
        raise ValidationError("Project name is required")
    if "description" in updates and updates["description"] is None:
        raise ValidationError("Description cannot be null; send an empty string to clear it")
    if "requested_amount" in updates:
        _validate_amount(updates["requested_amount"])
    _validate_assignees(
        db,
        user,
        updates.get("reviewer_id", project.reviewer_id),
        updates.get("final_approver_user_id", project.final_approver_user_id),
    )

    for field, value in updates.items():
        setattr(project, field, value.strip() if field == "name" else value)
    db.commit()
    db.refresh(project)
    return project


def delete_project(db: Session, project_id: int, user: User) -> None:
    project = get_project(db, project_id)
    ensure_executor(project, user, "delete the application")
    if project.application_status not in (
        ApplicationStatus.DRAFT,
        ApplicationStatus.REJECTED,
    ):
        raise InvalidState("Only draft or rejected applications can be deleted")
    db.delete(project)
    db.commit()
    logger.info("project_deleted", project_id=project_id)
    audit_log("project_deleted", user.id, project_id)


def list_my_projects(db: Session, user: User) -> List[Project]:
    return (
        db.query(Project)
        .filter(Project.executor_id == user.id)
        .order_by(Project.created_at.desc(), Project.id.desc())
        .all()
    )


def update_phase(
    db: Session, project_id: int, user: User, phase: ProjectPhase
) -> Project:
    project = get_project(db, project_id)
    if not (user.is_admin or project.executor_id == user.id):
        raise Forbidden("Only the project executor can change the phase")
    if project.application_status != ApplicationStatus.APPROVED:
        raise InvalidState("Phase can only be set on approved projects")
    previous = project.project_phase
    project.project_phase = phase
    db.commit()
    db.refresh(project)
    logger.info(
        "project_phase_changed",
        project_id=project.id,
        previous=previous.value if previous else None,
        phase=phase.value,
    )
    return project


def approved_dashboard(db: Session) -> dict:
    """Approved projects grouped by phase, every phase present."""
    projects = (
        db.query(Project)
        .filter(Project.application_status == ApplicationStatus.APPROVED)
        .order_by(Project.final_approved_at, Project.id)
        .all()
    )
    ids = [p.id for p in projects]

    budget_used: dict[int, Decimal] = {}
    report_counts: dict[int, int] = {}
    if ids:
        budget_used = {
            project_id: Decimal(total or 0)
            for project_id, total in db.query(
                BudgetEntry.project_id,
                func.sum(BudgetEntry.opex_used + BudgetEntry.capex_used),
            )
            .filter(BudgetEntry.project_id.in_(ids))
            .group_by(BudgetEntry.project_id)
            .all()
        }
        report_counts = dict(
            db.query(KpiReport.project_id, func.count(KpiReport.id))
            .filter(KpiReport.project_id.in_(ids))
            .group_by(KpiReport.project_id)
            .all()
        )

    phases = {}
    for phase in ProjectPhase:
        members = [
            p
            for p in projects
            if (p.project_phase or ProjectPhase.MVP_DEVELOPMENT) == phase
        ]
        phases[phase.value] = {
            "projects": [
                {
                    "id": p.id,
                    "name": p.name,
                    "executor_id": p.executor_id,
                    "requested_amount": Decimal(p.requested_amount),
                    "budget_used": budget_used.get(p.id, Decimal("0")),
                    "kpi_report_count": report_counts.get(p.id, 0),
                    "final_approved_at": p.final_approved_at,
                }
                for p in members
            ],
            "summary": {
                "project_count": len(members),
                "total_requested_amount": sum(
                    (Decimal(p.requested_amount) for p in members), Decimal("0")
                ),
                "total_budget_used": sum(
                    (budget_used.get(p.id, Decimal("0")) for p in members),
                    Decimal("0"),
                ),
                "total_kpi_reports": sum(report_counts.get(p.id, 0) for p in members),
            },
        }
    return {"phases": phases}
