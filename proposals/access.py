"""Project lookup and role checks shared by the workflow, ledger and document services."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from proposals.errors import Forbidden, NotFound
from proposals.models import Project, ProjectReviewer, User


def get_project(db: Session, project_id: int, fresh: bool = False) -> Project:
    """Retrieve a project by ID or raise NotFound.

    ``fresh`` reloads the row even if the session already holds it.
    """
    stmt = select(Project).where(Project.id == project_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    project = db.execute(stmt).scalar_one_or_none()
    if project is None:
        raise NotFound(f"Project {project_id} not found")
    return project


def assigned_reviewer_ids(db: Session, project_id: int) -> list[int]:
    rows = db.execute(
        select(ProjectReviewer.reviewer_id)
        .where(ProjectReviewer.project_id == project_id)
        .order_by(ProjectReviewer.reviewer_id)
    ).all()
    return [row[0] for row in rows]


def is_executor(project: Project, user: User) -> bool:
    return project.executor_id == user.id


def ensure_executor(project: Project, user: User, action: str) -> None:
    if not is_executor(project, user):
        raise Forbidden(f"Only the project executor can {action}")


def is_participant(db: Session, project: Project, user: User) -> bool:
    """Executor, assigned reviewer, final approver or administrator."""
    if user.is_admin or is_executor(project, user):
        return True
    if project.final_approver_user_id == user.id:
        return True
    return user.id in assigned_reviewer_ids(db, project.id)


def ensure_participant(db: Session, project: Project, user: User) -> None:
    if not is_participant(db, project, user):
        raise Forbidden("You do not have access to this project")
