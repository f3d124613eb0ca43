"""Approval state machine for project applications.

Lifecycle: draft -> submitted -> approved | rejected, and rejected -> draft on
resubmission. Reviewer votes live in the project's ``reviewer_approvals`` JSON
map. Every write to that map is a compare-and-swap against
``approvals_version``: the UPDATE only matches when the version read by the
caller is still the stored one, so two reviewers voting at once cannot
overwrite each other. A lost race re-reads and re-merges, bounded by
``APPROVAL_CAS_MAX_ATTEMPTS``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_none

from proposals import notifications
from proposals.access import (
    assigned_reviewer_ids,
    ensure_executor,
    ensure_participant,
    get_project,
)
from proposals.config import get_settings
from proposals.errors import (
    AlreadyVoted,
    ConcurrentModification,
    Forbidden,
    InvalidState,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from proposals.logging import audit_log
from proposals.models import (
    ApplicationStatus,
    Project,
    ProjectPhase,
    ProjectReviewer,
    ProjectStatus,
    User,
    VoteStatus,
)
from proposals.notifications import NotificationDispatcher, OutgoingNotification
from proposals.routing import route_for_project
from proposals.votes import (
    ApprovalMap,
    all_approved,
    count_by_status,
    dump_approvals,
    load_approvals,
    vote_of,
    with_vote,
)

logger = structlog.get_logger()

T = TypeVar("T")


class StaleApprovalMap(Exception):
    """The approval map changed between read and conditional write."""


@dataclass(frozen=True)
class ApprovalSnapshot:
    application_status: ApplicationStatus
    approvals: ApprovalMap
    version: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_comment(comment: Optional[str], action: str) -> str:
    if comment is None or not comment.strip():
        raise ValidationError(f"A comment is required to {action}")
    return comment.strip()


# --- Persistence boundary: snapshot read and conditional write ---


def _load_snapshot(db: Session, project_id: int) -> ApprovalSnapshot:
    row = db.execute(
        select(
            Project.application_status,
            Project.reviewer_approvals,
            Project.approvals_version,
        ).where(Project.id == project_id)
    ).one_or_none()
    if row is None:
        raise NotFound(f"Project {project_id} not found")
    return ApprovalSnapshot(
        application_status=row[0],
        approvals=load_approvals(row[1]),
        version=row[2],
    )


def _swap_approvals(
    db: Session,
    project_id: int,
    expected: ApprovalSnapshot,
    values: dict[str, Any],
) -> bool:
    """Write ``values`` only if the row still matches the snapshot."""
    result = db.execute(
        update(Project)
        .where(
            Project.id == project_id,
            Project.approvals_version == expected.version,
            Project.application_status == expected.application_status,
        )
        .values(approvals_version=expected.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _with_cas_retry(operation: Callable[[], T], **context: Any) -> T:
    max_attempts = get_settings().APPROVAL_CAS_MAX_ATTEMPTS

    def _log_conflict(retry_state: Any) -> None:
        logger.warning(
            "approval_map_conflict",
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            **context,
        )

    try:
        for attempt in Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_none(),
            retry=retry_if_exception_type(StaleApprovalMap),
            before_sleep=_log_conflict,
            reraise=True,
        ):
            with attempt:
                result = operation()
    except StaleApprovalMap as exc:
        logger.warning("approval_map_retries_exhausted", max_attempts=max_attempts, **context)
        raise ConcurrentModification(
            "Someone else updated this application at the same time. Please try again.",
            meta={"attempts": max_attempts},
        ) from exc
    return result


def _commit_and_notify(
    db: Session,
    project: Project,
    outgoing: list[OutgoingNotification],
    dispatcher: Optional[NotificationDispatcher],
) -> Project:
    staged = notifications.record(db, project, outgoing)
    db.commit()
    db.refresh(project)
    notifications.deliver(db, dispatcher, staged)
    return project


# --- Submission ---


def submit_project(
    db: Session,
    project_id: int,
    user: User,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Project:
    """Move a draft application to review and assign its reviewers."""
    project = get_project(db, project_id)
    ensure_executor(project, user, "submit the application")

    if project.application_status != ApplicationStatus.DRAFT:
        raise InvalidState(
            f"Cannot submit: application is '{project.application_status.value}', not 'draft'"
        )
    if project.requested_amount is None or Decimal(project.requested_amount) <= 0:
        raise ValidationError("Requested amount must be greater than 0 to submit")

    route = route_for_project(db, project)
    if not route.reviewer_ids:
        raise ValidationError("A reviewer must be assigned before submission")
    if route.final_approver_id is None:
        raise ValidationError("A final approver must be assigned before submission")
    if user.id in route.reviewer_ids or user.id == route.final_approver_id:
        raise ValidationError("The executor cannot review their own application")

    # No votes exist while in draft, so assignments can be replaced wholesale.
    project.reviewers.clear()
    db.flush()
    for reviewer_id in route.reviewer_ids:
        project.reviewers.append(ProjectReviewer(reviewer_id=reviewer_id))

    now = _now()
    project.final_approver_user_id = route.final_approver_id
    project.reviewer_approvals = {}
    project.approvals_version = project.approvals_version + 1
    project.application_status = ApplicationStatus.SUBMITTED
    project.final_approval_status = VoteStatus.PENDING
    project.submitted_at = now
    project.updated_at = now

    outgoing = [
        OutgoingNotification(
            recipient_id=reviewer_id,
            template=notifications.REVIEW_REQUESTED,
            message=f"Project '{project.name}' is waiting for your review",
            data={"project_id": project.id, "project_name": project.name},
        )
        for reviewer_id in route.reviewer_ids
    ]
    _commit_and_notify(db, project, outgoing, dispatcher)

    logger.info(
        "application_submitted",
        project_id=project.id,
        reviewer_ids=list(route.reviewer_ids),
        final_approver_id=route.final_approver_id,
        route_threshold=str(route.amount_threshold) if route.amount_threshold is not None else None,
    )
    audit_log("application_submitted", user.id, project.id, review_round=project.review_round)
    return project


def resubmit_project(
    db: Session,
    project_id: int,
    user: User,
    supplementary_note: Optional[str],
) -> Project:
    """Return a rejected application to draft with supplementary material.

    All reviewer votes and the final decision are cleared so that approvals
    given to the earlier content do not carry over.
    """
    note = _require_comment(supplementary_note, "resubmit a rejected application")
    project = get_project(db, project_id)
    ensure_executor(project, user, "resubmit the application")

    snapshot = _load_snapshot(db, project.id)
    if snapshot.application_status != ApplicationStatus.REJECTED:
        raise InvalidState(
            f"Only rejected applications can be resubmitted (current: '{snapshot.application_status.value}')"
        )

    values = {
        "application_status": ApplicationStatus.DRAFT,
        "reviewer_approvals": {},
        "review_round": Project.review_round + 1,
        "final_approval_status": VoteStatus.PENDING,
        "final_approval_comment": None,
        "final_approved_at": None,
        "rejection_reason": None,
        "rejected_by_user_id": None,
        "rejected_at": None,
        "submitted_at": None,
        "supplementary_note": note,
        "updated_at": _now(),
    }
    if not _swap_approvals(db, project.id, snapshot, values):
        db.rollback()
        raise ConcurrentModification("The application changed while resubmitting. Please try again.")
    db.commit()
    db.refresh(project)

    logger.info("application_resubmitted", project_id=project.id, review_round=project.review_round)
    audit_log("application_resubmitted", user.id, project.id, review_round=project.review_round)
    return project


# --- Reviewer votes ---


def reviewer_approve(
    db: Session,
    project_id: int,
    user: User,
    comment: Optional[str] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Project:
    return _cast_vote(db, project_id, user, VoteStatus.APPROVED, comment, dispatcher)


def reviewer_reject(
    db: Session,
    project_id: int,
    user: User,
    comment: Optional[str],
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Project:
    return _cast_vote(db, project_id, user, VoteStatus.REJECTED, comment, dispatcher)


def _cast_vote(
    db: Session,
    project_id: int,
    user: User,
    decision: VoteStatus,
    comment: Optional[str],
    dispatcher: Optional[NotificationDispatcher],
) -> Project:
    if decision == VoteStatus.PENDING:
        raise ValidationError("Decision must be 'approved' or 'rejected'")

    project = get_project(db, project_id)
    reviewer_ids = assigned_reviewer_ids(db, project.id)
    if user.id not in reviewer_ids:
        raise Forbidden("Only an assigned reviewer can review this application")
    if decision == VoteStatus.REJECTED:
        comment = _require_comment(comment, "reject an application")

    def attempt() -> ApprovalMap:
        snapshot = _load_snapshot(db, project.id)
        if vote_of(snapshot.approvals, user.id).status != VoteStatus.PENDING:
            raise AlreadyVoted("You have already submitted a decision for this application")
        if snapshot.application_status != ApplicationStatus.SUBMITTED:
            raise InvalidState(
                f"Cannot review: application is '{snapshot.application_status.value}', not 'submitted'"
            )

        now = _now()
        merged = with_vote(snapshot.approvals, user.id, decision, comment, now)
        values: dict[str, Any] = {
            "reviewer_approvals": dump_approvals(merged),
            "updated_at": now,
        }
        if decision == VoteStatus.REJECTED:
            # First rejection ends the review
            values.update(
                application_status=ApplicationStatus.REJECTED,
                rejection_reason=comment,
                rejected_by_user_id=user.id,
                rejected_at=now,
            )

        if not _swap_approvals(db, project.id, snapshot, values):
            db.rollback()
            raise StaleApprovalMap()
        return merged

    merged = _with_cas_retry(attempt, project_id=project.id, reviewer_id=user.id)

    outgoing = [
        OutgoingNotification(
            recipient_id=project.executor_id,
            template=(
                notifications.APPLICATION_REJECTED
                if decision == VoteStatus.REJECTED
                else notifications.REVIEWER_VOTED
            ),
            message=f"Reviewer {user.name} {decision.value} project '{project.name}'",
            data={
                "project_id": project.id,
                "reviewer_id": user.id,
                "decision": decision.value,
                "review_comment": comment,
            },
        )
    ]
    if (
        decision == VoteStatus.APPROVED
        and project.final_approver_user_id is not None
        and all_approved(merged, reviewer_ids)
    ):
        outgoing.append(
            OutgoingNotification(
                recipient_id=project.final_approver_user_id,
                template=notifications.FINAL_APPROVAL_REQUESTED,
                message=f"All reviewers approved project '{project.name}'",
                data={"project_id": project.id},
            )
        )
    _commit_and_notify(db, project, outgoing, dispatcher)

    logger.info(
        "reviewer_vote_recorded",
        project_id=project.id,
        reviewer_id=user.id,
        decision=decision.value,
        application_status=project.application_status.value,
    )
    audit_log("reviewer_vote", user.id, project.id, decision=decision.value)
    return project


# --- Final decision ---


def _ensure_final_approver(project: Project, user: User) -> None:
    if project.final_approver_user_id is None or project.final_approver_user_id != user.id:
        raise Forbidden("Only the final approver can decide this application")


def final_approve(
    db: Session,
    project_id: int,
    user: User,
    comment: Optional[str] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Project:
    """Approve an application once every assigned reviewer has approved it."""
    project = get_project(db, project_id)
    _ensure_final_approver(project, user)
    reviewer_ids = assigned_reviewer_ids(db, project.id)

    def attempt() -> None:
        snapshot = _load_snapshot(db, project.id)
        if snapshot.application_status != ApplicationStatus.SUBMITTED:
            raise InvalidState(
                f"Cannot approve: application is '{snapshot.application_status.value}', not 'submitted'"
            )
        if not all_approved(snapshot.approvals, reviewer_ids):
            waiting = [
                rid
                for rid in reviewer_ids
                if vote_of(snapshot.approvals, rid).status != VoteStatus.APPROVED
            ]
            raise PreconditionFailed(
                "Not all reviewers approved this application",
                meta={"reviewer_ids": waiting},
            )

        now = _now()
        values = {
            "application_status": ApplicationStatus.APPROVED,
            "final_approval_status": VoteStatus.APPROVED,
            "final_approval_comment": comment.strip() if comment else None,
            "final_approved_at": now,
            "status": ProjectStatus.ACTIVE,
            "project_phase": ProjectPhase.MVP_DEVELOPMENT,
            "updated_at": now,
        }
        if not _swap_approvals(db, project.id, snapshot, values):
            db.rollback()
            raise StaleApprovalMap()

    _with_cas_retry(attempt, project_id=project.id, final_approver_id=user.id)

    outgoing = [
        OutgoingNotification(
            recipient_id=project.executor_id,
            template=notifications.APPLICATION_APPROVED,
            message=f"Project '{project.name}' has been approved",
            data={"project_id": project.id},
        )
    ]
    _commit_and_notify(db, project, outgoing, dispatcher)

    logger.info("application_approved", project_id=project.id, final_approver_id=user.id)
    audit_log("final_approve", user.id, project.id)
    return project


def final_reject(
    db: Session,
    project_id: int,
    user: User,
    comment: Optional[str],
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Project:
    project = get_project(db, project_id)
    _ensure_final_approver(project, user)
    comment = _require_comment(comment, "reject an application")

    def attempt() -> None:
        snapshot = _load_snapshot(db, project.id)
        if snapshot.application_status != ApplicationStatus.SUBMITTED:
            raise InvalidState(
                f"Cannot reject: application is '{snapshot.application_status.value}', not 'submitted'"
            )
        now = _now()
        values = {
            "application_status": ApplicationStatus.REJECTED,
            "final_approval_status": VoteStatus.REJECTED,
            "final_approval_comment": comment,
            "rejection_reason": comment,
            "rejected_by_user_id": user.id,
            "rejected_at": now,
            "updated_at": now,
        }
        if not _swap_approvals(db, project.id, snapshot, values):
            db.rollback()
            raise StaleApprovalMap()

    _with_cas_retry(attempt, project_id=project.id, final_approver_id=user.id)

    outgoing = [
        OutgoingNotification(
            recipient_id=project.executor_id,
            template=notifications.APPLICATION_REJECTED,
            message=f"Project '{project.name}' was rejected by the final approver",
            data={"project_id": project.id, "review_comment": comment},
        )
    ]
    _commit_and_notify(db, project, outgoing, dispatcher)

    logger.info("application_rejected", project_id=project.id, final_approver_id=user.id)
    audit_log("final_reject", user.id, project.id)
    return project


# --- Read models ---


def get_approval_status(db: Session, project_id: int, user: User) -> dict:
    """Current approval state, always computed from the stored row."""
    project = get_project(db, project_id, fresh=True)
    ensure_participant(db, project, user)

    approvals = load_approvals(project.reviewer_approvals)
    assignments = (
        db.query(ProjectReviewer)
        .filter(ProjectReviewer.project_id == project.id)
        .order_by(ProjectReviewer.reviewer_id)
        .all()
    )
    reviewer_ids = [a.reviewer_id for a in assignments]

    reviewers = []
    for assignment in assignments:
        vote = vote_of(approvals, assignment.reviewer_id)
        reviewers.append(
            {
                "reviewer_id": assignment.reviewer_id,
                "reviewer_name": assignment.reviewer.name,
                "reviewer_email": assignment.reviewer.email,
                "status": vote.status.value,
                "review_comment": vote.review_comment,
                "updated_at": vote.updated_at,
            }
        )

    counts = count_by_status(approvals, reviewer_ids)
    everyone_approved = all_approved(approvals, reviewer_ids)

    final_status = project.final_approval_status.value
    if project.final_approval_status == VoteStatus.PENDING and not everyone_approved:
        final_status = "waiting"

    final_approver = project.final_approver
    return {
        "project_id": project.id,
        "application_status": project.application_status.value,
        "review_round": project.review_round,
        "reviewers": reviewers,
        "final_approver_id": project.final_approver_user_id,
        "final_approver_name": final_approver.name if final_approver else None,
        "final_approval_status": final_status,
        "final_approval_comment": project.final_approval_comment,
        "final_approved_at": project.final_approved_at,
        "rejection_reason": project.rejection_reason,
        "approval_summary": {
            "total_reviewers": len(reviewer_ids),
            "approved_count": counts[VoteStatus.APPROVED],
            "pending_count": counts[VoteStatus.PENDING],
            "rejected_count": counts[VoteStatus.REJECTED],
            "all_reviewers_approved": everyone_approved,
        },
    }


def list_pending_reviews(db: Session, user: User) -> list[Project]:
    """Submitted applications waiting on this user's vote or final decision."""
    submitted = (
        db.query(Project)
        .filter(Project.application_status == ApplicationStatus.SUBMITTED)
        .order_by(Project.submitted_at, Project.id)
        .all()
    )
    pending = []
    for project in submitted:
        approvals = load_approvals(project.reviewer_approvals)
        reviewer_ids = project.reviewer_ids
        if user.id in reviewer_ids:
            if vote_of(approvals, user.id).status == VoteStatus.PENDING:
                pending.append(project)
        elif project.final_approver_user_id == user.id and all_approved(approvals, reviewer_ids):
            pending.append(project)
    return pending
