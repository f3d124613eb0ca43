"""API routes for project applications, reviews and follow-up tracking."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from proposals import documents, ledger, notifications, projects, routing, users, workflow
from proposals.database import get_db
from proposals.documents import DocumentAnalyzer, get_analyzer
from proposals.identity import (
    Identity,
    get_current_user,
    get_identity,
    get_registered_user,
    require_admin,
)
from proposals.models import User
from proposals.notifications import NotificationDispatcher, get_dispatcher
from proposals.schemas import (
    AnnualBudgetUpdate,
    ApprovalStatusResponse,
    BudgetEntryResponse,
    BudgetEntryUpsert,
    CumulativeBudgetResponse,
    DashboardResponse,
    ExtractedTextResponse,
    KpiReportCreate,
    KpiReportResponse,
    KpiReportUpdate,
    MissingSectionsResponse,
    NotificationResponse,
    PhaseUpdate,
    ProjectCreate,
    ProjectResponse,
    ProjectUpdate,
    RequiredReportsResponse,
    ResubmitRequest,
    RouteResponse,
    RouteUpsert,
    UserRegister,
    UserResponse,
    VoteRequest,
)

router = APIRouter()


# --- User Endpoints ---


@router.post("/users/register", response_model=UserResponse, status_code=201)
def register(
    data: UserRegister,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    """Create an account for the authenticated caller, pending admin approval."""
    return users.register_user(db, identity, data.name, data.position)


@router.get("/users/me", response_model=UserResponse)
def me(user: User = Depends(get_registered_user)):
    return user


@router.get("/users/reviewers", response_model=List[UserResponse])
def reviewers(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return users.list_reviewers(db, exclude_user_id=user.id)


@router.get("/admin/users", response_model=List[UserResponse])
def admin_list_users(
    pending_only: bool = Query(False),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return users.list_users(db, pending_only=pending_only)


@router.post("/admin/users/{user_id}/approve", response_model=UserResponse)
def admin_approve_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return users.approve_user(db, admin, user_id)


# --- Approval Route Endpoints ---


@router.get("/approval-routes", response_model=List[RouteResponse])
def list_routes(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return routing.list_routes(db)


@router.put("/approval-routes", response_model=RouteResponse)
def upsert_route(
    data: RouteUpsert,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return routing.upsert_route(
        db, data.amount_threshold, data.reviewer_ids, data.final_approver_user_id
    )


# --- Project Endpoints ---


@router.post("/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    data: ProjectCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a new application in draft status."""
    return projects.create_project(
        db,
        user,
        name=data.name,
        requested_amount=data.requested_amount,
        description=data.description,
        reviewer_id=data.reviewer_id,
        final_approver_user_id=data.final_approver_user_id,
    )


@router.get("/projects/mine", response_model=List[ProjectResponse])
def my_projects(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return projects.list_my_projects(db, user)


@router.get("/projects/pending-reviews", response_model=List[ProjectResponse])
def pending_reviews(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Applications waiting on the caller's vote or final decision."""
    return workflow.list_pending_reviews(db, user)


@router.get("/projects/dashboard/approved", response_model=DashboardResponse)
def approved_dashboard(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return projects.approved_dashboard(db)


@router.get("/projects/{project_id}", response_model=ProjectResponse)
def get_project(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return projects.get_project_for_user(db, project_id, user)


@router.patch("/projects/{project_id}", response_model=ProjectResponse)
def update_project(
    project_id: int,
    data: ProjectUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Edit a draft application (executor only)."""
    return projects.update_project(db, project_id, user, data.model_dump(exclude_unset=True))


@router.delete("/projects/{project_id}", status_code=204)
def delete_project(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    projects.delete_project(db, project_id, user)
    return Response(status_code=204)


@router.patch("/projects/{project_id}/phase", response_model=ProjectResponse)
def update_phase(
    project_id: int,
    data: PhaseUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return projects.update_phase(db, project_id, user, data.project_phase)


@router.get(
    "/projects/{project_id}/notifications", response_model=List[NotificationResponse]
)
def project_notifications(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    projects.get_project_for_user(db, project_id, user)
    return notifications.list_notifications(db, project_id)


# --- Review Workflow Endpoints ---


@router.post("/projects/{project_id}/submit", response_model=ProjectResponse)
def submit_project(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Submit a draft application to its resolved reviewers."""
    return workflow.submit_project(db, project_id, user, dispatcher)


@router.post("/projects/{project_id}/resubmit", response_model=ProjectResponse)
def resubmit_project(
    project_id: int,
    data: ResubmitRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Return a rejected application to draft with supplementary material."""
    return workflow.resubmit_project(db, project_id, user, data.supplementary_note)


@router.post("/projects/{project_id}/reviews/approve", response_model=ProjectResponse)
def reviewer_approve(
    project_id: int,
    data: VoteRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return workflow.reviewer_approve(db, project_id, user, data.comment, dispatcher)


@router.post("/projects/{project_id}/reviews/reject", response_model=ProjectResponse)
def reviewer_reject(
    project_id: int,
    data: VoteRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return workflow.reviewer_reject(db, project_id, user, data.comment, dispatcher)


@router.post("/projects/{project_id}/final/approve", response_model=ProjectResponse)
def final_approve(
    project_id: int,
    data: VoteRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return workflow.final_approve(db, project_id, user, data.comment, dispatcher)


@router.post("/projects/{project_id}/final/reject", response_model=ProjectResponse)
def final_reject(
    project_id: int,
    data: VoteRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return workflow.final_reject(db, project_id, user, data.comment, dispatcher)


@router.get(
    "/projects/{project_id}/approval-status", response_model=ApprovalStatusResponse
)
def approval_status(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return workflow.get_approval_status(db, project_id, user)


# --- Budget Endpoints ---


@router.put("/projects/{project_id}/budget/annual", response_model=ProjectResponse)
def set_annual_budget(
    project_id: int,
    data: AnnualBudgetUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ledger.set_annual_budget(
        db, project_id, user, data.annual_opex_budget, data.annual_capex_budget
    )


@router.put("/projects/{project_id}/budget/entries", response_model=BudgetEntryResponse)
def upsert_budget_entry(
    project_id: int,
    data: BudgetEntryUpsert,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create or replace the budget entry for one month."""
    return ledger.upsert_budget_entry(db, project_id, user, **data.model_dump())


@router.get(
    "/projects/{project_id}/budget/entries", response_model=List[BudgetEntryResponse]
)
def list_budget_entries(
    project_id: int,
    year: Optional[int] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ledger.list_budget_entries(db, project_id, user, year=year)


@router.delete("/projects/{project_id}/budget/entries/{entry_id}", status_code=204)
def delete_budget_entry(
    project_id: int,
    entry_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ledger.delete_budget_entry(db, project_id, entry_id, user)
    return Response(status_code=204)


@router.get(
    "/projects/{project_id}/budget/cumulative", response_model=CumulativeBudgetResponse
)
def cumulative_budget(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ledger.cumulative_budget(db, project_id, user)


# --- KPI Report Endpoints ---


@router.post(
    "/projects/{project_id}/kpi-reports",
    response_model=KpiReportResponse,
    status_code=201,
)
def create_kpi_report(
    project_id: int,
    data: KpiReportCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    fields = data.model_dump(exclude={"report_type", "status"}, exclude_unset=True)
    return ledger.create_kpi_report(
        db, project_id, user, data.report_type, data.status, **fields
    )


@router.get(
    "/projects/{project_id}/kpi-reports", response_model=List[KpiReportResponse]
)
def list_kpi_reports(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ledger.list_kpi_reports(db, project_id, user)


@router.get(
    "/projects/{project_id}/kpi-reports/required",
    response_model=RequiredReportsResponse,
)
def required_kpi_reports(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ledger.required_reports(db, project_id, user)


@router.get(
    "/projects/{project_id}/kpi-reports/{report_id}", response_model=KpiReportResponse
)
def get_kpi_report(
    project_id: int,
    report_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ledger.get_kpi_report(db, project_id, report_id, user)


@router.patch(
    "/projects/{project_id}/kpi-reports/{report_id}", response_model=KpiReportResponse
)
def update_kpi_report(
    project_id: int,
    report_id: int,
    data: KpiReportUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ledger.update_kpi_report(
        db, project_id, report_id, user, data.model_dump(exclude_unset=True)
    )


@router.delete("/projects/{project_id}/kpi-reports/{report_id}", status_code=204)
def delete_kpi_report(
    project_id: int,
    report_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ledger.delete_kpi_report(db, project_id, report_id, user)
    return Response(status_code=204)


# --- Document Endpoints ---


@router.post(
    "/projects/{project_id}/document/extract-text", response_model=ExtractedTextResponse
)
async def extract_document_text(
    project_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    analyzer: DocumentAnalyzer = Depends(get_analyzer),
):
    """Send the uploaded document body to the analysis service and store its text."""
    content = await request.body()
    mime_type = request.headers.get("content-type", "")
    project = await run_in_threadpool(
        documents.extract_text, db, project_id, user, content, mime_type, analyzer
    )
    return {
        "project_id": project.id,
        "extracted_text": project.extracted_text,
        "updated_at": project.extracted_text_updated_at,
    }


@router.post(
    "/projects/{project_id}/document/check-missing-sections",
    response_model=MissingSectionsResponse,
)
def check_missing_sections(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    analyzer: DocumentAnalyzer = Depends(get_analyzer),
):
    project = documents.check_missing_sections(db, project_id, user, analyzer)
    return {
        "project_id": project.id,
        "report": project.missing_sections,
        "updated_at": project.missing_sections_updated_at,
    }


@router.get(
    "/projects/{project_id}/document/extracted-text",
    response_model=ExtractedTextResponse,
)
def get_extracted_text(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return documents.get_extracted_text(db, project_id, user)


@router.get(
    "/projects/{project_id}/document/missing-sections",
    response_model=MissingSectionsResponse,
)
def get_missing_sections(
    project_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return documents.get_missing_sections(db, project_id, user)
