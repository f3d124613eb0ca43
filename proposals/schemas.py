"""Pydantic schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from proposals.models import (
    ApplicationStatus,
    KpiReportStatus,
    KpiReportType,
    ProjectPhase,
    ProjectStatus,
    UserPosition,
)


# --- User Schemas ---


class UserRegister(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    position: UserPosition


class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    position: UserPosition
    is_admin: bool
    is_approved: bool
    created_at: datetime

    model_config = {"from_attributes": True}


# --- Project Schemas ---


class ProjectCreate(BaseModel):
    name: str = Field(..., max_length=255)
    description: str = ""
    requested_amount: Decimal
    reviewer_id: Optional[int] = None
    final_approver_user_id: Optional[int] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    requested_amount: Optional[Decimal] = None
    reviewer_id: Optional[int] = None
    final_approver_user_id: Optional[int] = None


class ProjectResponse(BaseModel):
    id: int
    name: str
    description: str
    status: ProjectStatus
    application_status: ApplicationStatus
    executor_id: int
    requested_amount: Decimal
    reviewer_id: Optional[int] = None
    reviewer_ids: List[int] = []
    final_approver_user_id: Optional[int] = None
    review_round: int
    submitted_at: Optional[datetime] = None
    supplementary_note: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_by_user_id: Optional[int] = None
    rejected_at: Optional[datetime] = None
    final_approval_comment: Optional[str] = None
    final_approved_at: Optional[datetime] = None
    project_phase: Optional[ProjectPhase] = None
    annual_opex_budget: Decimal
    annual_capex_budget: Decimal
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PhaseUpdate(BaseModel):
    project_phase: ProjectPhase


# --- Review Schemas ---


class VoteRequest(BaseModel):
    # Presence is checked by the workflow so that a missing rejection
    # comment is reported like any other validation failure.
    comment: Optional[str] = None


class ResubmitRequest(BaseModel):
    supplementary_note: Optional[str] = None


class ReviewerVoteResponse(BaseModel):
    reviewer_id: int
    reviewer_name: str
    reviewer_email: str
    status: str
    review_comment: Optional[str] = None
    updated_at: Optional[str] = None


class ApprovalSummary(BaseModel):
    total_reviewers: int
    approved_count: int
    pending_count: int
    rejected_count: int
    all_reviewers_approved: bool


class ApprovalStatusResponse(BaseModel):
    project_id: int
    application_status: ApplicationStatus
    review_round: int
    reviewers: List[ReviewerVoteResponse]
    final_approver_id: Optional[int] = None
    final_approver_name: Optional[str] = None
    final_approval_status: str
    final_approval_comment: Optional[str] = None
    final_approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    approval_summary: ApprovalSummary


# --- Routing Schemas ---


class RouteUpsert(BaseModel):
    amount_threshold: Decimal
    reviewer_ids: List[int]
    final_approver_user_id: int


class RouteResponse(BaseModel):
    id: int
    amount_threshold: Decimal
    reviewer_ids: List[int]
    final_approver_user_id: int

    model_config = {"from_attributes": True}


# --- Budget Schemas ---


class AnnualBudgetUpdate(BaseModel):
    annual_opex_budget: Decimal = Decimal("0")
    annual_capex_budget: Decimal = Decimal("0")


class BudgetEntryUpsert(BaseModel):
    year: int
    month: int
    opex_budget: Decimal = Decimal("0")
    opex_used: Decimal = Decimal("0")
    capex_budget: Decimal = Decimal("0")
    capex_used: Decimal = Decimal("0")


class BudgetEntryResponse(BaseModel):
    id: int
    project_id: int
    year: int
    month: int
    opex_budget: Decimal
    opex_used: Decimal
    capex_budget: Decimal
    capex_used: Decimal
    updated_at: datetime

    model_config = {"from_attributes": True}


class CumulativeBudgetResponse(BaseModel):
    project_id: int
    as_of_year: int
    as_of_month: int
    opex_budget: Decimal
    opex_used: Decimal
    opex_remaining: Decimal
    capex_budget: Decimal
    capex_used: Decimal
    capex_remaining: Decimal
    total_budget: Decimal
    total_used: Decimal
    total_remaining: Decimal


# --- KPI Schemas ---


class KpiReportFields(BaseModel):
    verification_content: Optional[str] = None
    kpi_metrics: Optional[Any] = None
    results: Optional[str] = None
    budget_used: Optional[Decimal] = None
    planned_date: Optional[date] = None
    planned_budget: Optional[Decimal] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None


class KpiReportCreate(KpiReportFields):
    report_type: KpiReportType
    status: KpiReportStatus = KpiReportStatus.DRAFT


class KpiReportUpdate(KpiReportFields):
    status: Optional[KpiReportStatus] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[KpiReportStatus]) -> Optional[KpiReportStatus]:
        if v == KpiReportStatus.DRAFT:
            raise ValueError("A report can only be moved to 'submitted'")
        return v


class KpiReportResponse(KpiReportFields):
    id: int
    project_id: int
    report_type: KpiReportType
    status: KpiReportStatus
    created_by: int
    submitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RequiredReportsResponse(BaseModel):
    project_id: int
    tier: str
    application_status: ApplicationStatus
    required: List[KpiReportType]
    missing: List[KpiReportType]
    recurring: List[KpiReportType]
    writable: List[KpiReportType]


# --- Dashboard Schemas ---


class DashboardProject(BaseModel):
    id: int
    name: str
    executor_id: int
    requested_amount: Decimal
    budget_used: Decimal
    kpi_report_count: int
    final_approved_at: Optional[datetime] = None


class PhaseSummary(BaseModel):
    project_count: int
    total_requested_amount: Decimal
    total_budget_used: Decimal
    total_kpi_reports: int


class PhaseGroup(BaseModel):
    projects: List[DashboardProject]
    summary: PhaseSummary


class DashboardResponse(BaseModel):
    phases: Dict[str, PhaseGroup]


# --- Document Schemas ---


class ExtractedTextResponse(BaseModel):
    project_id: int
    extracted_text: Optional[str] = None
    updated_at: Optional[datetime] = None


class MissingSectionsResponse(BaseModel):
    project_id: int
    report: Optional[Dict[str, Any]] = None
    updated_at: Optional[datetime] = None


# --- Notification Schemas ---


class NotificationResponse(BaseModel):
    id: int
    project_id: int
    recipient_id: int
    template: str
    message: str
    created_at: datetime

    model_config = {"from_attributes": True}
