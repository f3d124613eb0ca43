"""SQLAlchemy database models for project applications and their follow-up tracking."""

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from proposals.database import Base

AMOUNT = Numeric(18, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserPosition(str, enum.Enum):
    EXECUTOR = "executor"
    REVIEWER = "reviewer"


class ProjectStatus(str, enum.Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"


class ApplicationStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class VoteStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ProjectPhase(str, enum.Enum):
    MVP_DEVELOPMENT = "mvp_development"
    BUSINESS_LAUNCH = "business_launch"
    BUSINESS_STABILIZATION = "business_stabilization"


class KpiReportType(str, enum.Enum):
    EXTERNAL_MVP = "external_mvp"
    INTERNAL_MVP = "internal_mvp"
    SEMI_ANNUAL = "semi_annual"
    MVP_COMPLETION = "mvp_completion"


class KpiReportStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[UserPosition] = mapped_column(Enum(UserPosition), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus), default=ProjectStatus.PLANNING, nullable=False
    )
    application_status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus), default=ApplicationStatus.DRAFT, nullable=False
    )
    executor_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    requested_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)

    # Explicit single-reviewer assignment used when no approval route matches
    reviewer_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    final_approver_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )

    # Sparse map of str(reviewer_id) -> {"status", "review_comment", "updated_at"}.
    # Every write goes through a compare-and-swap on approvals_version.
    reviewer_approvals: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    approvals_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    review_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    supplementary_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    rejected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    final_approval_status: Mapped[VoteStatus] = mapped_column(
        Enum(VoteStatus), default=VoteStatus.PENDING, nullable=False
    )
    final_approval_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    final_approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    project_phase: Mapped[Optional[ProjectPhase]] = mapped_column(
        Enum(ProjectPhase), nullable=True
    )
    annual_opex_budget: Mapped[Decimal] = mapped_column(
        AMOUNT, nullable=False, default=Decimal("0")
    )
    annual_capex_budget: Mapped[Decimal] = mapped_column(
        AMOUNT, nullable=False, default=Decimal("0")
    )

    # Document analysis payloads are stored as returned by the analysis service
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_text_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    missing_sections: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True
    )
    missing_sections_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    executor: Mapped["User"] = relationship(foreign_keys=[executor_id])
    final_approver: Mapped[Optional["User"]] = relationship(
        foreign_keys=[final_approver_user_id]
    )
    reviewers: Mapped[List["ProjectReviewer"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectReviewer.reviewer_id",
    )
    budget_entries: Mapped[List["BudgetEntry"]] = relationship(
        back_populates="project", cascade="all, delete-orphan"
    )
    kpi_reports: Mapped[List["KpiReport"]] = relationship(
        back_populates="project", cascade="all, delete-orphan"
    )
    notifications: Mapped[List["Notification"]] = relationship(
        back_populates="project", cascade="all, delete-orphan"
    )

    @property
    def reviewer_ids(self) -> list[int]:
        return [assignment.reviewer_id for assignment in self.reviewers]


class ProjectReviewer(Base):
    __tablename__ = "project_reviewers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    reviewer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    project: Mapped["Project"] = relationship(back_populates="reviewers")
    reviewer: Mapped["User"] = relationship()

    __table_args__ = (
        UniqueConstraint("project_id", "reviewer_id", name="uq_project_reviewer"),
    )


class ApprovalRoute(Base):
    __tablename__ = "approval_routes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    amount_threshold: Mapped[Decimal] = mapped_column(
        AMOUNT, nullable=False, unique=True
    )
    # Ordered list of reviewer user ids
    reviewer_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    final_approver_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class BudgetEntry(Base):
    __tablename__ = "budget_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    opex_budget: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    opex_used: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    capex_budget: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    capex_used: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    project: Mapped["Project"] = relationship(back_populates="budget_entries")

    __table_args__ = (
        UniqueConstraint("project_id", "year", "month", name="uq_budget_month"),
    )


class KpiReport(Base):
    __tablename__ = "kpi_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    report_type: Mapped[KpiReportType] = mapped_column(
        Enum(KpiReportType), nullable=False
    )
    status: Mapped[KpiReportStatus] = mapped_column(
        Enum(KpiReportStatus), default=KpiReportStatus.DRAFT, nullable=False
    )
    verification_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kpi_metrics: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    results: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    budget_used: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    planned_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    planned_budget: Mapped[Optional[Decimal]] = mapped_column(AMOUNT, nullable=True)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_by: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    project: Mapped["Project"] = relationship(back_populates="kpi_reports")

    # semi_annual reports recur per period; other types are one per project
    # (enforced in the ledger since NULL period_start never collides here).
    __table_args__ = (
        UniqueConstraint(
            "project_id", "report_type", "period_start", name="uq_kpi_report_period"
        ),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)
    recipient_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    template: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )

    project: Mapped["Project"] = relationship(back_populates="notifications")
