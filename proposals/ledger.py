"""Budget and KPI bookkeeping for project applications.

Budget writes are only possible once an application is approved. KPI report
writes follow the requested-amount tier: mandatory reports while the
application is under review, recurring and completion reports after approval.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

import structlog
from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from proposals import tiers
from proposals.access import ensure_executor, ensure_participant, get_project
from proposals.errors import Forbidden, InvalidState, NotFound, ValidationError
from proposals.logging import audit_log
from proposals.models import (
    ApplicationStatus,
    BudgetEntry,
    KpiReport,
    KpiReportStatus,
    KpiReportType,
    Project,
    User,
)

logger = structlog.get_logger()

ZERO = Decimal("0")

KPI_EDITABLE_FIELDS = (
    "verification_content",
    "kpi_metrics",
    "results",
    "budget_used",
    "planned_date",
    "planned_budget",
    "period_start",
    "period_end",
)


def _ensure_budget_writable(project: Project) -> None:
    if project.application_status != ApplicationStatus.APPROVED:
        raise Forbidden("Budget can only be recorded for approved projects")


def _non_negative(**amounts: Optional[Decimal]) -> None:
    for name, value in amounts.items():
        if value is not None and value < 0:
            raise ValidationError(f"{name} must not be negative")


# --- Budget ---


def set_annual_budget(
    db: Session,
    project_id: int,
    user: User,
    annual_opex_budget: Decimal,
    annual_capex_budget: Decimal,
) -> Project:
    project = get_project(db, project_id)
    ensure_executor(project, user, "set the annual budget")
    _ensure_budget_writable(project)
    _non_negative(
        annual_opex_budget=annual_opex_budget, annual_capex_budget=annual_capex_budget
    )

    total = annual_opex_budget + annual_capex_budget
    if total > Decimal(project.requested_amount):
        raise ValidationError(
            "Annual budget exceeds the requested amount",
            meta={"total": str(total), "requested_amount": str(project.requested_amount)},
        )

    project.annual_opex_budget = annual_opex_budget
    project.annual_capex_budget = annual_capex_budget
    db.commit()
    db.refresh(project)
    return project


def _annual_budget_total(
    db: Session, project_id: int, year: int, exclude_month: int
) -> Decimal:
    total = (
        db.query(func.sum(BudgetEntry.opex_budget + BudgetEntry.capex_budget))
        .filter(
            BudgetEntry.project_id == project_id,
            BudgetEntry.year == year,
            BudgetEntry.month != exclude_month,
        )
        .scalar()
    )
    return Decimal(total or 0)


def upsert_budget_entry(
    db: Session,
    project_id: int,
    user: User,
    year: int,
    month: int,
    opex_budget: Decimal = ZERO,
    opex_used: Decimal = ZERO,
    capex_budget: Decimal = ZERO,
    capex_used: Decimal = ZERO,
) -> BudgetEntry:
    """Create or replace the budget entry for one project month.

    The year's combined opex and capex budget may not exceed the requested
    amount. Used figures are not capped.
    """
    project = get_project(db, project_id)
    ensure_executor(project, user, "record budget")
    _ensure_budget_writable(project)

    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    if not 1900 <= year <= 9999:
        raise ValidationError("Year is out of range")
    _non_negative(
        opex_budget=opex_budget,
        opex_used=opex_used,
        capex_budget=capex_budget,
        capex_used=capex_used,
    )

    annual_total = (
        _annual_budget_total(db, project.id, year, exclude_month=month)
        + opex_budget
        + capex_budget
    )
    requested = Decimal(project.requested_amount)
    if annual_total > requested:
        raise ValidationError(
            f"Budget for {year} exceeds the requested amount",
            meta={"annual_total": str(annual_total), "requested_amount": str(requested)},
        )

    values = {
        "opex_budget": opex_budget,
        "opex_used": opex_used,
        "capex_budget": capex_budget,
        "capex_used": capex_used,
    }
    entry = _find_budget_entry(db, project.id, year, month)
    if entry is None:
        entry = BudgetEntry(project_id=project.id, year=year, month=month, **values)
        db.add(entry)
        try:
            db.commit()
        except IntegrityError:
            # Another writer created the month first; last write wins
            db.rollback()
            entry = _find_budget_entry(db, project.id, year, month)
            if entry is None:
                raise
            for key, value in values.items():
                setattr(entry, key, value)
            db.commit()
    else:
        for key, value in values.items():
            setattr(entry, key, value)
        db.commit()
    db.refresh(entry)

    logger.info("budget_entry_recorded", project_id=project.id, year=year, month=month)
    return entry


def _find_budget_entry(
    db: Session, project_id: int, year: int, month: int
) -> Optional[BudgetEntry]:
    return (
        db.query(BudgetEntry)
        .filter(
            BudgetEntry.project_id == project_id,
            BudgetEntry.year == year,
            BudgetEntry.month == month,
        )
        .first()
    )


def list_budget_entries(
    db: Session, project_id: int, user: User, year: Optional[int] = None
) -> List[BudgetEntry]:
    project = get_project(db, project_id)
    ensure_participant(db, project, user)
    query = db.query(BudgetEntry).filter(BudgetEntry.project_id == project.id)
    if year is not None:
        query = query.filter(BudgetEntry.year == year)
    return query.order_by(BudgetEntry.year, BudgetEntry.month).all()


def delete_budget_entry(db: Session, project_id: int, entry_id: int, user: User) -> None:
    project = get_project(db, project_id)
    ensure_executor(project, user, "delete budget entries")
    _ensure_budget_writable(project)
    entry = db.get(BudgetEntry, entry_id)
    if entry is None or entry.project_id != project.id:
        raise NotFound(f"Budget entry {entry_id} not found")
    year, month = entry.year, entry.month
    db.delete(entry)
    db.commit()
    audit_log("budget_entry_deleted", user.id, project_id, year=year, month=month)


def cumulative_budget(
    db: Session, project_id: int, user: User, as_of: Optional[date] = None
) -> dict[str, Any]:
    """Sums of all entries up to and including the month of ``as_of``.

    Remaining figures are budget minus used and may be negative.
    """
    project = get_project(db, project_id)
    ensure_participant(db, project, user)
    as_of = as_of or datetime.now(timezone.utc).date()

    row = (
        db.query(
            func.coalesce(func.sum(BudgetEntry.opex_budget), 0),
            func.coalesce(func.sum(BudgetEntry.opex_used), 0),
            func.coalesce(func.sum(BudgetEntry.capex_budget), 0),
            func.coalesce(func.sum(BudgetEntry.capex_used), 0),
        )
        .filter(
            BudgetEntry.project_id == project.id,
            or_(
                BudgetEntry.year < as_of.year,
                and_(BudgetEntry.year == as_of.year, BudgetEntry.month <= as_of.month),
            ),
        )
        .one()
    )
    opex_budget, opex_used, capex_budget, capex_used = (Decimal(v) for v in row)
    return {
        "project_id": project.id,
        "as_of_year": as_of.year,
        "as_of_month": as_of.month,
        "opex_budget": opex_budget,
        "opex_used": opex_used,
        "opex_remaining": opex_budget - opex_used,
        "capex_budget": capex_budget,
        "capex_used": capex_used,
        "capex_remaining": capex_budget - capex_used,
        "total_budget": opex_budget + capex_budget,
        "total_used": opex_used + capex_used,
        "total_remaining": (opex_budget + capex_budget) - (opex_used + capex_used),
    }


# --- KPI reports ---


def _ensure_report_writable(project: Project, report_type: KpiReportType) -> None:
    if not tiers.report_type_allowed(
        project.requested_amount, project.application_status, report_type
    ):
        raise Forbidden(
            f"A '{report_type.value}' report cannot be written while the application "
            f"is '{project.application_status.value}'",
            meta={
                "tier": tiers.tier_for_amount(project.requested_amount).value,
                "application_status": project.application_status.value,
            },
        )


def _get_report(db: Session, project: Project, report_id: int) -> KpiReport:
    report = db.get(KpiReport, report_id)
    if report is None or report.project_id != project.id:
        raise NotFound(f"KPI report {report_id} not found")
    return report


def _check_period(period_start: Optional[date], period_end: Optional[date]) -> None:
    if period_start and period_end and period_end < period_start:
        raise ValidationError("Period end must not be before period start")


def create_kpi_report(
    db: Session,
    project_id: int,
    user: User,
    report_type: KpiReportType,
    status: KpiReportStatus = KpiReportStatus.DRAFT,
    **fields: Any,
) -> KpiReport:
    project = get_project(db, project_id)
    ensure_executor(project, user, "write KPI reports")
    _ensure_report_writable(project, report_type)

    fields = {k: v for k, v in fields.items() if k in KPI_EDITABLE_FIELDS}
    period_start = fields.get("period_start")
    _check_period(period_start, fields.get("period_end"))

    existing = db.query(KpiReport).filter(
        KpiReport.project_id == project.id, KpiReport.report_type == report_type
    )
    if report_type in tiers.recurring_report_types(project.requested_amount):
        if period_start is None:
            raise ValidationError(f"'{report_type.value}' reports require period_start")
        existing = existing.filter(KpiReport.period_start == period_start)
    if existing.first() is not None:
        raise InvalidState(f"A '{report_type.value}' report already exists for this project")

    report = KpiReport(
        project_id=project.id,
        report_type=report_type,
        status=status,
        created_by=user.id,
        submitted_at=datetime.now(timezone.utc) if status == KpiReportStatus.SUBMITTED else None,
        **fields,
    )
    db.add(report)
    db.commit()
    db.refresh(report)

    logger.info(
        "kpi_report_created",
        project_id=project.id,
        report_id=report.id,
        report_type=report_type.value,
        status=status.value,
    )
    return report


def list_kpi_reports(db: Session, project_id: int, user: User) -> List[KpiReport]:
    project = get_project(db, project_id)
    ensure_participant(db, project, user)
    return (
        db.query(KpiReport)
        .filter(KpiReport.project_id == project.id)
        .order_by(KpiReport.created_at, KpiReport.id)
        .all()
    )


def get_kpi_report(db: Session, project_id: int, report_id: int, user: User) -> KpiReport:
    project = get_project(db, project_id)
    ensure_participant(db, project, user)
    return _get_report(db, project, report_id)


def update_kpi_report(
    db: Session,
    project_id: int,
    report_id: int,
    user: User,
    changes: dict[str, Any],
) -> KpiReport:
    """Edit a draft report. Setting status to submitted stamps submitted_at."""
    project = get_project(db, project_id)
    ensure_executor(project, user, "edit KPI reports")
    report = _get_report(db, project, report_id)
    _ensure_report_writable(project, report.report_type)
    if report.status == KpiReportStatus.SUBMITTED:
        raise InvalidState("Submitted KPI reports cannot be changed")

    updates = {k: v for k, v in changes.items() if k in KPI_EDITABLE_FIELDS}
    period_start = updates.get("period_start", report.period_start)
    _check_period(period_start, updates.get("period_end", report.period_end))
    if period_start is None and report.report_type in tiers.recurring_report_types(
        project.requested_amount
    ):
        raise ValidationError(f"'{report.report_type.value}' reports require period_start")
    for key, value in updates.items():
        setattr(report, key, value)

    status = changes.get("status")
    if status is not None and KpiReportStatus(status) == KpiReportStatus.SUBMITTED:
        report.status = KpiReportStatus.SUBMITTED
        report.submitted_at = datetime.now(timezone.utc)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidState("A report for this period already exists")
    db.refresh(report)
    return report


def delete_kpi_report(db: Session, project_id: int, report_id: int, user: User) -> None:
    project = get_project(db, project_id)
    ensure_executor(project, user, "delete KPI reports")
    report = _get_report(db, project, report_id)
    if report.status == KpiReportStatus.SUBMITTED:
        raise InvalidState("Submitted KPI reports cannot be deleted")
    db.delete(report)
    db.commit()
    audit_log("kpi_report_deleted", user.id, project_id, report_id=report_id)


def required_reports(db: Session, project_id: int, user: User) -> dict[str, Any]:
    """Which reports the project's tier requires and which exist already."""
    project = get_project(db, project_id)
    ensure_participant(db, project, user)

    amount = Decimal(project.requested_amount)
    required = tiers.required_report_types(amount)
    present = {
        row[0]
        for row in db.query(KpiReport.report_type)
        .filter(KpiReport.project_id == project.id)
        .distinct()
        .all()
    }
    ordered = [t for t in KpiReportType if t in required]
    return {
        "project_id": project.id,
        "tier": tiers.tier_for_amount(amount).value,
        "application_status": project.application_status.value,
        "required": [t.value for t in ordered],
        "missing": [t.value for t in ordered if t not in present],
        "recurring": sorted(t.value for t in tiers.recurring_report_types(amount)),
        "writable": [
            t.value
            for t in KpiReportType
            if tiers.report_type_allowed(amount, project.application_status, t)
        ],
    }
