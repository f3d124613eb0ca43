"""Requested-amount tiers and the KPI reports each tier requires."""

import enum
from decimal import Decimal
from typing import FrozenSet, Sequence, Tuple, Union

from proposals.models import ApplicationStatus, KpiReportType


class AmountTier(str, enum.Enum):
    UNDER_100M = "under_100m"
    FROM_100M_TO_500M = "100m_to_500m"
    OVER_500M = "over_500m"


Number = Union[int, float, Decimal]

# Ordered by ascending lower bound; a tier covers [lower_bound, next lower_bound).
TIER_TABLE: Sequence[Tuple[Decimal, AmountTier, FrozenSet[KpiReportType]]] = (
    (Decimal("0"), AmountTier.UNDER_100M, frozenset({KpiReportType.EXTERNAL_MVP})),
    (
        Decimal("100000000"),
        AmountTier.FROM_100M_TO_500M,
        frozenset({KpiReportType.INTERNAL_MVP, KpiReportType.EXTERNAL_MVP}),
    ),
    (
        Decimal("500000000"),
        AmountTier.OVER_500M,
        frozenset({KpiReportType.INTERNAL_MVP, KpiReportType.EXTERNAL_MVP}),
    ),
)

# Report types that recur after approval, per tier
RECURRING_REPORT_TYPES = {
    AmountTier.UNDER_100M: frozenset(),
    AmountTier.FROM_100M_TO_500M: frozenset(),
    AmountTier.OVER_500M: frozenset({KpiReportType.SEMI_ANNUAL}),
}


def _as_decimal(amount: Number) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _row_for(amount: Number) -> Tuple[Decimal, AmountTier, FrozenSet[KpiReportType]]:
    value = _as_decimal(amount)
    selected = TIER_TABLE[0]
    for row in TIER_TABLE:
        if value >= row[0]:
            selected = row
    return selected


def tier_for_amount(amount: Number) -> AmountTier:
    return _row_for(amount)[1]


def required_report_types(amount: Number) -> FrozenSet[KpiReportType]:
    """Mandatory pre-approval report types for a requested amount."""
    return _row_for(amount)[2]


def recurring_report_types(amount: Number) -> FrozenSet[KpiReportType]:
    return RECURRING_REPORT_TYPES[tier_for_amount(amount)]


def report_type_allowed(
    amount: Number, status: ApplicationStatus, report_type: KpiReportType
) -> bool:
    """Whether a KPI report of ``report_type`` may be written in ``status``.

    Mandatory types are written while the application is under review,
    recurring types (semi_annual for the top tier) and the MVP completion
    report only after final approval.
    """
    if status == ApplicationStatus.SUBMITTED:
        return report_type in required_report_types(amount)
    if status == ApplicationStatus.APPROVED:
        if report_type == KpiReportType.MVP_COMPLETION:
            return True
        return report_type in recurring_report_types(amount)
    return False
