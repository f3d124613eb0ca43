from decimal import Decimal

import pytest

from proposals.models import ApplicationStatus, KpiReportType
from proposals.tiers import (
    AmountTier,
    recurring_report_types,
    report_type_allowed,
    required_report_types,
    tier_for_amount,
)

EXTERNAL = KpiReportType.EXTERNAL_MVP
INTERNAL = KpiReportType.INTERNAL_MVP
SEMI_ANNUAL = KpiReportType.SEMI_ANNUAL
COMPLETION = KpiReportType.MVP_COMPLETION


@pytest.mark.parametrize(
    "amount, tier, required",
    [
        (Decimal("1"), AmountTier.UNDER_100M, {EXTERNAL}),
        (Decimal("99999999"), AmountTier.UNDER_100M, {EXTERNAL}),
        (Decimal("100000000"), AmountTier.FROM_100M_TO_500M, {INTERNAL, EXTERNAL}),
        (Decimal("499999999.99"), AmountTier.FROM_100M_TO_500M, {INTERNAL, EXTERNAL}),
        (Decimal("500000000"), AmountTier.OVER_500M, {INTERNAL, EXTERNAL}),
        (10**12, AmountTier.OVER_500M, {INTERNAL, EXTERNAL}),
    ],
)
def test_tier_boundaries(amount, tier, required):
    assert tier_for_amount(amount) == tier
    assert required_report_types(amount) == required


def test_only_top_tier_recurs():
    assert recurring_report_types(Decimal("99999999")) == frozenset()
    assert recurring_report_types(Decimal("100000000")) == frozenset()
    assert recurring_report_types(Decimal("500000000")) == {SEMI_ANNUAL}


def test_semi_annual_only_after_approval_in_top_tier():
    top = Decimal("500000000")
    assert report_type_allowed(top, ApplicationStatus.APPROVED, SEMI_ANNUAL)
    assert not report_type_allowed(top, ApplicationStatus.SUBMITTED, SEMI_ANNUAL)
    assert not report_type_allowed(Decimal("499999999"), ApplicationStatus.APPROVED, SEMI_ANNUAL)


def test_mandatory_reports_only_while_submitted():
    amount = Decimal("50000000")
    assert report_type_allowed(amount, ApplicationStatus.SUBMITTED, EXTERNAL)
    assert not report_type_allowed(amount, ApplicationStatus.SUBMITTED, INTERNAL)
    for status in (ApplicationStatus.DRAFT, ApplicationStatus.REJECTED, ApplicationStatus.APPROVED):
        assert not report_type_allowed(amount, status, EXTERNAL)


def test_completion_report_after_approval():
    amount = Decimal("50000000")
    assert report_type_allowed(amount, ApplicationStatus.APPROVED, COMPLETION)
    assert not report_type_allowed(amount, ApplicationStatus.SUBMITTED, COMPLETION)


def test_float_amounts_are_accepted():
    assert tier_for_amount(99999999.0) == AmountTier.UNDER_100M
    assert tier_for_amount(100000000.0) == AmountTier.FROM_100M_TO_500M
