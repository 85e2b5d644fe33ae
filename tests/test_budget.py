"""
Tests for the budget accumulator: totals, thresholds, rounding and
idempotent application per payment event.
"""

from decimal import Decimal

import pytest

from expenseflow.core.budget import (
    BudgetAccumulator,
    BudgetConfig,
    BudgetScope,
    BudgetStatus,
    InMemoryBudgetLedger,
    category_key,
    period_key_for,
    utilization_percent,
)
from expenseflow.core.models import utc_now


@pytest.fixture
def config():
    return BudgetConfig(
        site_id="site-1",
        monthly_limit=Decimal("20000"),
        yearly_limit=Decimal("200000"),
        category_limits={"Travel": Decimal("10000")},
        alert_threshold_percent=80,
        site_name="Rohini",
    )


@pytest.fixture
def accumulator(config):
    return BudgetAccumulator(InMemoryBudgetLedger(), lambda site_id: config)


def by_scope(result):
    return {c.scope: c for c in result.checks}


class TestRecordApprovedSpend:

    def test_adds_to_site_and_category_totals(self, accumulator):
        result = accumulator.record_approved_spend("site-1", "Travel", Decimal("5000"), "2025-08", "AE-1")

        checks = by_scope(result)
        assert result.applied
        assert checks[BudgetScope.SITE_MONTHLY].total == Decimal("5000.00")
        assert checks[BudgetScope.SITE_YEARLY].total == Decimal("5000.00")
        assert checks[BudgetScope.SITE_YEARLY].period_key == "2025"
        assert checks[BudgetScope.CATEGORY_MONTHLY].total == Decimal("5000.00")
        assert checks[BudgetScope.CATEGORY_MONTHLY].utilization_percent == 50
        assert result.breaches == []

    def test_same_event_applied_once(self, accumulator):
        first = accumulator.record_approved_spend("site-1", "Travel", Decimal("18000"), "2025-08", "AE-1")
        again = accumulator.record_approved_spend("site-1", "Travel", Decimal("18000"), "2025-08", "AE-1")

        assert first.applied
        assert not again.applied
        assert by_scope(again)[BudgetScope.SITE_MONTHLY].total == Decimal("18000.00")
        assert again.breaches == []

    def test_breach_reports_each_scope(self, accumulator):
        result = accumulator.record_approved_spend("site-1", "Travel", Decimal("18000"), "2025-08", "AE-1")

        scopes = {b.scope for b in result.breaches}
        assert scopes == {BudgetScope.SITE_MONTHLY, BudgetScope.CATEGORY_MONTHLY}
        assert by_scope(result)[BudgetScope.SITE_MONTHLY].utilization_percent == 90
        assert by_scope(result)[BudgetScope.CATEGORY_MONTHLY].status == BudgetStatus.EXCEEDED
        assert by_scope(result)[BudgetScope.SITE_MONTHLY].status == BudgetStatus.WARNING

    def test_threshold_is_inclusive(self, accumulator):
        result = accumulator.record_approved_spend("site-1", "Travel", Decimal("16000"), "2025-08", "AE-1")

        assert BudgetScope.SITE_MONTHLY in {b.scope for b in result.breaches}

    def test_periods_are_separate(self, accumulator):
        accumulator.record_approved_spend("site-1", "Travel", Decimal("9000"), "2025-07", "AE-1")
        result = accumulator.record_approved_spend("site-1", "Travel", Decimal("1000"), "2025-08", "AE-2")

        checks = by_scope(result)
        assert checks[BudgetScope.SITE_MONTHLY].total == Decimal("1000.00")
        assert checks[BudgetScope.SITE_YEARLY].total == Decimal("10000.00")

    def test_category_names_share_a_line(self, accumulator):
        accumulator.record_approved_spend("site-1", "travel", Decimal("3000"), "2025-08", "AE-1")
        result = accumulator.record_approved_spend("site-1", "TRAVEL", Decimal("3000"), "2025-08", "AE-2")

        assert by_scope(result)[BudgetScope.CATEGORY_MONTHLY].total == Decimal("6000.00")

    def test_unconfigured_limit_never_breaches(self, accumulator):
        result = accumulator.record_approved_spend("site-1", "Food", Decimal("19000"), "2025-08", "AE-1")

        category = by_scope(result)[BudgetScope.CATEGORY_MONTHLY]
        assert category.limit == Decimal("0.00")
        assert category.utilization_percent == 0
        assert not category.breached
        assert {b.scope for b in result.breaches} == {BudgetScope.SITE_MONTHLY}

    def test_decimal_amounts_do_not_drift(self, accumulator):
        for i in range(10):
            result = accumulator.record_approved_spend("site-1", "Travel", Decimal("0.10"), "2025-08", f"AE-{i}")

        assert by_scope(result)[BudgetScope.SITE_MONTHLY].total == Decimal("1.00")


class TestBudgetStatus:

    def test_summary_without_spend(self, accumulator):
        status = accumulator.get_budget_status("site-1", "2025-08")

        assert status["monthly"]["total"] == "0.00"
        assert status["monthly"]["remaining"] == "20000.00"
        assert status["categories"][0]["category"] == "travel"
        assert status["should_alert"] is False

    def test_summary_after_spend(self, accumulator):
        accumulator.record_approved_spend("site-1", "Travel", Decimal("18000"), "2025-08", "AE-1")

        status = accumulator.get_budget_status("site-1", "2025-08")

        assert status["monthly"]["utilization_percent"] == 90
        assert status["monthly"]["status"] == "warning"
        assert status["categories"][0]["status"] == "exceeded"
        assert status["should_alert"] is True


class TestHelpers:

    @pytest.mark.parametrize("total,limit,expected", [
        ("0", "100", 0),
        ("79.5", "100", 80),
        ("79.49", "100", 79),
        ("1", "3", 33),
        ("2", "3", 67),
        ("150", "100", 150),
        ("10", "0", 0),
    ])
    def test_utilization_rounds_half_up(self, total, limit, expected):
        assert utilization_percent(Decimal(total), Decimal(limit)) == expected

    def test_category_key(self):
        assert category_key("Vehicle KM") == category_key("vehicle_km") == "vehiclekm"

    def test_period_key_for(self):
        now = utc_now()
        assert period_key_for(now) == now.strftime("%Y-%m")

    def test_config_rejects_bad_threshold(self):
        with pytest.raises(ValueError):
            BudgetConfig(site_id="s", alert_threshold_percent=120)
