"""Tests for the risk classifier."""

from datetime import date
from decimal import Decimal

import pytest

from fineflow_budget.domain.budget import BudgetStatus
from fineflow_budget.domain.classifier import classify, days_in_month


class TestClassifyScenarios:
    def test_projection_above_budget_is_at_risk(self, make_summary):
        summary = make_summary("450", "500")

        assert summary.budget_used_percent == pytest.approx(90.0)
        assert summary.projected_month_end_usd == Decimal("675")
        assert summary.status is BudgetStatus.AT_RISK
        assert summary.days_until_exhausted == 2

    def test_spending_above_budget_is_over_budget(self, make_summary):
        summary = make_summary("600", "500")

        assert summary.status is BudgetStatus.OVER_BUDGET
        assert summary.remaining_budget_usd == Decimal("-100")
        assert summary.is_over_budget
        assert summary.is_at_risk
        # Negative once the budget is already gone.
        assert summary.days_until_exhausted < 0

    def test_zero_budget_is_unlimited(self, make_summary):
        summary = make_summary("9999", "0")

        assert summary.status is BudgetStatus.UNDER_BUDGET
        assert summary.budget_used_percent == 0.0
        assert summary.projected_month_end_usd is None
        assert summary.days_until_exhausted is None
        assert summary.is_unlimited

    def test_high_utilization_with_safe_projection_is_on_track(self, make_summary):
        # 400/500 = 80% used, projection 400 / 29 * 30 < 500 on the 29th.
        summary = make_summary("400", "500", today=date(2026, 6, 29))

        assert summary.status is BudgetStatus.ON_TRACK
        assert summary.days_until_exhausted is None

    def test_low_spend_is_under_budget(self, make_summary):
        summary = make_summary("10", "500")

        assert summary.status is BudgetStatus.UNDER_BUDGET
        assert summary.budget_used_percent == pytest.approx(2.0)


class TestClassifyProperties:
    def test_day_counts_include_today(self, make_summary):
        summary = make_summary("0", "500")

        assert summary.days_in_month == 30
        assert summary.days_elapsed == 20
        assert summary.days_remaining == 11

    def test_burn_rate_is_spend_per_elapsed_day(self, make_summary):
        summary = make_summary("100", "500")
        assert summary.daily_burn_rate_usd == Decimal("5")

    def test_deterministic(self, make_snapshot):
        snapshot = make_snapshot("123.45", "500")
        assert classify(snapshot, date(2026, 6, 7)) == classify(snapshot, date(2026, 6, 7))

    @pytest.mark.parametrize("spending", ["0", "0.01", "250", "499.99", "500", "500.01", "100000"])
    def test_percent_is_finite_and_status_is_consistent(self, make_summary, spending):
        summary = make_summary(spending, "500")

        assert summary.budget_used_percent >= 0
        assert summary.budget_used_percent != float("inf")
        if summary.current_spending_usd > summary.monthly_budget_usd:
            assert summary.status is BudgetStatus.OVER_BUDGET
        else:
            assert summary.status is not BudgetStatus.OVER_BUDGET

    def test_custom_warning_threshold(self, make_snapshot):
        snapshot = make_snapshot("300", "500")
        # 60% used on the 29th; projection stays under the budget.
        today = date(2026, 6, 29)

        assert classify(snapshot, today).status is BudgetStatus.UNDER_BUDGET
        assert classify(snapshot, today, warning_threshold_percent=50).status is BudgetStatus.ON_TRACK

    @pytest.mark.parametrize("today", [date(2026, 6, 1), date(2026, 6, 20), date(2026, 6, 30)])
    @pytest.mark.parametrize("budget", ["500", "0"])
    def test_more_spend_never_lowers_percent_or_risk(self, make_snapshot, today, budget):
        spends = ["0", "0.01", "10", "16.67", "200", "375", "499.99", "500", "500.01", "5000"]
        summaries = [classify(make_snapshot(spend, budget), today) for spend in spends]

        for earlier, later in zip(summaries, summaries[1:]):
            assert later.budget_used_percent >= earlier.budget_used_percent
            assert later.status.rank >= earlier.status.rank

    def test_status_rank_order(self):
        ranks = [status.rank for status in BudgetStatus]
        assert ranks == sorted(ranks)
        assert BudgetStatus.OVER_BUDGET.rank > BudgetStatus.AT_RISK.rank


def test_days_in_month_handles_leap_years():
    assert days_in_month(date(2028, 2, 10)) == 29
    assert days_in_month(date(2026, 2, 10)) == 28
    assert days_in_month(date(2026, 12, 31)) == 31
