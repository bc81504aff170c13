"""
Risk classification of a project's current-month spend.

Pure functions only: the same snapshot and day always produce an identical
BudgetSummary, and no numeric input raises.
"""
from __future__ import annotations

import calendar
import math
from datetime import date
from decimal import Decimal

from fineflow_budget.domain.budget import (
    DEFAULT_WARNING_THRESHOLD_PERCENT,
    BudgetSnapshot,
    BudgetStatus,
    BudgetSummary,
)

_HUNDRED = Decimal(100)


def days_in_month(today: date) -> int:
    return calendar.monthrange(today.year, today.month)[1]


def classify(
    snapshot: BudgetSnapshot,
    today: date,
    *,
    warning_threshold_percent: float = DEFAULT_WARNING_THRESHOLD_PERCENT,
) -> BudgetSummary:
    """Derive the BudgetSummary of a snapshot as of ``today``.

    Status is decided first-match in this order: over_budget, at_risk (linear
    month-end projection above the budget), on_track (utilization at or above
    the warning threshold), under_budget. A monthly budget of 0 is unlimited.
    """

    spending = snapshot.spending_usd
    budget = snapshot.settings.monthly_budget_usd

    total_days = days_in_month(today)
    days_elapsed = today.day
    days_remaining = total_days - days_elapsed + 1

    # Projection treats zero elapsed days as one.
    effective_elapsed = max(days_elapsed, 1)
    burn_rate = spending / effective_elapsed
    remaining = budget - spending

    if budget == 0:
        return BudgetSummary(
            project_id=snapshot.project_id,
            current_spending_usd=spending,
            monthly_budget_usd=budget,
            remaining_budget_usd=remaining,
            budget_used_percent=0.0,
            days_in_month=total_days,
            days_elapsed=days_elapsed,
            days_remaining=days_remaining,
            daily_burn_rate_usd=burn_rate,
            projected_month_end_usd=None,
            days_until_exhausted=None,
            status=BudgetStatus.UNDER_BUDGET,
        )

    used_percent = float(spending / budget * _HUNDRED)
    projected = burn_rate * total_days

    if spending > budget:
        status = BudgetStatus.OVER_BUDGET
    elif projected > budget:
        status = BudgetStatus.AT_RISK
    elif used_percent >= warning_threshold_percent:
        status = BudgetStatus.ON_TRACK
    else:
        status = BudgetStatus.UNDER_BUDGET

    days_until_exhausted: int | None = None
    if burn_rate > 0 and status in (BudgetStatus.AT_RISK, BudgetStatus.OVER_BUDGET):
        days_until_exhausted = math.floor(remaining / burn_rate)

    return BudgetSummary(
        project_id=snapshot.project_id,
        current_spending_usd=spending,
        monthly_budget_usd=budget,
        remaining_budget_usd=remaining,
        budget_used_percent=used_percent,
        days_in_month=total_days,
        days_elapsed=days_elapsed,
        days_remaining=days_remaining,
        daily_burn_rate_usd=burn_rate,
        projected_month_end_usd=projected,
        days_until_exhausted=days_until_exhausted,
        status=status,
    )
