from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Sequence

from fineflow_budget.domain.budget import (
    BudgetSettings,
    BudgetStatus,
    BudgetSummary,
    EnforcementMode,
    OperationType,
)
from fineflow_budget.domain.services.budget_store import CostEntry, DecisionRecord

# Burn rate above even pace by this factor triggers a recommendation.
BURN_RATE_ALERT_FACTOR = Decimal("1.5")
OPTIMIZATION_BUDGET_SHARE = Decimal("0.3")
QUALITY_PRESERVED_FLOOR = 90.0


@dataclass(frozen=True, slots=True)
class CostBreakdown:
    operation_type: str
    total_cost_usd: Decimal
    count: int
    avg_cost_usd: Decimal


@dataclass(frozen=True, slots=True)
class DailySpending:
    day: date
    cost_usd: Decimal
    operation_count: int


@dataclass(frozen=True, slots=True)
class SavingsAnalysis:
    total_saved_usd: Decimal = Decimal("0")
    quality_preserved_percent: float = 100.0
    downgrade_count: int = 0


@dataclass(frozen=True, slots=True)
class BudgetReport:
    """Month-to-date budget report of one project."""

    project_id: str
    project_name: str | None
    settings: BudgetSettings
    period_start: date
    period_end: date
    summary: BudgetSummary
    breakdown_by_operation: list[CostBreakdown]
    savings: SavingsAnalysis
    recommendations: list[str]
    daily_spending: list[DailySpending] | None = None
    message: str = ""

    @property
    def on_track(self) -> bool:
        return self.summary.status in (BudgetStatus.UNDER_BUDGET, BudgetStatus.ON_TRACK)


def breakdown_by_operation(costs: Sequence[CostEntry]) -> list[CostBreakdown]:
    """Cost per operation type, most expensive first."""

    totals: dict[str, Decimal] = defaultdict(Decimal)
    counts: dict[str, int] = defaultdict(int)
    for entry in costs:
        key = entry.operation_type or "unknown"
        totals[key] += entry.cost_usd
        counts[key] += 1
    rows = [
        CostBreakdown(
            operation_type=key,
            total_cost_usd=total,
            count=counts[key],
            avg_cost_usd=total / counts[key],
        )
        for key, total in totals.items()
    ]
    return sorted(rows, key=lambda row: (-row.total_cost_usd, row.operation_type))


def daily_spending(costs: Sequence[CostEntry]) -> list[DailySpending]:
    totals: dict[date, Decimal] = defaultdict(Decimal)
    counts: dict[date, int] = defaultdict(int)
    for entry in costs:
        day = entry.created_at.date()
        totals[day] += entry.cost_usd
        counts[day] += 1
    return [DailySpending(day=day, cost_usd=totals[day], operation_count=counts[day]) for day in sorted(totals)]


def savings_analysis(decisions: Sequence[DecisionRecord]) -> SavingsAnalysis:
    """Savings and average quality impact of this month's downgrade decisions."""

    downgrades = [d for d in decisions if d.decision_type == "downgrade"]
    if not downgrades:
        return SavingsAnalysis()
    saved = Decimal("0")
    impact = 0.0
    for decision in downgrades:
        original = decision.original_estimated_cost_usd or Decimal("0")
        adjusted = decision.adjusted_estimated_cost_usd
        saved += original - (original if adjusted is None else adjusted)
        impact += abs(decision.quality_impact_percent or 0.0)
    return SavingsAnalysis(
        total_saved_usd=saved,
        quality_preserved_percent=100.0 - impact / len(downgrades),
        downgrade_count=len(downgrades),
    )


def recommendations(
    settings: BudgetSettings,
    summary: BudgetSummary,
    breakdown: Sequence[CostBreakdown],
    savings: SavingsAnalysis,
) -> list[str]:
    tips: list[str] = []
    status = summary.status
    budget = summary.monthly_budget_usd

    if status is BudgetStatus.OVER_BUDGET:
        tips.append("Consider increasing your monthly budget or switching to the cost_aware baseline strategy.")
    if status is BudgetStatus.AT_RISK:
        tips.append("You may exceed your budget this month. Consider enabling auto_downgrade enforcement.")
    if budget > 0:
        even_pace = budget / summary.days_in_month
        if summary.daily_burn_rate_usd > even_pace * BURN_RATE_ALERT_FACTOR:
            tips.append("Your spending rate is 50%+ above an even monthly pace. Review your RAG configuration.")
    if settings.enforcement_mode is EnforcementMode.WARN and status is not BudgetStatus.UNDER_BUDGET:
        tips.append("Switch to auto_downgrade mode to automatically stay within budget.")
    if budget > 0 and any(
        row.operation_type == OperationType.OPTIMIZATION.value
        and row.total_cost_usd > budget * OPTIMIZATION_BUDGET_SHARE
        for row in breakdown
    ):
        tips.append("Optimization operations are consuming 30%+ of the budget. Reduce the number of experiments.")
    if savings.quality_preserved_percent < QUALITY_PRESERVED_FLOOR:
        tips.append(
            f"Quality degradation detected ({savings.quality_preserved_percent:.0f}% preserved). "
            "Consider increasing the budget."
        )
    if not tips:
        tips.append("Your budget is on track. No action needed.")
    return tips
