from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from fineflow_budget.application.services.snapshot_reader import BudgetSnapshotReader, month_bounds
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.budget import (
    DEFAULT_WARNING_THRESHOLD_PERCENT,
    BudgetSnapshot,
    format_usd,
)
from fineflow_budget.domain.classifier import classify
from fineflow_budget.domain.report import (
    BudgetReport,
    breakdown_by_operation,
    daily_spending,
    recommendations,
    savings_analysis,
)
from fineflow_budget.domain.services.budget_store import BudgetLedger

logger = get_logger(__name__)


def _utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class BudgetReportService:
    """Builds the month-to-date budget report from the cost and decision ledgers."""

    def __init__(
        self,
        reader: BudgetSnapshotReader,
        ledger: BudgetLedger,
        warning_threshold_percent: float = DEFAULT_WARNING_THRESHOLD_PERCENT,
    ) -> None:
        self._reader = reader
        self._ledger = ledger
        self._threshold = warning_threshold_percent

    async def build(
        self,
        project_id: str,
        today: date | None = None,
        *,
        include_history: bool = True,
    ) -> BudgetReport:
        today = today or self._reader.today()
        row = await self._reader.store.get_budget_row(project_id)
        settings = self._reader.settings_from_row(row)

        month_start, next_month = month_bounds(today)
        since, until = _utc_midnight(month_start), _utc_midnight(next_month)
        costs = await self._ledger.list_costs(project_id, since, until)
        decisions = await self._ledger.list_decisions(
            project_id,
            limit=1000,
            decision_type="downgrade",
            since=since,
        )

        spending = sum((entry.cost_usd for entry in costs), Decimal("0"))
        summary = classify(
            BudgetSnapshot(project_id=project_id, spending_usd=spending, settings=settings),
            today,
            warning_threshold_percent=self._threshold,
        )
        breakdown = breakdown_by_operation(costs)
        savings = savings_analysis(decisions)

        if savings.downgrade_count > 0:
            message = (
                f"Stayed within the {format_usd(settings.monthly_budget_usd)} budget with "
                f"{savings.quality_preserved_percent:.0f}% quality preserved."
            )
        else:
            message = f"Budget utilization: {summary.budget_used_percent:.0f}%. Status: {summary.status.value}."

        logger.info(f"Generated budget report for project {project_id}: {message}")
        return BudgetReport(
            project_id=project_id,
            project_name=row.name,
            settings=settings,
            period_start=month_start,
            period_end=next_month - timedelta(days=1),
            summary=summary,
            breakdown_by_operation=breakdown,
            savings=savings,
            recommendations=recommendations(settings, summary, breakdown, savings),
            daily_spending=daily_spending(costs) if include_history else None,
            message=message,
        )
