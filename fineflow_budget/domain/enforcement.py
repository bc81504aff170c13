"""
Enforcement decision engine.

Maps (status, enforcement mode) to proceed / proceed_with_downgrade / block:

    status              warn        auto_downgrade            abort
    under_budget        proceed     proceed                   proceed
    on_track            proceed     proceed                   proceed
    at_risk             proceed+w   proceed_with_downgrade    proceed+w
    over_budget         proceed+W   proceed_with_downgrade    block

A per-query cap overrides the table: an estimate above the cap is blocked,
except in warn mode where a downgrade that brings the estimate within the cap
is proposed instead.
"""
from __future__ import annotations

from decimal import Decimal
from typing import assert_never

from fineflow_budget.domain.budget import (
    AlertSeverity,
    BudgetStatus,
    BudgetSummary,
    DowngradeSuggestion,
    EnforcementAction,
    EnforcementDecision,
    EnforcementMode,
    OperationConfig,
    format_usd,
)
from fineflow_budget.domain.downgrade import DEFAULT_PLANNER, DowngradePlanner

_CONDITIONS = {
    BudgetStatus.UNDER_BUDGET: "Spending is under budget",
    BudgetStatus.ON_TRACK: "Spending is on track but past the warning threshold",
    BudgetStatus.AT_RISK: "Projected month-end spending exceeds the monthly budget",
    BudgetStatus.OVER_BUDGET: "Monthly budget exceeded",
}


def _condition(status: BudgetStatus, mode: EnforcementMode) -> str:
    return f"{_CONDITIONS[status]} (status: {status.value}, mode: {mode.value})"


def decide(
    summary: BudgetSummary,
    mode: EnforcementMode | str,
    estimated_cost_usd: Decimal | None = None,
    *,
    max_cost_per_query_usd: Decimal | None = None,
    operation: OperationConfig | None = None,
    planner: DowngradePlanner | None = None,
) -> EnforcementDecision:
    """Decide whether a prospective operation may run.

    Pure and side-effect free; safe to call speculatively.

    Args:
        summary: Classified budget state of the project.
        mode: The project's enforcement mode.
        estimated_cost_usd: Estimated cost of the operation, if known.
        max_cost_per_query_usd: Optional hard per-operation ceiling.
        operation: Configuration the operation would run with.
        planner: Downgrade ladder; defaults to the standard one.
    """

    mode = EnforcementMode(mode)
    operation = operation or OperationConfig()
    planner = planner or DEFAULT_PLANNER

    if (
        max_cost_per_query_usd is not None
        and estimated_cost_usd is not None
        and estimated_cost_usd > max_cost_per_query_usd
    ):
        return _decide_over_cap(
            summary, mode, estimated_cost_usd, max_cost_per_query_usd, operation, planner
        )

    match mode:
        case EnforcementMode.WARN:
            return _decide_warn(summary, estimated_cost_usd)
        case EnforcementMode.AUTO_DOWNGRADE:
            return _decide_auto_downgrade(summary, estimated_cost_usd, operation, planner)
        case EnforcementMode.ABORT:
            return _decide_abort(summary, estimated_cost_usd)
        case _:
            assert_never(mode)


def _proceed(
    summary: BudgetSummary,
    mode: EnforcementMode,
    estimated_cost_usd: Decimal | None,
    severity: AlertSeverity = AlertSeverity.NONE,
    suffix: str = "proceeding.",
) -> EnforcementDecision:
    return EnforcementDecision(
        allowed=True,
        action=EnforcementAction.PROCEED,
        reason=f"{_condition(summary.status, mode)}; {suffix}",
        status=summary.status,
        mode=mode,
        severity=severity,
        estimated_cost_usd=estimated_cost_usd,
    )


def _block(
    summary: BudgetSummary,
    mode: EnforcementMode,
    estimated_cost_usd: Decimal | None,
    reason: str,
    *,
    cap_exceeded: bool = False,
) -> EnforcementDecision:
    return EnforcementDecision(
        allowed=False,
        action=EnforcementAction.BLOCK,
        reason=reason,
        status=summary.status,
        mode=mode,
        severity=AlertSeverity.CRITICAL,
        estimated_cost_usd=estimated_cost_usd,
        cap_exceeded=cap_exceeded,
    )


def _downgrade(
    summary: BudgetSummary,
    mode: EnforcementMode,
    estimated_cost_usd: Decimal | None,
    suggestion: DowngradeSuggestion,
    reason: str,
    *,
    cap_exceeded: bool = False,
) -> EnforcementDecision:
    severity = (
        AlertSeverity.CRITICAL
        if summary.status is BudgetStatus.OVER_BUDGET or cap_exceeded
        else AlertSeverity.WARNING
    )
    return EnforcementDecision(
        allowed=True,
        action=EnforcementAction.PROCEED_WITH_DOWNGRADE,
        reason=reason,
        status=summary.status,
        mode=mode,
        severity=severity,
        estimated_cost_usd=estimated_cost_usd,
        suggested_downgrade=suggestion,
        cap_exceeded=cap_exceeded,
    )


def _decide_warn(summary: BudgetSummary, estimated_cost_usd: Decimal | None) -> EnforcementDecision:
    mode = EnforcementMode.WARN
    match summary.status:
        case BudgetStatus.UNDER_BUDGET | BudgetStatus.ON_TRACK:
            return _proceed(summary, mode, estimated_cost_usd)
        case BudgetStatus.AT_RISK:
            return _proceed(
                summary, mode, estimated_cost_usd, AlertSeverity.WARNING,
                "proceeding with a warning.",
            )
        case BudgetStatus.OVER_BUDGET:
            return _proceed(
                summary, mode, estimated_cost_usd, AlertSeverity.CRITICAL,
                "proceeding with a strong warning. Further spend is charged above the budget.",
            )
        case _:
            assert_never(summary.status)


def _decide_abort(summary: BudgetSummary, estimated_cost_usd: Decimal | None) -> EnforcementDecision:
    mode = EnforcementMode.ABORT
    match summary.status:
        case BudgetStatus.UNDER_BUDGET | BudgetStatus.ON_TRACK:
            return _proceed(summary, mode, estimated_cost_usd)
        case BudgetStatus.AT_RISK:
            return _proceed(
                summary, mode, estimated_cost_usd, AlertSeverity.WARNING,
                "proceeding with a warning. Operations will be blocked once the budget is exceeded.",
            )
        case BudgetStatus.OVER_BUDGET:
            return _block(
                summary, mode, estimated_cost_usd,
                f"{_condition(summary.status, mode)}; operation blocked. "
                "Increase the budget or wait until next month.",
            )
        case _:
            assert_never(summary.status)


def _decide_auto_downgrade(
    summary: BudgetSummary,
    estimated_cost_usd: Decimal | None,
    operation: OperationConfig,
    planner: DowngradePlanner,
) -> EnforcementDecision:
    mode = EnforcementMode.AUTO_DOWNGRADE
    match summary.status:
        case BudgetStatus.UNDER_BUDGET | BudgetStatus.ON_TRACK:
            return _proceed(summary, mode, estimated_cost_usd)
        case BudgetStatus.AT_RISK | BudgetStatus.OVER_BUDGET:
            limit = max(summary.remaining_budget_usd, Decimal("0"))
            suggestion = planner.best_effort(operation, estimated_cost_usd, limit)
            if suggestion is None:
                return _block(
                    summary, mode, estimated_cost_usd,
                    f"{_condition(summary.status, mode)}; operation blocked because "
                    "no cheaper configuration is available.",
                )
            return _downgrade(
                summary, mode, estimated_cost_usd, suggestion,
                f"{_condition(summary.status, mode)}; proceeding with a cheaper "
                f"configuration ({suggestion.tier}).",
            )
        case _:
            assert_never(summary.status)


def _decide_over_cap(
    summary: BudgetSummary,
    mode: EnforcementMode,
    estimated_cost_usd: Decimal,
    cap: Decimal,
    operation: OperationConfig,
    planner: DowngradePlanner,
) -> EnforcementDecision:
    cap_condition = (
        f"Estimated cost {format_usd(estimated_cost_usd)} exceeds the per-query cap of "
        f"{format_usd(cap)} (status: {summary.status.value}, mode: {mode.value})"
    )
    match mode:
        case EnforcementMode.WARN:
            suggestion = planner.fit(operation, estimated_cost_usd, cap)
            if suggestion is None:
                return _block(
                    summary, mode, estimated_cost_usd,
                    f"{cap_condition}; operation blocked because no cheaper "
                    "configuration fits the cap.",
                    cap_exceeded=True,
                )
            return _downgrade(
                summary, mode, estimated_cost_usd, suggestion,
                f"{cap_condition}; proceeding with a cheaper configuration ({suggestion.tier}).",
                cap_exceeded=True,
            )
        case EnforcementMode.AUTO_DOWNGRADE | EnforcementMode.ABORT:
            return _block(
                summary, mode, estimated_cost_usd,
                f"{cap_condition}; operation blocked.",
                cap_exceeded=True,
            )
        case _:
            assert_never(mode)
