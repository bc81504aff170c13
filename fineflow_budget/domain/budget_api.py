"""
Request and response models of the budget HTTP API.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fineflow_budget.domain.budget import (
    AlertEvent,
    BudgetSettings,
    BudgetSummary,
    DowngradeSuggestion,
    EnforcementDecision,
    OperationConfig,
    OperationType,
)
from fineflow_budget.domain.report import BudgetReport
from fineflow_budget.domain.services.budget_store import CostEntry, DecisionRecord


class BudgetSettingsOut(BaseModel):
    """Budget configuration of a project."""
    project_id: str
    monthly_budget_usd: Decimal
    max_cost_per_query_usd: Optional[Decimal] = None
    enforcement_mode: str
    enforcement_mode_label: str
    preferred_baseline_strategy: str
    is_unlimited: bool

    @classmethod
    def from_domain(cls, settings: BudgetSettings) -> "BudgetSettingsOut":
        return cls(
            project_id=settings.project_id,
            monthly_budget_usd=settings.monthly_budget_usd,
            max_cost_per_query_usd=settings.max_cost_per_query_usd,
            enforcement_mode=settings.enforcement_mode.value,
            enforcement_mode_label=settings.enforcement_mode.display_name,
            preferred_baseline_strategy=settings.preferred_baseline_strategy.value,
            is_unlimited=settings.is_unlimited,
        )


class BudgetSettingsPatch(BaseModel):
    """Partial settings update; only the fields present are changed."""
    model_config = ConfigDict(extra="forbid")

    monthly_budget_usd: Optional[Decimal] = None
    max_cost_per_query_usd: Optional[Decimal] = None
    enforcement_mode: Optional[str] = None
    preferred_baseline_strategy: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BudgetSummaryOut(BaseModel):
    """Classified month-to-date budget state plus guard flags."""
    project_id: str
    status: str
    current_spending_usd: Decimal
    monthly_budget_usd: Decimal
    remaining_budget_usd: Decimal
    budget_used_percent: float
    days_in_month: int
    days_elapsed: int
    days_remaining: int
    daily_burn_rate_usd: Decimal
    projected_month_end_usd: Optional[Decimal] = None
    days_until_exhausted: Optional[int] = None
    is_unlimited: bool
    is_at_risk: bool
    is_over_budget: bool
    enforcement_mode: str
    is_operation_blocked: bool = False
    blocked_message: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_domain(cls, summary: BudgetSummary, **guard_fields: Any) -> "BudgetSummaryOut":
        return cls(
            project_id=summary.project_id,
            status=summary.status.value,
            current_spending_usd=summary.current_spending_usd,
            monthly_budget_usd=summary.monthly_budget_usd,
            remaining_budget_usd=summary.remaining_budget_usd,
            budget_used_percent=summary.budget_used_percent,
            days_in_month=summary.days_in_month,
            days_elapsed=summary.days_elapsed,
            days_remaining=summary.days_remaining,
            daily_burn_rate_usd=summary.daily_burn_rate_usd,
            projected_month_end_usd=summary.projected_month_end_usd,
            days_until_exhausted=summary.days_until_exhausted,
            is_unlimited=summary.is_unlimited,
            is_at_risk=summary.is_at_risk,
            is_over_budget=summary.is_over_budget,
            **guard_fields,
        )


class OperationConfigIn(BaseModel):
    embedding_model: str = "text-embedding-3-small"
    top_k: int = Field(default=10, ge=1)
    chunk_overlap: int = Field(default=50, ge=0)
    num_experiments: int = Field(default=10, ge=1)
    num_queries: int = Field(default=10, ge=1)

    def to_domain(self) -> OperationConfig:
        return OperationConfig(**self.model_dump())


class DowngradeOut(BaseModel):
    tier: str
    original_config: Dict[str, Any]
    adjusted_config: Dict[str, Any]
    estimated_cost_usd: Optional[Decimal] = None
    estimated_new_cost_usd: Optional[Decimal] = None
    cost_savings_percent: float
    quality_impact_percent: float

    @classmethod
    def from_domain(cls, suggestion: DowngradeSuggestion) -> "DowngradeOut":
        return cls(
            tier=suggestion.tier,
            original_config=suggestion.original_config.as_dict(),
            adjusted_config=suggestion.adjusted_config.as_dict(),
            estimated_cost_usd=suggestion.estimated_cost_usd,
            estimated_new_cost_usd=suggestion.estimated_new_cost_usd,
            cost_savings_percent=suggestion.cost_savings_percent,
            quality_impact_percent=suggestion.quality_impact_percent,
        )


class BudgetCheckIn(BaseModel):
    """A prospective operation to evaluate against the budget."""
    estimated_cost_usd: Optional[Decimal] = Field(default=None, ge=0)
    operation_type: Optional[OperationType] = None
    operation: Optional[OperationConfigIn] = None
    sample_texts: Optional[List[str]] = None
    refresh: bool = Field(default=True, description="Re-read the snapshot before deciding")


class BudgetCheckOut(BaseModel):
    allowed: bool
    action: str
    decision_type: str
    reason: str
    status: Optional[str] = None
    mode: str
    severity: str
    estimated_cost_usd: Optional[Decimal] = None
    cap_exceeded: bool = False
    suggested_downgrade: Optional[DowngradeOut] = None
    use_config: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Configuration the caller should run with; absent when blocked",
    )
    is_over_budget: bool = False
    is_at_risk: bool = False

    @classmethod
    def from_domain(
        cls,
        decision: EnforcementDecision,
        requested: OperationConfig,
        *,
        is_over_budget: bool,
        is_at_risk: bool,
    ) -> "BudgetCheckOut":
        suggestion = decision.suggested_downgrade
        if decision.is_blocked:
            use_config = None
        elif suggestion is not None:
            use_config = suggestion.adjusted_config.as_dict()
        else:
            use_config = requested.as_dict()
        return cls(
            allowed=decision.allowed,
            action=decision.action.value,
            decision_type=decision.decision_type,
            reason=decision.reason,
            status=decision.status.value if decision.status is not None else None,
            mode=decision.mode.value,
            severity=decision.severity.value,
            estimated_cost_usd=decision.estimated_cost_usd,
            cap_exceeded=decision.cap_exceeded,
            suggested_downgrade=DowngradeOut.from_domain(suggestion) if suggestion else None,
            use_config=use_config,
            is_over_budget=is_over_budget,
            is_at_risk=is_at_risk,
        )


class CostRecordIn(BaseModel):
    operation_type: OperationType
    cost_usd: Decimal = Field(..., ge=0)
    operation_id: Optional[str] = None
    tokens_used: Optional[int] = Field(default=None, ge=0)
    model_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CostRecordOut(BaseModel):
    project_id: str
    operation_type: str
    cost_usd: Decimal
    created_at: datetime
    month_to_date_usd: Decimal

    @classmethod
    def from_domain(cls, entry: CostEntry, month_to_date_usd: Decimal) -> "CostRecordOut":
        return cls(
            project_id=entry.project_id,
            operation_type=entry.operation_type,
            cost_usd=entry.cost_usd,
            created_at=entry.created_at,
            month_to_date_usd=month_to_date_usd,
        )


class DecisionOut(BaseModel):
    decision_type: str
    reason: str
    created_at: datetime
    operation_type: Optional[str] = None
    tier: Optional[str] = None
    original_config: Optional[Dict[str, Any]] = None
    adjusted_config: Optional[Dict[str, Any]] = None
    original_estimated_cost_usd: Optional[Decimal] = None
    adjusted_estimated_cost_usd: Optional[Decimal] = None
    cost_savings_percent: Optional[float] = None
    quality_impact_percent: Optional[float] = None

    @classmethod
    def from_domain(cls, record: DecisionRecord) -> "DecisionOut":
        return cls(
            decision_type=record.decision_type,
            reason=record.reason,
            created_at=record.created_at,
            operation_type=record.operation_type,
            tier=record.tier,
            original_config=record.original_config,
            adjusted_config=record.adjusted_config,
            original_estimated_cost_usd=record.original_estimated_cost_usd,
            adjusted_estimated_cost_usd=record.adjusted_estimated_cost_usd,
            cost_savings_percent=record.cost_savings_percent,
            quality_impact_percent=record.quality_impact_percent,
        )


class AlertOut(BaseModel):
    kind: str
    severity: str
    title: str
    message: str
    created_at: datetime
    status: Optional[str] = None
    previous_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, event: AlertEvent) -> "AlertOut":
        return cls(
            kind=event.kind.value,
            severity=event.severity.value,
            title=event.title,
            message=event.message,
            created_at=event.created_at,
            status=event.status.value if event.status else None,
            previous_status=event.previous_status.value if event.previous_status else None,
            metadata=event.metadata,
        )


class CostBreakdownOut(BaseModel):
    operation_type: str
    total_cost_usd: Decimal
    count: int
    avg_cost_usd: Decimal


class DailySpendingOut(BaseModel):
    day: date
    cost_usd: Decimal
    operation_count: int


class SavingsOut(BaseModel):
    total_saved_usd: Decimal
    quality_preserved_percent: float
    downgrade_count: int


class BudgetReportOut(BaseModel):
    project_id: str
    project_name: Optional[str] = None
    budget: BudgetSettingsOut
    period_start: date
    period_end: date
    summary: BudgetSummaryOut
    on_track: bool
    breakdown_by_operation: List[CostBreakdownOut]
    daily_spending: Optional[List[DailySpendingOut]] = None
    savings_analysis: SavingsOut
    recommendations: List[str]
    message: str

    @classmethod
    def from_domain(cls, report: BudgetReport) -> "BudgetReportOut":
        return cls(
            project_id=report.project_id,
            project_name=report.project_name,
            budget=BudgetSettingsOut.from_domain(report.settings),
            period_start=report.period_start,
            period_end=report.period_end,
            summary=BudgetSummaryOut.from_domain(
                report.summary,
                enforcement_mode=report.settings.enforcement_mode.value,
            ),
            on_track=report.on_track,
            breakdown_by_operation=[
                CostBreakdownOut(
                    operation_type=row.operation_type,
                    total_cost_usd=row.total_cost_usd,
                    count=row.count,
                    avg_cost_usd=row.avg_cost_usd,
                )
                for row in report.breakdown_by_operation
            ],
            daily_spending=(
                [
                    DailySpendingOut(day=row.day, cost_usd=row.cost_usd, operation_count=row.operation_count)
                    for row in report.daily_spending
                ]
                if report.daily_spending is not None
                else None
            ),
            savings_analysis=SavingsOut(
                total_saved_usd=report.savings.total_saved_usd,
                quality_preserved_percent=report.savings.quality_preserved_percent,
                downgrade_count=report.savings.downgrade_count,
            ),
            recommendations=report.recommendations,
            message=report.message,
        )
