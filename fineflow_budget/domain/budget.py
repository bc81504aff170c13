from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping

from fineflow_budget.core.errors import ValidationError


DEFAULT_WARNING_THRESHOLD_PERCENT = 75.0
DEFAULT_CRITICAL_THRESHOLD_PERCENT = 90.0


class EnforcementMode(str, Enum):
    """How the engine reacts once a project is at risk or over budget."""

    WARN = "warn"
    AUTO_DOWNGRADE = "auto_downgrade"
    ABORT = "abort"

    @property
    def display_name(self) -> str:
        return _MODE_DISPLAY_NAMES[self]


_MODE_DISPLAY_NAMES = {
    EnforcementMode.WARN: "Warn Only",
    EnforcementMode.AUTO_DOWNGRADE: "Auto-Downgrade",
    EnforcementMode.ABORT: "Abort Operation",
}


class BudgetStatus(str, Enum):
    """Risk classification of a project's current-month spend."""

    UNDER_BUDGET = "under_budget"
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    OVER_BUDGET = "over_budget"

    @property
    def rank(self) -> int:
        """Ordinal risk rank: under_budget < on_track < at_risk < over_budget."""
        return _STATUS_RANKS[self]


_STATUS_RANKS = {
    BudgetStatus.UNDER_BUDGET: 0,
    BudgetStatus.ON_TRACK: 1,
    BudgetStatus.AT_RISK: 2,
    BudgetStatus.OVER_BUDGET: 3,
}


class EnforcementAction(str, Enum):
    PROCEED = "proceed"
    PROCEED_WITH_DOWNGRADE = "proceed_with_downgrade"
    BLOCK = "block"


class AlertSeverity(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertKind(str, Enum):
    STATUS_TRANSITION = "status_transition"
    DOWNGRADE_APPLIED = "downgrade_applied"
    OPERATION_BLOCKED = "operation_blocked"


class BaselineStrategy(str, Enum):
    QUALITY_ONLY = "quality_only"
    COST_AWARE = "cost_aware"
    LATENCY_AWARE = "latency_aware"
    BALANCED = "balanced"


class OperationType(str, Enum):
    """Kinds of paid AI operations a call site may trigger."""

    QUERY = "query"
    EVALUATION = "evaluation"
    EXPERIMENT_RUN = "experiment_run"
    OPTIMIZATION = "optimization"
    EMBEDDING = "embedding"
    TRAINING = "training"


@dataclass(frozen=True, slots=True)
class BudgetSettings:
    """Budget configuration owned by a project.

    Args:
        project_id: Project the settings belong to.
        monthly_budget_usd: Ceiling for the calendar month's AI spend; 0 means unlimited.
        max_cost_per_query_usd: Optional hard ceiling for a single operation.
        enforcement_mode: Engine behaviour once the budget is at risk or exceeded.
        preferred_baseline_strategy: Informational strategy shown in reports.
    """

    project_id: str
    monthly_budget_usd: Decimal
    max_cost_per_query_usd: Decimal | None = None
    enforcement_mode: EnforcementMode = EnforcementMode.WARN
    preferred_baseline_strategy: BaselineStrategy = BaselineStrategy.BALANCED

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_budget_usd == 0


@dataclass(frozen=True, slots=True)
class BudgetSnapshot:
    """Spend and settings of a project as read at one point in time."""

    project_id: str
    spending_usd: Decimal
    settings: BudgetSettings
    read_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class BudgetSummary:
    """Derived view of a snapshot. Recomputed on every read, never stored."""

    project_id: str
    current_spending_usd: Decimal
    monthly_budget_usd: Decimal
    remaining_budget_usd: Decimal
    budget_used_percent: float
    days_in_month: int
    days_elapsed: int
    days_remaining: int
    daily_burn_rate_usd: Decimal
    projected_month_end_usd: Decimal | None
    days_until_exhausted: int | None
    status: BudgetStatus

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_budget_usd == 0

    @property
    def is_over_budget(self) -> bool:
        return self.status is BudgetStatus.OVER_BUDGET

    @property
    def is_at_risk(self) -> bool:
        return self.status in (BudgetStatus.AT_RISK, BudgetStatus.OVER_BUDGET)


@dataclass(frozen=True, slots=True)
class OperationConfig:
    """Cost-relevant knobs of an AI pipeline run."""

    embedding_model: str = "text-embedding-3-small"
    top_k: int = 10
    chunk_overlap: int = 50
    num_experiments: int = 10
    num_queries: int = 10

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "OperationConfig":
        data = data or {}
        defaults = cls()
        return cls(
            embedding_model=str(data.get("embedding_model") or defaults.embedding_model),
            top_k=int(data.get("top_k") or defaults.top_k),
            chunk_overlap=int(data.get("chunk_overlap") or defaults.chunk_overlap),
            num_experiments=int(data.get("num_experiments") or defaults.num_experiments),
            num_queries=int(data.get("num_queries") or defaults.num_queries),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class DowngradeSuggestion:
    """A reduced-cost configuration proposed by the downgrade ladder."""

    tier: str
    original_config: OperationConfig
    adjusted_config: OperationConfig
    estimated_cost_usd: Decimal | None
    estimated_new_cost_usd: Decimal | None
    cost_savings_percent: float
    quality_impact_percent: float


@dataclass(frozen=True, slots=True)
class EnforcementDecision:
    """Outcome of evaluating one prospective AI operation.

    ``status`` is None only for decisions made under the failure policy, when
    no budget snapshot could be read.
    """

    allowed: bool
    action: EnforcementAction
    reason: str
    status: BudgetStatus | None
    mode: EnforcementMode
    severity: AlertSeverity = AlertSeverity.NONE
    estimated_cost_usd: Decimal | None = None
    suggested_downgrade: DowngradeSuggestion | None = None
    cap_exceeded: bool = False

    def __post_init__(self) -> None:
        has_downgrade = self.suggested_downgrade is not None
        if has_downgrade != (self.action is EnforcementAction.PROCEED_WITH_DOWNGRADE):
            raise ValueError("suggested_downgrade must be present exactly when downgrading")
        if self.allowed == (self.action is EnforcementAction.BLOCK):
            raise ValueError("allowed must be False exactly when the action is block")

    @property
    def is_blocked(self) -> bool:
        return self.action is EnforcementAction.BLOCK

    @property
    def decision_type(self) -> str:
        """Ledger label: proceed, warn, downgrade or abort."""
        if self.action is EnforcementAction.BLOCK:
            return "abort"
        if self.action is EnforcementAction.PROCEED_WITH_DOWNGRADE:
            return "downgrade"
        if self.severity is not AlertSeverity.NONE:
            return "warn"
        return "proceed"


@dataclass(frozen=True, slots=True)
class DowngradeDetails:
    """Cost delta of a downgrade that was actually applied."""

    original_cost_usd: Decimal
    new_cost_usd: Decimal
    savings_percent: float
    quality_impact_percent: float

    @classmethod
    def from_suggestion(cls, suggestion: DowngradeSuggestion) -> "DowngradeDetails":
        original = suggestion.estimated_cost_usd or Decimal("0")
        new = suggestion.estimated_new_cost_usd
        return cls(
            original_cost_usd=original,
            new_cost_usd=original if new is None else new,
            savings_percent=suggestion.cost_savings_percent,
            quality_impact_percent=suggestion.quality_impact_percent,
        )


@dataclass(frozen=True, slots=True)
class AlertEvent:
    """User-facing alert produced by the emitter."""

    project_id: str
    kind: AlertKind
    severity: AlertSeverity
    title: str
    message: str
    created_at: datetime
    status: BudgetStatus | None = None
    previous_status: BudgetStatus | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def format_usd(amount: Decimal | float | int) -> str:
    """Format an amount as USD with 2 to 4 fraction digits, e.g. ``$1,234.5678``."""

    value = Decimal(str(amount)).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    text = f"{abs(value):,.4f}"
    whole, frac = text.split(".")
    frac = frac.rstrip("0").ljust(2, "0")
    return f"{sign}${whole}.{frac}"


def validate_settings_changes(
    project_id: str,
    changes: Mapping[str, Any],
) -> dict[str, Any]:
    """Validate a partial settings update and normalize its values.

    Returns a dict keyed by BudgetSettings field names. Raises ValidationError on
    the first invalid field; nothing is persisted in that case.
    """

    normalized: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "monthly_budget_usd":
            amount = _to_decimal(project_id, key, value)
            if amount is None:
                raise ValidationError("monthly_budget_usd is required", project_id=project_id, field=key)
            if amount < 0:
                raise ValidationError(
                    "monthly_budget_usd must not be negative",
                    project_id=project_id,
                    field=key,
                )
            normalized[key] = amount
        elif key == "max_cost_per_query_usd":
            amount = _to_decimal(project_id, key, value)
            if amount is not None and amount <= 0:
                raise ValidationError(
                    "max_cost_per_query_usd must be positive when set",
                    project_id=project_id,
                    field=key,
                )
            normalized[key] = amount
        elif key == "enforcement_mode":
            normalized[key] = _to_enum(project_id, key, value, EnforcementMode)
        elif key == "preferred_baseline_strategy":
            normalized[key] = _to_enum(project_id, key, value, BaselineStrategy)
        else:
            raise ValidationError(f"Unknown budget setting: {key}", project_id=project_id, field=key)
    return normalized


def _to_decimal(project_id: str, key: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number", project_id=project_id, field=key)
    try:
        amount = Decimal(str(value))
    except (ArithmeticError, ValueError):
        raise ValidationError(f"{key} must be a number", project_id=project_id, field=key) from None
    if not amount.is_finite():
        raise ValidationError(f"{key} must be finite", project_id=project_id, field=key)
    return amount


def _to_enum(project_id: str, key: str, value: Any, enum_cls: type[Enum]) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)  # type: ignore[attr-defined]
        raise ValidationError(
            f"{key} must be one of: {allowed}",
            project_id=project_id,
            field=key,
        ) from None
