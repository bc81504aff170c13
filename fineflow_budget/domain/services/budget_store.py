from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class ProjectBudgetRow:
    """Budget columns of a project exactly as stored; any of them may be unset."""

    project_id: str
    name: str | None = None
    monthly_budget_usd: Decimal | None = None
    max_cost_per_query_usd: Decimal | None = None
    enforcement_mode: str | None = None
    preferred_baseline_strategy: str | None = None


@dataclass(frozen=True, slots=True)
class CostEntry:
    """A recorded AI operation cost."""

    project_id: str
    operation_type: str
    cost_usd: Decimal
    created_at: datetime
    operation_id: str | None = None
    tokens_used: int | None = None
    model_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DecisionRecord:
    """A non-proceed guard decision as written to the decision ledger."""

    project_id: str
    decision_type: str
    reason: str
    created_at: datetime
    operation_type: str | None = None
    tier: str | None = None
    original_config: dict[str, Any] | None = None
    adjusted_config: dict[str, Any] | None = None
    original_estimated_cost_usd: Decimal | None = None
    adjusted_estimated_cost_usd: Decimal | None = None
    cost_savings_percent: float | None = None
    quality_impact_percent: float | None = None


@runtime_checkable
class BudgetStore(Protocol):
    """Source of truth for project budget settings and month-to-date spend."""

    async def get_budget_row(self, project_id: str) -> ProjectBudgetRow:
        """Return the project's budget columns.

        Raises:
            NotFoundError: The project does not exist.
            TransientError: The backing store could not be reached.
        """

    async def get_month_spending(self, project_id: str, month_start: date, month_end: date) -> Decimal:
        """Sum of recorded costs with ``month_start <= created_at < month_end``."""

    async def update_settings(self, project_id: str, changes: Mapping[str, Any]) -> ProjectBudgetRow:
        """Apply already-validated changes and return the updated row."""


@runtime_checkable
class BudgetLedger(Protocol):
    """Append-only history of costs and guard decisions."""

    async def record_cost(self, entry: CostEntry) -> None:
        """Persist a cost entry."""

    async def list_costs(self, project_id: str, since: datetime, until: datetime) -> list[CostEntry]:
        """Cost entries in ``[since, until)``, oldest first."""

    async def record_decision(self, record: DecisionRecord) -> None:
        """Persist a decision ledger entry."""

    async def list_decisions(
        self,
        project_id: str,
        *,
        limit: int = 50,
        decision_type: str | None = None,
        since: datetime | None = None,
    ) -> list[DecisionRecord]:
        """Most recent decisions first."""
