from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Mapping

from fineflow_budget.core.errors import NotFoundError
from fineflow_budget.domain.services.budget_store import (
    BudgetLedger,
    BudgetStore,
    CostEntry,
    DecisionRecord,
    ProjectBudgetRow,
)


def _column_value(value: Any) -> Any:
    return getattr(value, "value", value)


class InMemoryBudgetStore(BudgetStore, BudgetLedger):
    """In-process budget store and ledger for portable mode and tests."""

    def __init__(self) -> None:
        self._projects: dict[str, ProjectBudgetRow] = {}
        self._costs: list[CostEntry] = []
        self._decisions: list[DecisionRecord] = []
        self._lock = asyncio.Lock()

    async def create_project(self, project_id: str, name: str, **settings: Any) -> ProjectBudgetRow:
        row = ProjectBudgetRow(
            project_id=project_id,
            name=name,
            **{key: _column_value(value) for key, value in settings.items()},
        )
        async with self._lock:
            self._projects[project_id] = row
        return row

    async def get_budget_row(self, project_id: str) -> ProjectBudgetRow:
        async with self._lock:
            row = self._projects.get(project_id)
        if row is None:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        return row

    async def get_month_spending(self, project_id: str, month_start: date, month_end: date) -> Decimal:
        since = datetime.combine(month_start, time.min, tzinfo=timezone.utc)
        until = datetime.combine(month_end, time.min, tzinfo=timezone.utc)
        async with self._lock:
            return sum(
                (
                    entry.cost_usd
                    for entry in self._costs
                    if entry.project_id == project_id and since <= entry.created_at < until
                ),
                Decimal("0"),
            )

    async def update_settings(self, project_id: str, changes: Mapping[str, Any]) -> ProjectBudgetRow:
        async with self._lock:
            row = self._projects.get(project_id)
            if row is None:
                raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
            row = replace(row, **{key: _column_value(value) for key, value in changes.items()})
            self._projects[project_id] = row
            return row

    async def record_cost(self, entry: CostEntry) -> None:
        async with self._lock:
            self._costs.append(entry)

    async def list_costs(self, project_id: str, since: datetime, until: datetime) -> list[CostEntry]:
        async with self._lock:
            entries = [
                entry
                for entry in self._costs
                if entry.project_id == project_id and since <= entry.created_at < until
            ]
        return sorted(entries, key=lambda entry: entry.created_at)

    async def record_decision(self, record: DecisionRecord) -> None:
        async with self._lock:
            self._decisions.append(record)

    async def list_decisions(
        self,
        project_id: str,
        *,
        limit: int = 50,
        decision_type: str | None = None,
        since: datetime | None = None,
    ) -> list[DecisionRecord]:
        async with self._lock:
            records = [
                record
                for record in self._decisions
                if record.project_id == project_id
                and (decision_type is None or record.decision_type == decision_type)
                and (since is None or record.created_at >= since)
            ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[:limit]
