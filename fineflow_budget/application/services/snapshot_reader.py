from __future__ import annotations

import asyncio
import time
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable

from fineflow_budget.core.errors import NotFoundError, TransientError
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.budget import (
    BaselineStrategy,
    BudgetSettings,
    BudgetSnapshot,
    EnforcementMode,
)
from fineflow_budget.domain.services.budget_store import BudgetStore, ProjectBudgetRow
from fineflow_budget.monitoring.metrics import SNAPSHOT_READ_DURATION_SECONDS, SNAPSHOT_READ_FAILURES_TOTAL

logger = get_logger(__name__)


def month_bounds(today: date) -> tuple[date, date]:
    """First day of ``today``'s month and first day of the next month."""

    start = today.replace(day=1)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


class BudgetSnapshotReader:
    """Reads a project's settings and current-month spend as one snapshot.

    Spend always comes from the store's ledger aggregate, which also sees
    costs written by other services. Missing budget columns are filled from the
    configured defaults. A read that exceeds ``timeout_s`` raises TransientError.
    """

    def __init__(
        self,
        store: BudgetStore,
        *,
        default_monthly_budget_usd: Decimal = Decimal("50"),
        default_max_cost_per_query_usd: Decimal | None = None,
        default_enforcement_mode: EnforcementMode | str = EnforcementMode.WARN,
        timeout_s: float = 10.0,
        backend_name: str = "store",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._default_budget = default_monthly_budget_usd
        self._default_cap = default_max_cost_per_query_usd
        self._default_mode = EnforcementMode(default_enforcement_mode)
        self._timeout_s = timeout_s
        self._backend_name = backend_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> BudgetStore:
        return self._store

    def today(self) -> date:
        return self._clock().date()

    async def read_snapshot(self, project_id: str) -> BudgetSnapshot:
        started = time.perf_counter()
        try:
            snapshot = await asyncio.wait_for(self._read(project_id), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            SNAPSHOT_READ_FAILURES_TOTAL.labels(backend=self._backend_name, error="timeout").inc()
            raise TransientError(
                f"Budget snapshot read timed out after {self._timeout_s:.1f}s",
                project_id=project_id,
            ) from None
        except NotFoundError:
            SNAPSHOT_READ_FAILURES_TOTAL.labels(backend=self._backend_name, error="not_found").inc()
            raise
        except TransientError:
            SNAPSHOT_READ_FAILURES_TOTAL.labels(backend=self._backend_name, error="transient").inc()
            raise
        SNAPSHOT_READ_DURATION_SECONDS.labels(backend=self._backend_name).observe(
            time.perf_counter() - started
        )
        return snapshot

    async def read_settings(self, project_id: str) -> BudgetSettings:
        row = await self._store.get_budget_row(project_id)
        return self.settings_from_row(row)

    def settings_from_row(self, row: ProjectBudgetRow) -> BudgetSettings:
        budget = row.monthly_budget_usd
        if budget is None or budget < 0:
            budget = self._default_budget
        cap = row.max_cost_per_query_usd
        if cap is None or cap <= 0:
            cap = self._default_cap
        return BudgetSettings(
            project_id=row.project_id,
            monthly_budget_usd=budget,
            max_cost_per_query_usd=cap,
            enforcement_mode=self._coerce(row.enforcement_mode, EnforcementMode, self._default_mode),
            preferred_baseline_strategy=self._coerce(
                row.preferred_baseline_strategy, BaselineStrategy, BaselineStrategy.BALANCED
            ),
        )

    async def _read(self, project_id: str) -> BudgetSnapshot:
        today = self.today()
        row = await self._store.get_budget_row(project_id)
        spending = await self._month_spending(project_id, today)
        return BudgetSnapshot(
            project_id=project_id,
            spending_usd=max(spending, Decimal("0")),
            settings=self.settings_from_row(row),
            read_at=self._clock(),
        )

    async def _month_spending(self, project_id: str, today: date) -> Decimal:
        month_start, month_end = month_bounds(today)
        return await self._store.get_month_spending(project_id, month_start, month_end)

    @staticmethod
    def _coerce(value, enum_cls, default):
        if value is None:
            return default
        try:
            return enum_cls(value)
        except ValueError:
            logger.warning(f"Ignoring unknown {enum_cls.__name__} value {value!r}; using {default.value}")
            return default
