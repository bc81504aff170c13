from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fineflow_budget.application.services.memory_budget_store import InMemoryBudgetStore
from fineflow_budget.domain.budget import (
    BudgetSettings,
    BudgetSnapshot,
    BudgetSummary,
    EnforcementMode,
)
from fineflow_budget.domain.classifier import classify
from fineflow_budget.infrastructure.models import Base

# June has 30 days, which keeps the projection arithmetic readable.
TODAY = date(2026, 6, 20)
NOW = datetime(2026, 6, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_snapshot() -> Callable[..., BudgetSnapshot]:
    def _make(
        spending: str | Decimal,
        budget: str | Decimal = "500",
        *,
        mode: EnforcementMode | str = EnforcementMode.WARN,
        cap: str | Decimal | None = None,
        project_id: str = "proj_1",
    ) -> BudgetSnapshot:
        settings = BudgetSettings(
            project_id=project_id,
            monthly_budget_usd=Decimal(budget),
            max_cost_per_query_usd=Decimal(cap) if cap is not None else None,
            enforcement_mode=EnforcementMode(mode),
        )
        return BudgetSnapshot(project_id=project_id, spending_usd=Decimal(spending), settings=settings)

    return _make


@pytest.fixture
def make_summary(make_snapshot) -> Callable[..., BudgetSummary]:
    def _make(spending: str | Decimal, budget: str | Decimal = "500", today: date = TODAY) -> BudgetSummary:
        return classify(make_snapshot(spending, budget), today)

    return _make


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
async def memory_store() -> InMemoryBudgetStore:
    store = InMemoryBudgetStore()
    await store.create_project("proj_1", "Project One", monthly_budget_usd=Decimal("500"))
    return store


@pytest.fixture
async def session_factory():
    """Fresh in-memory SQLite database with every table created."""

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def add_spend():
    """Record a cost entry dated ``NOW`` (or ``when``) in a store."""

    from fineflow_budget.domain.services.budget_store import CostEntry

    async def _add(store, amount: str | Decimal, project_id: str = "proj_1", when: datetime = NOW,
                   operation_type: str = "evaluation") -> CostEntry:
        entry = CostEntry(
            project_id=project_id,
            operation_type=operation_type,
            cost_usd=Decimal(amount),
            created_at=when,
        )
        await store.record_cost(entry)
        return entry

    return _add
