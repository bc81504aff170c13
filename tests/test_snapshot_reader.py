"""Tests for the budget snapshot reader."""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from fineflow_budget.application.services.cost_tracker import CostTrackerService
from fineflow_budget.application.services.memory_budget_store import InMemoryBudgetStore
from fineflow_budget.application.services.snapshot_reader import BudgetSnapshotReader, month_bounds
from fineflow_budget.core.errors import NotFoundError, TransientError
from fineflow_budget.domain.budget import BaselineStrategy, BudgetStatus, EnforcementMode
from fineflow_budget.domain.classifier import classify
from fineflow_budget.infrastructure.memory_client import InMemoryRedis


class SlowStore(InMemoryBudgetStore):
    async def get_budget_row(self, project_id):
        await asyncio.sleep(1)
        return await super().get_budget_row(project_id)


class TestReadSnapshot:
    async def test_reads_settings_and_current_month_spend(self, memory_store, add_spend, fixed_clock):
        await add_spend(memory_store, "12.5")
        await add_spend(memory_store, "7.5")
        # Previous month does not count.
        await add_spend(memory_store, "100", when=fixed_clock().replace(month=5))

        snapshot = await BudgetSnapshotReader(memory_store, clock=fixed_clock).read_snapshot("proj_1")

        assert snapshot.spending_usd == Decimal("20.0")
        assert snapshot.settings.monthly_budget_usd == Decimal("500")
        assert snapshot.read_at == fixed_clock()

    async def test_missing_columns_use_defaults(self, fixed_clock):
        store = InMemoryBudgetStore()
        await store.create_project("proj_new", "New")
        reader = BudgetSnapshotReader(
            store,
            default_monthly_budget_usd=Decimal("75"),
            default_max_cost_per_query_usd=Decimal("0.5"),
            default_enforcement_mode="abort",
            clock=fixed_clock,
        )

        settings = (await reader.read_snapshot("proj_new")).settings

        assert settings.monthly_budget_usd == Decimal("75")
        assert settings.max_cost_per_query_usd == Decimal("0.5")
        assert settings.enforcement_mode is EnforcementMode.ABORT
        assert settings.preferred_baseline_strategy is BaselineStrategy.BALANCED

    async def test_invalid_stored_values_fall_back(self, fixed_clock):
        store = InMemoryBudgetStore()
        await store.create_project(
            "proj_bad",
            "Bad",
            monthly_budget_usd=Decimal("-5"),
            max_cost_per_query_usd=Decimal("0"),
            enforcement_mode="turbo",
        )

        settings = await BudgetSnapshotReader(store, clock=fixed_clock).read_settings("proj_bad")

        assert settings.monthly_budget_usd == Decimal("50")
        assert settings.max_cost_per_query_usd is None
        assert settings.enforcement_mode is EnforcementMode.WARN
        assert settings.preferred_baseline_strategy is BaselineStrategy.BALANCED

    async def test_negative_spend_is_clamped(self, memory_store, add_spend, fixed_clock):
        await add_spend(memory_store, "-3")
        snapshot = await BudgetSnapshotReader(memory_store, clock=fixed_clock).read_snapshot("proj_1")
        assert snapshot.spending_usd == Decimal("0")

    async def test_spend_written_outside_the_service_is_counted(self, memory_store, add_spend, fixed_clock):
        redis = InMemoryRedis()
        tracker = CostTrackerService(redis, memory_store, memory_store, clock=fixed_clock)
        await tracker.record_cost("proj_1", "evaluation", Decimal("10"))
        assert await tracker.month_spending("proj_1") == Decimal("10")
        # Another service appends straight to the ledger.
        await add_spend(memory_store, "600")

        snapshot = await BudgetSnapshotReader(memory_store, clock=fixed_clock).read_snapshot("proj_1")

        assert snapshot.spending_usd == Decimal("610")
        assert classify(snapshot, fixed_clock().date()).status is BudgetStatus.OVER_BUDGET

    async def test_unknown_project_raises_not_found(self, memory_store, fixed_clock):
        with pytest.raises(NotFoundError):
            await BudgetSnapshotReader(memory_store, clock=fixed_clock).read_snapshot("missing")

    async def test_slow_read_times_out_as_transient(self, fixed_clock):
        store = SlowStore()
        await store.create_project("proj_1", "Slow")
        reader = BudgetSnapshotReader(store, timeout_s=0.01, clock=fixed_clock)

        with pytest.raises(TransientError) as excinfo:
            await reader.read_snapshot("proj_1")

        assert excinfo.value.retryable
        assert excinfo.value.project_id == "proj_1"


@pytest.mark.parametrize(
    "today, expected",
    [
        (date(2026, 6, 20), (date(2026, 6, 1), date(2026, 7, 1))),
        (date(2026, 12, 31), (date(2026, 12, 1), date(2027, 1, 1))),
    ],
)
def test_month_bounds(today, expected):
    assert month_bounds(today) == expected
