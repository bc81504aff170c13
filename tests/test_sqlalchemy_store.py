"""Tests for the SQLAlchemy budget store, ledger and audit trail on SQLite."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from fineflow_budget.core.audit import GENESIS_HASH, AuditLogger
from fineflow_budget.core.errors import NotFoundError, TransientError
from fineflow_budget.domain.budget import EnforcementMode
from fineflow_budget.domain.services.budget_store import CostEntry, DecisionRecord
from fineflow_budget.infrastructure.models import AuditLogModel
from fineflow_budget.infrastructure.repositories.budget import SqlAlchemyBudgetStore

NOW = datetime(2026, 6, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def store(session_factory):
    store = SqlAlchemyBudgetStore(session_factory)
    await store.create_project(
        "proj_1",
        "Project One",
        monthly_budget_usd=Decimal("500"),
        enforcement_mode=EnforcementMode.WARN,
    )
    return store


def _decision(decision_type: str, minutes: int, project_id: str = "proj_1") -> DecisionRecord:
    return DecisionRecord(
        project_id=project_id,
        decision_type=decision_type,
        reason=f"{decision_type} at +{minutes}m",
        created_at=NOW + timedelta(minutes=minutes),
        operation_type="evaluation",
        original_estimated_cost_usd=Decimal("0.25"),
    )


class _BrokenFactory:
    def __call__(self):
        raise OperationalError("SELECT 1", {}, Exception("database is down"))


# =============================================================================
# Projects and settings
# =============================================================================


class TestProjects:
    async def test_row_round_trips_budget_columns(self, store):
        row = await store.get_budget_row("proj_1")

        assert row.project_id == "proj_1"
        assert row.name == "Project One"
        assert row.monthly_budget_usd == Decimal("500")
        assert row.max_cost_per_query_usd is None
        assert row.enforcement_mode == "warn"

    async def test_unknown_project_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.get_budget_row("proj_missing")

    async def test_database_errors_are_transient(self):
        broken = SqlAlchemyBudgetStore(_BrokenFactory())

        with pytest.raises(TransientError):
            await broken.get_budget_row("proj_1")
        with pytest.raises(TransientError):
            await broken.get_month_spending("proj_1", date(2026, 6, 1), date(2026, 7, 1))

    async def test_write_and_listing_errors_are_transient(self):
        broken = SqlAlchemyBudgetStore(_BrokenFactory())
        entry = CostEntry(project_id="proj_1", operation_type="evaluation", cost_usd=Decimal("1"), created_at=NOW)
        decision = DecisionRecord(project_id="proj_1", decision_type="warn", reason="r", created_at=NOW)

        with pytest.raises(TransientError):
            await broken.update_settings("proj_1", {"monthly_budget_usd": Decimal("10")})
        with pytest.raises(TransientError):
            await broken.record_cost(entry)
        with pytest.raises(TransientError):
            await broken.record_decision(decision)
        with pytest.raises(TransientError):
            await broken.list_costs("proj_1", NOW - timedelta(days=1), NOW)
        with pytest.raises(TransientError) as excinfo:
            await broken.list_decisions("proj_1")

        assert excinfo.value.project_id == "proj_1"

    async def test_update_settings_maps_enforcement_mode_column(self, store):
        row = await store.update_settings(
            "proj_1",
            {"enforcement_mode": EnforcementMode.AUTO_DOWNGRADE, "max_cost_per_query_usd": Decimal("0.5")},
        )

        assert row.enforcement_mode == "auto_downgrade"
        assert row.max_cost_per_query_usd == Decimal("0.5")
        assert (await store.get_budget_row("proj_1")).enforcement_mode == "auto_downgrade"

    async def test_update_settings_of_unknown_project(self, store):
        with pytest.raises(NotFoundError):
            await store.update_settings("proj_missing", {"monthly_budget_usd": Decimal("10")})


# =============================================================================
# Costs
# =============================================================================


class TestCosts:
    async def test_month_spending_sums_the_window_only(self, store, add_spend):
        await add_spend(store, "1.25")
        await add_spend(store, "0.5", when=datetime(2026, 6, 1, 0, 0, tzinfo=timezone.utc))
        await add_spend(store, "40", when=datetime(2026, 5, 31, 23, 59, tzinfo=timezone.utc))
        await add_spend(store, "40", when=datetime(2026, 7, 1, 0, 0, tzinfo=timezone.utc))

        total = await store.get_month_spending("proj_1", date(2026, 6, 1), date(2026, 7, 1))

        assert total == Decimal("1.75")

    async def test_month_spending_without_costs_is_zero(self, store):
        assert await store.get_month_spending("proj_1", date(2026, 6, 1), date(2026, 7, 1)) == Decimal("0")

    async def test_list_costs_is_oldest_first_and_timezone_aware(self, store, add_spend):
        await add_spend(store, "2", when=NOW + timedelta(hours=1), operation_type="embedding")
        await add_spend(store, "1")

        entries = await store.list_costs("proj_1", NOW - timedelta(days=1), NOW + timedelta(days=1))

        assert [entry.cost_usd for entry in entries] == [Decimal("1"), Decimal("2")]
        assert entries[1].operation_type == "embedding"
        assert all(entry.created_at.tzinfo is not None for entry in entries)
        assert entries[0].created_at == NOW


# =============================================================================
# Decisions
# =============================================================================


class TestDecisions:
    async def test_most_recent_first_with_limit(self, store):
        for minutes, kind in enumerate(["warn", "downgrade", "abort"]):
            await store.record_decision(_decision(kind, minutes))

        records = await store.list_decisions("proj_1", limit=2)

        assert [record.decision_type for record in records] == ["abort", "downgrade"]
        assert records[0].original_estimated_cost_usd == Decimal("0.25")
        assert records[0].created_at.tzinfo is not None

    async def test_filter_by_type_and_since(self, store):
        await store.record_decision(_decision("warn", 0))
        await store.record_decision(_decision("abort", 1))
        await store.record_decision(_decision("warn", 5))

        warns = await store.list_decisions("proj_1", decision_type="warn")
        recent = await store.list_decisions("proj_1", since=NOW + timedelta(minutes=1))

        assert [record.reason for record in warns] == ["warn at +5m", "warn at +0m"]
        assert len(recent) == 2


# =============================================================================
# Audit trail
# =============================================================================


class TestAuditLogger:
    async def test_entries_form_a_verifiable_chain(self, session_factory):
        audit = AuditLogger(session_factory)

        first = await audit.log("budget_settings_updated", "user_1", "proj_1", payload={"before": 1, "after": 2})
        second = await audit.log("operation_blocked", None, "proj_1")

        assert first != second
        assert len(first) == 64
        assert await audit.count() == 2
        assert await audit.verify_chain() is True

    async def test_empty_chain_verifies(self, session_factory):
        assert await AuditLogger(session_factory).verify_chain() is True
        assert GENESIS_HASH == "0" * 64

    async def test_tampered_payload_breaks_the_chain(self, session_factory):
        audit = AuditLogger(session_factory)
        await audit.log("budget_settings_updated", "user_1", "proj_1", payload={"after": "100"})
        await audit.log("budget_settings_updated", "user_1", "proj_1", payload={"after": "200"})

        async with session_factory() as session:
            await session.execute(
                update(AuditLogModel).where(AuditLogModel.sequence == 1).values(payload={"after": "999"})
            )
            await session.commit()

        assert await audit.verify_chain() is False

    async def test_sensitive_keys_are_redacted(self, session_factory):
        audit = AuditLogger(session_factory)
        await audit.log(
            "api_key_created",
            "admin",
            "proj_1",
            payload={"api_key": "ffb_secret", "nested": {"Token": "abc", "label": "ci"}},
        )

        async with session_factory() as session:
            entry = (await session.execute(select(AuditLogModel))).scalar_one()

        assert entry.payload["api_key"] == "[REDACTED]"
        assert entry.payload["nested"] == {"Token": "[REDACTED]", "label": "ci"}
        assert await audit.verify_chain() is True
