from __future__ import annotations

from datetime import date, datetime, time, timezone
from decimal import Decimal
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fineflow_budget.core.errors import NotFoundError, TransientError
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.services.budget_store import (
    BudgetLedger,
    BudgetStore,
    CostEntry,
    DecisionRecord,
    ProjectBudgetRow,
)
from fineflow_budget.infrastructure.models import BudgetDecisionModel, ProjectCostLogModel, ProjectModel

logger = get_logger(__name__)

# Domain field name -> projects column attribute.
_SETTINGS_COLUMNS = {
    "monthly_budget_usd": "monthly_budget_usd",
    "max_cost_per_query_usd": "max_cost_per_query_usd",
    "enforcement_mode": "budget_enforcement_mode",
    "preferred_baseline_strategy": "preferred_baseline_strategy",
}


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _column_value(value: Any) -> Any:
    return getattr(value, "value", value)


class SqlAlchemyBudgetStore(BudgetStore, BudgetLedger):
    """Budget store and ledger on the service's own database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, project_id: str) -> AsyncIterator[AsyncSession]:
        """Open a session; connectivity failures surface as TransientError."""
        try:
            async with self._session_factory() as session:
                yield session
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise TransientError(f"Database unavailable: {exc}", project_id=project_id) from exc

    async def get_budget_row(self, project_id: str) -> ProjectBudgetRow:
        async with self._session(project_id) as session:
            project = await session.get(ProjectModel, project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        return self._to_row(project)

    async def get_month_spending(self, project_id: str, month_start: date, month_end: date) -> Decimal:
        stmt = select(func.coalesce(func.sum(ProjectCostLogModel.cost_usd), 0)).where(
            ProjectCostLogModel.project_id == project_id,
            ProjectCostLogModel.created_at >= _start_of_day(month_start),
            ProjectCostLogModel.created_at < _start_of_day(month_end),
        )
        async with self._session(project_id) as session:
            total = (await session.execute(stmt)).scalar_one()
        return Decimal(str(total))

    async def update_settings(self, project_id: str, changes: Mapping[str, Any]) -> ProjectBudgetRow:
        async with self._session(project_id) as session:
            project = await session.get(ProjectModel, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
            for key, value in changes.items():
                setattr(project, _SETTINGS_COLUMNS[key], _column_value(value))
            await session.commit()
            await session.refresh(project)
            return self._to_row(project)

    async def create_project(self, project_id: str, name: str, **settings: Any) -> ProjectBudgetRow:
        """Insert a project row; used by the seed script and tests."""

        async with self._session(project_id) as session:
            project = ProjectModel(id=project_id, name=name)
            for key, value in settings.items():
                setattr(project, _SETTINGS_COLUMNS[key], _column_value(value))
            session.add(project)
            await session.commit()
            await session.refresh(project)
            return self._to_row(project)

    async def record_cost(self, entry: CostEntry) -> None:
        async with self._session(entry.project_id) as session:
            session.add(
                ProjectCostLogModel(
                    project_id=entry.project_id,
                    operation_type=entry.operation_type,
                    operation_id=entry.operation_id,
                    cost_usd=entry.cost_usd,
                    tokens_used=entry.tokens_used,
                    model_name=entry.model_name,
                    metadata_json=dict(entry.metadata),
                    created_at=entry.created_at,
                )
            )
            await session.commit()

    async def list_costs(self, project_id: str, since: datetime, until: datetime) -> list[CostEntry]:
        stmt = (
            select(ProjectCostLogModel)
            .where(
                ProjectCostLogModel.project_id == project_id,
                ProjectCostLogModel.created_at >= since,
                ProjectCostLogModel.created_at < until,
            )
            .order_by(ProjectCostLogModel.created_at.asc())
        )
        async with self._session(project_id) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            CostEntry(
                project_id=row.project_id,
                operation_type=row.operation_type,
                cost_usd=Decimal(str(row.cost_usd)),
                created_at=self._aware(row.created_at),
                operation_id=row.operation_id,
                tokens_used=row.tokens_used,
                model_name=row.model_name,
                metadata=dict(row.metadata_json or {}),
            )
            for row in rows
        ]

    async def record_decision(self, record: DecisionRecord) -> None:
        async with self._session(record.project_id) as session:
            session.add(
                BudgetDecisionModel(
                    project_id=record.project_id,
                    operation_type=record.operation_type,
                    decision_type=record.decision_type,
                    reason=record.reason,
                    tier=record.tier,
                    original_config=record.original_config,
                    adjusted_config=record.adjusted_config,
                    original_estimated_cost_usd=record.original_estimated_cost_usd,
                    adjusted_estimated_cost_usd=record.adjusted_estimated_cost_usd,
                    cost_savings_percent=record.cost_savings_percent,
                    quality_impact_percent=record.quality_impact_percent,
                    created_at=record.created_at,
                )
            )
            await session.commit()

    async def list_decisions(
        self,
        project_id: str,
        *,
        limit: int = 50,
        decision_type: str | None = None,
        since: datetime | None = None,
    ) -> list[DecisionRecord]:
        stmt = select(BudgetDecisionModel).where(BudgetDecisionModel.project_id == project_id)
        if decision_type is not None:
            stmt = stmt.where(BudgetDecisionModel.decision_type == decision_type)
        if since is not None:
            stmt = stmt.where(BudgetDecisionModel.created_at >= since)
        stmt = stmt.order_by(BudgetDecisionModel.created_at.desc()).limit(limit)
        async with self._session(project_id) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._to_decision(row) for row in rows]

    @staticmethod
    def _aware(value: datetime) -> datetime:
        # SQLite drops tzinfo on the way back.
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

    @staticmethod
    def _to_row(project: ProjectModel) -> ProjectBudgetRow:
        return ProjectBudgetRow(
            project_id=project.id,
            name=project.name,
            monthly_budget_usd=(
                Decimal(str(project.monthly_budget_usd)) if project.monthly_budget_usd is not None else None
            ),
            max_cost_per_query_usd=(
                Decimal(str(project.max_cost_per_query_usd))
                if project.max_cost_per_query_usd is not None
                else None
            ),
            enforcement_mode=project.budget_enforcement_mode,
            preferred_baseline_strategy=project.preferred_baseline_strategy,
        )

    def _to_decision(self, row: BudgetDecisionModel) -> DecisionRecord:
        def _dec(value: Any) -> Decimal | None:
            return Decimal(str(value)) if value is not None else None

        return DecisionRecord(
            project_id=row.project_id,
            decision_type=row.decision_type,
            reason=row.reason,
            created_at=self._aware(row.created_at),
            operation_type=row.operation_type,
            tier=row.tier,
            original_config=row.original_config,
            adjusted_config=row.adjusted_config,
            original_estimated_cost_usd=_dec(row.original_estimated_cost_usd),
            adjusted_estimated_cost_usd=_dec(row.adjusted_estimated_cost_usd),
            cost_savings_percent=row.cost_savings_percent,
            quality_impact_percent=row.quality_impact_percent,
        )
