from __future__ import annotations

from typing import Any, Mapping

from fineflow_budget.application.services.budget_guard import AuditTrail, GuardRegistry
from fineflow_budget.application.services.snapshot_reader import BudgetSnapshotReader
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.budget import BudgetSettings, validate_settings_changes

logger = get_logger(__name__)


def _settings_payload(settings: BudgetSettings) -> dict[str, Any]:
    return {
        "monthly_budget_usd": str(settings.monthly_budget_usd),
        "max_cost_per_query_usd": (
            str(settings.max_cost_per_query_usd) if settings.max_cost_per_query_usd is not None else None
        ),
        "enforcement_mode": settings.enforcement_mode.value,
        "preferred_baseline_strategy": settings.preferred_baseline_strategy.value,
    }


class BudgetSettingsService:
    """Reads and updates project budget settings.

    Updates are validated before anything is written, audited, and followed by
    a manual refresh of the project's guard so the next decision sees them.
    """

    def __init__(
        self,
        reader: BudgetSnapshotReader,
        guards: GuardRegistry | None = None,
        audit: AuditTrail | None = None,
    ) -> None:
        self._reader = reader
        self._guards = guards
        self._audit = audit

    async def get_settings(self, project_id: str) -> BudgetSettings:
        return await self._reader.read_settings(project_id)

    async def update_settings(
        self,
        project_id: str,
        changes: Mapping[str, Any],
        *,
        actor_id: str | None = None,
    ) -> BudgetSettings:
        normalized = validate_settings_changes(project_id, changes)
        previous = await self._reader.read_settings(project_id)
        if not normalized:
            return previous

        row = await self._reader.store.update_settings(project_id, normalized)
        updated = self._reader.settings_from_row(row)
        logger.info(f"Budget settings updated for project {project_id}: {sorted(normalized)}")

        if self._audit is not None:
            await self._audit.log(
                "budget.settings_updated",
                actor_id,
                project_id,
                payload={"before": _settings_payload(previous), "after": _settings_payload(updated)},
            )

        if self._guards is not None:
            guard = self._guards.peek(project_id)
            if guard is not None:
                await guard.refresh(manual=True)
        return updated
