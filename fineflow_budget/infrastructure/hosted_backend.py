from __future__ import annotations

import asyncio
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping

import httpx

from fineflow_budget.core.errors import NotFoundError, TransientError, ValidationError
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.services.budget_store import (
    BudgetLedger,
    BudgetStore,
    CostEntry,
    DecisionRecord,
    ProjectBudgetRow,
)

logger = get_logger(__name__)

_PROJECT_COLUMNS = (
    "id,name,monthly_budget_usd,max_cost_per_query_usd,"
    "budget_enforcement_mode,preferred_baseline_strategy"
)

_SETTINGS_COLUMNS = {
    "monthly_budget_usd": "monthly_budget_usd",
    "max_cost_per_query_usd": "max_cost_per_query_usd",
    "enforcement_mode": "budget_enforcement_mode",
    "preferred_baseline_strategy": "preferred_baseline_strategy",
}


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return getattr(value, "value", value)


def _decimal(value: Any) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class HostedBudgetBackend(BudgetStore, BudgetLedger):
    """Budget store backed by the managed backend's REST and RPC endpoints.

    ``client`` must be configured with the backend's base URL (``.../rest/v1/``).
    Reads are retried on transient failures with exponential backoff; writes
    are not retried.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        service_key: str | None = None,
        *,
        max_attempts: int = 3,
        backoff_base_s: float = 0.5,
    ) -> None:
        self._client = client
        self._headers: dict[str, str] = {}
        if service_key:
            self._headers = {
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
            }
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_s = backoff_base_s

    async def get_budget_row(self, project_id: str) -> ProjectBudgetRow:
        rows = await self._read(
            "projects",
            params=[("select", _PROJECT_COLUMNS), ("id", f"eq.{project_id}")],
            project_id=project_id,
        )
        if not rows:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        return self._to_row(rows[0])

    async def get_month_spending(self, project_id: str, month_start: date, month_end: date) -> Decimal:
        # The RPC always aggregates the backend's current calendar month.
        data = await self._request_with_retry(
            "POST",
            "rpc/get_project_month_spending",
            json={"p_project_id": project_id},
            project_id=project_id,
        )
        return Decimal(str(data or 0))

    async def update_settings(self, project_id: str, changes: Mapping[str, Any]) -> ProjectBudgetRow:
        body = {_SETTINGS_COLUMNS[key]: _json_value(value) for key, value in changes.items()}
        rows = await self._send(
            "PATCH",
            "projects",
            params=[("id", f"eq.{project_id}"), ("select", _PROJECT_COLUMNS)],
            json=body,
            headers={"Prefer": "return=representation"},
            project_id=project_id,
        )
        if not rows:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        return self._to_row(rows[0])

    async def record_cost(self, entry: CostEntry) -> None:
        await self._send(
            "POST",
            "project_cost_logs",
            json={
                "project_id": entry.project_id,
                "operation_type": entry.operation_type,
                "operation_id": entry.operation_id,
                "cost_usd": float(entry.cost_usd),
                "tokens_used": entry.tokens_used,
                "model_name": entry.model_name,
                "metadata": entry.metadata,
                "created_at": entry.created_at.isoformat(),
            },
            project_id=entry.project_id,
        )

    async def list_costs(self, project_id: str, since: datetime, until: datetime) -> list[CostEntry]:
        rows = await self._read(
            "project_cost_logs",
            params=[
                ("select", "*"),
                ("project_id", f"eq.{project_id}"),
                ("created_at", f"gte.{since.isoformat()}"),
                ("created_at", f"lt.{until.isoformat()}"),
                ("order", "created_at.asc"),
            ],
            project_id=project_id,
        )
        return [
            CostEntry(
                project_id=row["project_id"],
                operation_type=row["operation_type"],
                cost_usd=Decimal(str(row["cost_usd"])),
                created_at=_timestamp(row["created_at"]),
                operation_id=row.get("operation_id"),
                tokens_used=row.get("tokens_used"),
                model_name=row.get("model_name"),
                metadata=row.get("metadata") or {},
            )
            for row in rows
        ]

    async def record_decision(self, record: DecisionRecord) -> None:
        await self._send(
            "POST",
            "budget_decisions",
            json={
                "project_id": record.project_id,
                "operation_type": record.operation_type,
                "decision_type": record.decision_type,
                "reason": record.reason,
                "tier": record.tier,
                "original_config": record.original_config,
                "adjusted_config": record.adjusted_config,
                "original_estimated_cost_usd": _json_value(record.original_estimated_cost_usd),
                "adjusted_estimated_cost_usd": _json_value(record.adjusted_estimated_cost_usd),
                "cost_savings_percent": record.cost_savings_percent,
                "quality_impact_percent": record.quality_impact_percent,
                "created_at": record.created_at.isoformat(),
            },
            project_id=record.project_id,
        )

    async def list_decisions(
        self,
        project_id: str,
        *,
        limit: int = 50,
        decision_type: str | None = None,
        since: datetime | None = None,
    ) -> list[DecisionRecord]:
        params: list[tuple[str, str]] = [
            ("select", "*"),
            ("project_id", f"eq.{project_id}"),
            ("order", "created_at.desc"),
            ("limit", str(limit)),
        ]
        if decision_type is not None:
            params.append(("decision_type", f"eq.{decision_type}"))
        if since is not None:
            params.append(("created_at", f"gte.{since.isoformat()}"))
        rows = await self._read("budget_decisions", params=params, project_id=project_id)
        return [
            DecisionRecord(
                project_id=row["project_id"],
                decision_type=row["decision_type"],
                reason=row.get("reason") or "",
                created_at=_timestamp(row["created_at"]),
                operation_type=row.get("operation_type"),
                tier=row.get("tier"),
                original_config=row.get("original_config"),
                adjusted_config=row.get("adjusted_config"),
                original_estimated_cost_usd=_decimal(row.get("original_estimated_cost_usd")),
                adjusted_estimated_cost_usd=_decimal(row.get("adjusted_estimated_cost_usd")),
                cost_savings_percent=row.get("cost_savings_percent"),
                quality_impact_percent=row.get("quality_impact_percent"),
            )
            for row in rows
        ]

    async def _read(self, path: str, *, params: list[tuple[str, str]], project_id: str) -> list[dict[str, Any]]:
        data = await self._request_with_retry("GET", path, params=params, project_id=project_id)
        return list(data or [])

    async def _request_with_retry(self, method: str, path: str, *, project_id: str, **kwargs: Any) -> Any:
        for attempt in range(self._max_attempts):
            try:
                return await self._send(method, path, project_id=project_id, **kwargs)
            except TransientError:
                if attempt == self._max_attempts - 1:
                    raise
                logger.warning(
                    f"Hosted backend {method} {path} failed (attempt {attempt + 1}), retrying",
                )
                await asyncio.sleep(self._backoff_base_s * 2**attempt)
        raise TransientError("Hosted backend retries exhausted", project_id=project_id)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        project_id: str,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        try:
            resp = await self._client.request(
                method,
                path,
                headers={**self._headers, **(headers or {})},
                **kwargs,
            )
        except httpx.TransportError as exc:
            raise TransientError(
                f"Hosted backend unreachable: {exc}",
                project_id=project_id,
            ) from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(
                f"Hosted backend transient error: {resp.status_code} {resp.text}",
                project_id=project_id,
                upstream_status=resp.status_code,
            )
        if resp.status_code == 404:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        if resp.status_code >= 400:
            raise ValidationError(
                f"Hosted backend rejected the request: {resp.status_code} {resp.text}",
                project_id=project_id,
            )
        if not resp.content:
            return None
        return resp.json(parse_float=Decimal)

    @staticmethod
    def _to_row(data: Mapping[str, Any]) -> ProjectBudgetRow:
        return ProjectBudgetRow(
            project_id=str(data["id"]),
            name=data.get("name"),
            monthly_budget_usd=_decimal(data.get("monthly_budget_usd")),
            max_cost_per_query_usd=_decimal(data.get("max_cost_per_query_usd")),
            enforcement_mode=data.get("budget_enforcement_mode"),
            preferred_baseline_strategy=data.get("preferred_baseline_strategy"),
        )
