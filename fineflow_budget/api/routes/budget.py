"""
Budget guard API routes.

Every AI-triggering call site asks ``POST /check`` before spending and reports
the actual spend through ``POST /costs`` afterwards.
"""
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from fineflow_budget.api.dependencies import (
    get_alert_inbox,
    get_cost_tracker,
    get_guards,
    get_ledger,
    get_report_service,
    get_scheduler,
    get_settings_service,
    require_permission,
)
from fineflow_budget.application.auth.context import RequestContext
from fineflow_budget.application.services.alert_emitter import CollectingAlertSink
from fineflow_budget.application.services.budget_guard import BudgetGuard, GuardRegistry
from fineflow_budget.application.services.budget_report import BudgetReportService
from fineflow_budget.application.services.budget_settings import BudgetSettingsService
from fineflow_budget.application.services.cost_tracker import CostTrackerService
from fineflow_budget.application.services.refresh_scheduler import RefreshScheduler
from fineflow_budget.core.errors import NotFoundError, TransientError
from fineflow_budget.domain.budget import OperationConfig
from fineflow_budget.domain.budget_api import (
    AlertOut,
    BudgetCheckIn,
    BudgetCheckOut,
    BudgetReportOut,
    BudgetSettingsOut,
    BudgetSettingsPatch,
    BudgetSummaryOut,
    CostRecordIn,
    CostRecordOut,
    DecisionOut,
)
from fineflow_budget.domain.services.budget_store import BudgetLedger

router = APIRouter(prefix="/v1/projects/{project_id}/budget", tags=["budget"])


async def _guard_for(
    project_id: str,
    guards: GuardRegistry,
    scheduler: RefreshScheduler,
    *,
    refresh: bool,
) -> BudgetGuard:
    """Return the project's guard, refreshed when asked to or never read yet."""

    guard = guards.get(project_id)
    if refresh or guard.snapshot is None:
        try:
            await guard.refresh(manual=True)
        except NotFoundError:
            guards.forget(project_id)
            raise
    if guard.snapshot is not None:
        scheduler.watch(guard)
    return guard


@router.get("/summary", response_model=BudgetSummaryOut)
async def get_budget_summary(
    project_id: str,
    refresh: bool = Query(False, description="Re-read the snapshot first"),
    ctx: RequestContext = Depends(require_permission("can_read")),
    guards: GuardRegistry = Depends(get_guards),
    scheduler: RefreshScheduler = Depends(get_scheduler),
) -> BudgetSummaryOut:
    guard = await _guard_for(project_id, guards, scheduler, refresh=refresh)
    if guard.summary is None:
        raise guard.last_error or TransientError("Budget data is unavailable", project_id=project_id)
    return BudgetSummaryOut.from_domain(
        guard.summary,
        enforcement_mode=guard.enforcement_mode.value,
        is_operation_blocked=guard.is_operation_blocked(),
        blocked_message=guard.get_blocked_message() if guard.is_operation_blocked() else None,
        last_error=guard.last_error.message if guard.last_error else None,
    )


@router.get("/settings", response_model=BudgetSettingsOut)
async def get_budget_settings(
    project_id: str,
    ctx: RequestContext = Depends(require_permission("can_read")),
    service: BudgetSettingsService = Depends(get_settings_service),
) -> BudgetSettingsOut:
    return BudgetSettingsOut.from_domain(await service.get_settings(project_id))


@router.put("/settings", response_model=BudgetSettingsOut)
async def update_budget_settings(
    project_id: str,
    patch: BudgetSettingsPatch,
    ctx: RequestContext = Depends(require_permission("can_manage_budget")),
    service: BudgetSettingsService = Depends(get_settings_service),
) -> BudgetSettingsOut:
    settings = await service.update_settings(
        project_id,
        patch.changes(),
        actor_id=ctx.principal.user_id,
    )
    return BudgetSettingsOut.from_domain(settings)


@router.post("/check", response_model=BudgetCheckOut)
async def check_budget(
    project_id: str,
    body: BudgetCheckIn,
    ctx: RequestContext = Depends(require_permission("can_write")),
    guards: GuardRegistry = Depends(get_guards),
    scheduler: RefreshScheduler = Depends(get_scheduler),
) -> BudgetCheckOut:
    """Decide whether an operation may run, and with which configuration."""
    guard = await _guard_for(project_id, guards, scheduler, refresh=body.refresh)
    operation = body.operation.to_domain() if body.operation else OperationConfig()
    decision = await guard.check(
        body.estimated_cost_usd,
        operation=operation,
        operation_type=body.operation_type,
        sample_texts=body.sample_texts,
        record=True,
    )
    return BudgetCheckOut.from_domain(
        decision,
        operation,
        is_over_budget=guard.is_over_budget,
        is_at_risk=guard.is_at_risk,
    )


@router.post("/costs", response_model=CostRecordOut, status_code=201)
async def record_cost(
    project_id: str,
    body: CostRecordIn,
    ctx: RequestContext = Depends(require_permission("can_write")),
    tracker: CostTrackerService = Depends(get_cost_tracker),
    guards: GuardRegistry = Depends(get_guards),
) -> CostRecordOut:
    entry = await tracker.record_cost(
        project_id,
        body.operation_type,
        body.cost_usd,
        operation_id=body.operation_id,
        tokens_used=body.tokens_used,
        model_name=body.model_name,
        metadata=body.metadata,
    )
    guard = guards.peek(project_id)
    if guard is not None:
        await guard.refresh(manual=True)
    month_to_date = await tracker.month_spending(project_id, entry.created_at.date())
    return CostRecordOut.from_domain(entry, month_to_date)


@router.get("/report", response_model=BudgetReportOut)
async def get_budget_report(
    project_id: str,
    include_history: bool = Query(True),
    ctx: RequestContext = Depends(require_permission("can_read")),
    service: BudgetReportService = Depends(get_report_service),
) -> BudgetReportOut:
    return BudgetReportOut.from_domain(await service.build(project_id, include_history=include_history))


@router.get("/decisions", response_model=List[DecisionOut])
async def list_budget_decisions(
    project_id: str,
    limit: int = Query(50, ge=1, le=500),
    decision_type: Optional[Literal["warn", "downgrade", "abort"]] = Query(None),
    ctx: RequestContext = Depends(require_permission("can_read")),
    ledger: BudgetLedger = Depends(get_ledger),
) -> List[DecisionOut]:
    records = await ledger.list_decisions(project_id, limit=limit, decision_type=decision_type)
    return [DecisionOut.from_domain(record) for record in records]


@router.get("/alerts", response_model=List[AlertOut])
async def drain_budget_alerts(
    project_id: str,
    ctx: RequestContext = Depends(require_permission("can_read")),
    inbox: CollectingAlertSink = Depends(get_alert_inbox),
) -> List[AlertOut]:
    """Pending alerts of the project; each alert is returned once."""
    return [AlertOut.from_domain(event) for event in inbox.drain(project_id)]
