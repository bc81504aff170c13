from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request

from fineflow_budget.application.auth.context import AuthenticatedPrincipal, RequestContext
from fineflow_budget.application.services.alert_emitter import CollectingAlertSink
from fineflow_budget.application.services.budget_guard import GuardRegistry
from fineflow_budget.application.services.budget_report import BudgetReportService
from fineflow_budget.application.services.budget_settings import BudgetSettingsService
from fineflow_budget.application.services.cost_tracker import CostTrackerService
from fineflow_budget.application.services.refresh_scheduler import RefreshScheduler
from fineflow_budget.domain.api_keys import ApiKeyPermissions
from fineflow_budget.domain.services.budget_store import BudgetLedger

# Used when the app runs without API-key auth (local development).
LOCAL_PRINCIPAL = AuthenticatedPrincipal(
    api_key_id="local",
    org_id="local",
    user_id="local",
    key_preview="local",
    permissions=ApiKeyPermissions(
        can_read=True,
        can_write=True,
        can_manage_budget=True,
        is_admin=True,
        rate_limit_per_minute=0,
    ),
)


def get_request_context(request: Request) -> RequestContext:
    """Return the RequestContext injected by the authentication middleware."""

    context = getattr(request.state, "request_context", None)
    if context is not None:
        return context
    if not getattr(request.app.state, "require_api_key", True):
        client_ip = request.client.host if request.client else "unknown"
        return RequestContext(principal=LOCAL_PRINCIPAL, client_ip=client_ip)
    raise HTTPException(status_code=401, detail="Unauthenticated")


def require_permission(name: str) -> Callable[..., RequestContext]:
    """Dependency factory checking a permission flag and the project scope."""

    def _check(project_id: str, ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        perms = ctx.principal.permissions
        if not (perms.is_admin or getattr(perms, name)):
            raise HTTPException(status_code=403, detail=f"API key lacks the {name} permission")
        if not perms.allows_project(project_id):
            raise HTTPException(status_code=403, detail="API key is not scoped to this project")
        return ctx

    return _check


def get_guards(request: Request) -> GuardRegistry:
    return request.app.state.guards


def get_scheduler(request: Request) -> RefreshScheduler:
    return request.app.state.scheduler


def get_settings_service(request: Request) -> BudgetSettingsService:
    return request.app.state.settings_service


def get_report_service(request: Request) -> BudgetReportService:
    return request.app.state.report_service


def get_cost_tracker(request: Request) -> CostTrackerService:
    return request.app.state.cost_tracker


def get_ledger(request: Request) -> BudgetLedger:
    return request.app.state.ledger


def get_alert_inbox(request: Request) -> CollectingAlertSink:
    return request.app.state.alert_inbox
