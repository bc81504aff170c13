from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Protocol

from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.budget import (
    AlertEvent,
    AlertKind,
    AlertSeverity,
    BudgetStatus,
    BudgetSummary,
    DowngradeDetails,
    format_usd,
)
from fineflow_budget.monitoring.metrics import BUDGET_ALERTS_TOTAL

logger = get_logger(__name__)

_STATUS_SEVERITY = {
    BudgetStatus.UNDER_BUDGET: AlertSeverity.NONE,
    BudgetStatus.ON_TRACK: AlertSeverity.NONE,
    BudgetStatus.AT_RISK: AlertSeverity.WARNING,
    BudgetStatus.OVER_BUDGET: AlertSeverity.CRITICAL,
}


def severity_for_status(status: BudgetStatus) -> AlertSeverity:
    return _STATUS_SEVERITY[status]


class AlertDedupCache:
    """Remembers which (project, status) alerts were already shown.

    Lifetime is owned by the caller: create one per user session (or per
    process for a server) and call ``reset`` to start over.
    """

    def __init__(self) -> None:
        self._seen: set[tuple[str, BudgetStatus]] = set()

    def mark_if_new(self, project_id: str, status: BudgetStatus) -> bool:
        """Record the pair and return True if it had not been seen before."""
        key = (project_id, status)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def __contains__(self, key: tuple[str, BudgetStatus]) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def reset(self, project_id: str | None = None) -> None:
        if project_id is None:
            self._seen.clear()
        else:
            self._seen = {k for k in self._seen if k[0] != project_id}


class AlertSink(Protocol):
    """Receives every alert the emitter produces."""

    def __call__(self, event: AlertEvent) -> None:
        ...


class LoggingAlertSink:
    """Writes alerts to the service log."""

    def __call__(self, event: AlertEvent) -> None:
        level = logging.WARNING if event.severity is AlertSeverity.CRITICAL else logging.INFO
        logger.log_with_extra(  # type: ignore[attr-defined]
            level,
            f"Budget alert for project {event.project_id}: {event.title}",
            project_id=event.project_id,
            kind=event.kind.value,
            severity=event.severity.value,
        )


class CollectingAlertSink:
    """Keeps alerts in memory until drained, e.g. for a notifications endpoint."""

    def __init__(self) -> None:
        self.events: list[AlertEvent] = []

    def __call__(self, event: AlertEvent) -> None:
        self.events.append(event)

    def drain(self, project_id: str | None = None) -> list[AlertEvent]:
        if project_id is None:
            drained, self.events = self.events, []
            return drained
        drained = [e for e in self.events if e.project_id == project_id]
        self.events = [e for e in self.events if e.project_id != project_id]
        return drained


class AlertEmitter:
    """Translates budget status transitions and guard outcomes into alerts.

    Status alerts are emitted at most once per (project, status) pair for the
    lifetime of the injected dedup cache. Downgrade and abort notifications are
    explicit one-shot calls made by whoever actually applied the downgrade or
    skipped the operation.
    """

    def __init__(
        self,
        dedup_cache: AlertDedupCache,
        sinks: Iterable[AlertSink] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._dedup = dedup_cache
        self._sinks = list(sinks)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def add_sink(self, sink: AlertSink) -> None:
        self._sinks.append(sink)

    def on_status_transition(
        self,
        project_id: str,
        previous_status: BudgetStatus | None,
        new_status: BudgetStatus,
        summary: BudgetSummary | None = None,
    ) -> AlertEvent | None:
        severity = severity_for_status(new_status)
        if severity is AlertSeverity.NONE:
            return None
        if not self._dedup.mark_if_new(project_id, new_status):
            return None

        if new_status is BudgetStatus.OVER_BUDGET:
            title = "Budget Exceeded"
        else:
            title = "Budget At Risk"

        event = AlertEvent(
            project_id=project_id,
            kind=AlertKind.STATUS_TRANSITION,
            severity=severity,
            title=title,
            message=self._status_message(new_status, summary),
            created_at=self._clock(),
            status=new_status,
            previous_status=previous_status,
        )
        self._publish(event)
        return event

    def trigger_downgrade_notification(
        self,
        project_id: str,
        details: DowngradeDetails,
    ) -> AlertEvent:
        savings = format_usd(details.original_cost_usd - details.new_cost_usd)
        event = AlertEvent(
            project_id=project_id,
            kind=AlertKind.DOWNGRADE_APPLIED,
            severity=AlertSeverity.WARNING,
            title="Cost Optimization Applied",
            message=(
                f"This operation will save {savings} (~{details.savings_percent:.0f}% savings) "
                f"with approximately {abs(details.quality_impact_percent):.1f}% quality impact."
            ),
            created_at=self._clock(),
            metadata={
                "original_cost_usd": str(details.original_cost_usd),
                "new_cost_usd": str(details.new_cost_usd),
            },
        )
        self._publish(event)
        return event

    def trigger_abort_notification(self, project_id: str, reason: str | None) -> AlertEvent:
        event = AlertEvent(
            project_id=project_id,
            kind=AlertKind.OPERATION_BLOCKED,
            severity=AlertSeverity.CRITICAL,
            title="Operation Blocked",
            message=reason
            or (
                "This operation was blocked because it would exceed your monthly budget. "
                "View the budget dashboard for options."
            ),
            created_at=self._clock(),
        )
        self._publish(event)
        return event

    def _publish(self, event: AlertEvent) -> None:
        BUDGET_ALERTS_TOTAL.labels(kind=event.kind.value, severity=event.severity.value).inc()
        for sink in self._sinks:
            sink(event)

    @staticmethod
    def _status_message(status: BudgetStatus, summary: BudgetSummary | None) -> str:
        if summary is None:
            if status is BudgetStatus.OVER_BUDGET:
                return "Your monthly budget has been exceeded."
            return "You are on pace to exceed your monthly budget this month."

        spent = format_usd(summary.current_spending_usd)
        budget = format_usd(summary.monthly_budget_usd)
        if status is BudgetStatus.OVER_BUDGET:
            return (
                f"Your monthly budget of {budget} has been exceeded. Current spending: {spent}. "
                "Consider increasing your budget or enabling auto-downgrade."
            )
        projected = summary.projected_month_end_usd
        projection = f" Projected month-end spending: {format_usd(projected)}." if projected is not None else ""
        return (
            f"{summary.budget_used_percent:.0f}% of your monthly budget used. "
            f"{format_usd(summary.remaining_budget_usd)} remaining for the rest of the month."
            f"{projection}"
        )
