"""Tests for the alert emitter and its dedup cache."""

from decimal import Decimal
from unittest.mock import MagicMock

from fineflow_budget.application.services.alert_emitter import (
    AlertDedupCache,
    AlertEmitter,
    CollectingAlertSink,
    severity_for_status,
)
from fineflow_budget.domain.budget import AlertKind, AlertSeverity, BudgetStatus, DowngradeDetails


def _emitter(fixed_clock, *sinks):
    return AlertEmitter(AlertDedupCache(), sinks=sinks, clock=fixed_clock)


class TestStatusTransitions:
    def test_same_status_twice_alerts_once(self, fixed_clock):
        inbox = CollectingAlertSink()
        emitter = _emitter(fixed_clock, inbox)

        first = emitter.on_status_transition("proj_1", BudgetStatus.ON_TRACK, BudgetStatus.AT_RISK)
        second = emitter.on_status_transition("proj_1", BudgetStatus.ON_TRACK, BudgetStatus.AT_RISK)

        assert first is not None
        assert second is None
        assert len(inbox.events) == 1

    def test_dedup_is_per_project(self, fixed_clock):
        emitter = _emitter(fixed_clock)

        assert emitter.on_status_transition("proj_1", None, BudgetStatus.AT_RISK) is not None
        assert emitter.on_status_transition("proj_2", None, BudgetStatus.AT_RISK) is not None

    def test_healthy_statuses_do_not_alert(self, fixed_clock):
        emitter = _emitter(fixed_clock)

        assert emitter.on_status_transition("proj_1", BudgetStatus.AT_RISK, BudgetStatus.UNDER_BUDGET) is None
        assert emitter.on_status_transition("proj_1", None, BudgetStatus.ON_TRACK) is None

    def test_over_budget_is_critical(self, fixed_clock, make_summary):
        event = _emitter(fixed_clock).on_status_transition(
            "proj_1", BudgetStatus.AT_RISK, BudgetStatus.OVER_BUDGET, make_summary("600", "500")
        )

        assert event.kind is AlertKind.STATUS_TRANSITION
        assert event.severity is AlertSeverity.CRITICAL
        assert event.title == "Budget Exceeded"
        assert "$500.00" in event.message
        assert "$600.00" in event.message
        assert event.previous_status is BudgetStatus.AT_RISK

    def test_at_risk_message_includes_projection(self, fixed_clock, make_summary):
        event = _emitter(fixed_clock).on_status_transition(
            "proj_1", None, BudgetStatus.AT_RISK, make_summary("450", "500")
        )

        assert event.title == "Budget At Risk"
        assert "90% of your monthly budget used" in event.message
        assert "$675.00" in event.message

    def test_reset_allows_alerting_again(self, fixed_clock):
        cache = AlertDedupCache()
        emitter = AlertEmitter(cache, clock=fixed_clock)
        emitter.on_status_transition("proj_1", None, BudgetStatus.AT_RISK)
        emitter.on_status_transition("proj_2", None, BudgetStatus.AT_RISK)

        cache.reset("proj_1")

        assert ("proj_1", BudgetStatus.AT_RISK) not in cache
        assert ("proj_2", BudgetStatus.AT_RISK) in cache
        assert emitter.on_status_transition("proj_1", None, BudgetStatus.AT_RISK) is not None


class TestExplicitNotifications:
    def test_downgrade_notification(self, fixed_clock):
        sink = MagicMock()
        emitter = _emitter(fixed_clock, sink)
        details = DowngradeDetails(
            original_cost_usd=Decimal("2.00"),
            new_cost_usd=Decimal("0.50"),
            savings_percent=75.0,
            quality_impact_percent=-25.0,
        )

        event = emitter.trigger_downgrade_notification("proj_1", details)

        sink.assert_called_once_with(event)
        assert event.kind is AlertKind.DOWNGRADE_APPLIED
        assert event.title == "Cost Optimization Applied"
        assert "save $1.50 (~75% savings)" in event.message
        assert "25.0% quality impact" in event.message

    def test_downgrade_notifications_are_not_deduplicated(self, fixed_clock):
        inbox = CollectingAlertSink()
        emitter = _emitter(fixed_clock, inbox)
        details = DowngradeDetails(Decimal("1"), Decimal("0.5"), 50.0, -10.0)

        emitter.trigger_downgrade_notification("proj_1", details)
        emitter.trigger_downgrade_notification("proj_1", details)

        assert len(inbox.events) == 2

    def test_abort_notification_uses_reason(self, fixed_clock):
        event = _emitter(fixed_clock).trigger_abort_notification("proj_1", "Monthly budget exceeded")

        assert event.severity is AlertSeverity.CRITICAL
        assert event.title == "Operation Blocked"
        assert event.message == "Monthly budget exceeded"

    def test_abort_notification_fallback_message(self, fixed_clock):
        event = _emitter(fixed_clock).trigger_abort_notification("proj_1", None)
        assert "would exceed your monthly budget" in event.message


def test_collecting_sink_drains_per_project(fixed_clock):
    inbox = CollectingAlertSink()
    emitter = _emitter(fixed_clock, inbox)
    emitter.trigger_abort_notification("proj_1", "a")
    emitter.trigger_abort_notification("proj_2", "b")

    drained = inbox.drain("proj_1")

    assert [e.project_id for e in drained] == ["proj_1"]
    assert [e.project_id for e in inbox.events] == ["proj_2"]
    assert inbox.drain("proj_1") == []


def test_severity_for_status():
    assert severity_for_status(BudgetStatus.UNDER_BUDGET) is AlertSeverity.NONE
    assert severity_for_status(BudgetStatus.AT_RISK) is AlertSeverity.WARNING
    assert severity_for_status(BudgetStatus.OVER_BUDGET) is AlertSeverity.CRITICAL
