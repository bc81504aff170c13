"""
Budget guard façade.

One ``BudgetGuard`` per project holds the latest snapshot, its classification
and the most recent enforcement decision, and is what every AI-triggering call
site consults. Refreshes are single-flight: concurrent callers share one read,
and a manual refresh cancels and supersedes an in-flight scheduled poll.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Protocol, Sequence, TypeVar

from fineflow_budget.application.services.alert_emitter import AlertEmitter
from fineflow_budget.application.services.snapshot_reader import BudgetSnapshotReader
from fineflow_budget.core.errors import TransientError
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.budget import (
    DEFAULT_WARNING_THRESHOLD_PERCENT,
    AlertSeverity,
    BudgetSettings,
    BudgetSnapshot,
    BudgetStatus,
    BudgetSummary,
    DowngradeDetails,
    EnforcementAction,
    EnforcementDecision,
    EnforcementMode,
    OperationConfig,
    OperationType,
)
from fineflow_budget.domain.classifier import classify
from fineflow_budget.domain.costs import estimate_operation_cost
from fineflow_budget.domain.downgrade import DowngradePlanner
from fineflow_budget.domain.enforcement import decide
from fineflow_budget.domain.services.budget_store import BudgetLedger, DecisionRecord
from fineflow_budget.monitoring.metrics import DECISIONS_TOTAL

logger = get_logger(__name__)

T = TypeVar("T")

BLOCKED_FALLBACK_MESSAGE = "This operation is currently blocked by the project's budget settings."


class FailurePolicy(str, Enum):
    """Guard behaviour when no snapshot could ever be read."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class AuditTrail(Protocol):
    async def log(
        self,
        event_type: str,
        actor_id: str | None,
        target_id: str,
        target_type: str = "project",
        payload: dict[str, Any] | None = None,
    ) -> str:
        ...


@dataclass(frozen=True, slots=True)
class GuardOutcome(Generic[T]):
    """Result of ``execute_with_guard``."""

    executed: bool
    decision: EnforcementDecision
    config: OperationConfig | None = None
    result: T | None = None


class BudgetGuard:
    """Per-project guard state shared by every call site of that project."""

    def __init__(
        self,
        project_id: str,
        reader: BudgetSnapshotReader,
        *,
        emitter: AlertEmitter | None = None,
        ledger: BudgetLedger | None = None,
        audit: AuditTrail | None = None,
        failure_policy: FailurePolicy | str = FailurePolicy.FAIL_OPEN,
        fallback_mode: EnforcementMode | str = EnforcementMode.WARN,
        warning_threshold_percent: float = DEFAULT_WARNING_THRESHOLD_PERCENT,
        planner: DowngradePlanner | None = None,
    ) -> None:
        self.project_id = project_id
        self._reader = reader
        self._emitter = emitter
        self._ledger = ledger
        self._audit = audit
        self._failure_policy = FailurePolicy(failure_policy)
        self._fallback_mode = EnforcementMode(fallback_mode)
        self._threshold = warning_threshold_percent
        self._planner = planner

        self._snapshot: BudgetSnapshot | None = None
        self._summary: BudgetSummary | None = None
        self._decision: EnforcementDecision | None = None
        self._last_error: TransientError | None = None
        self._last_refreshed_at: datetime | None = None

        self._inflight: asyncio.Task[BudgetSummary | None] | None = None
        self._inflight_manual = False
        # Most recently started read; kept after it finishes so superseded joiners can find it.
        self._latest: asyncio.Task[BudgetSummary | None] | None = None

    # Read accessors

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._failure_policy

    @property
    def snapshot(self) -> BudgetSnapshot | None:
        return self._snapshot

    @property
    def settings(self) -> BudgetSettings | None:
        return self._snapshot.settings if self._snapshot is not None else None

    @property
    def summary(self) -> BudgetSummary | None:
        return self._summary

    @property
    def status(self) -> BudgetStatus | None:
        return self._summary.status if self._summary is not None else None

    @property
    def last_decision(self) -> EnforcementDecision | None:
        return self._decision

    @property
    def last_error(self) -> TransientError | None:
        return self._last_error

    @property
    def last_refreshed_at(self) -> datetime | None:
        return self._last_refreshed_at

    @property
    def enforcement_mode(self) -> EnforcementMode:
        settings = self.settings
        return settings.enforcement_mode if settings is not None else self._fallback_mode

    @property
    def is_over_budget(self) -> bool:
        return self._summary is not None and self._summary.is_over_budget

    @property
    def is_at_risk(self) -> bool:
        return self._summary is not None and self._summary.is_at_risk

    def is_operation_blocked(self) -> bool:
        return self._decision is not None and self._decision.is_blocked

    def get_blocked_message(self) -> str:
        if self._decision is None:
            return BLOCKED_FALLBACK_MESSAGE
        return self._decision.reason

    # Refresh

    async def refresh(self, *, manual: bool = True) -> BudgetSummary | None:
        """Re-read the snapshot and recompute the baseline decision.

        Returns the new summary, or the previous one when the read failed with
        a transient error (the error is kept in ``last_error``). NotFoundError
        propagates.
        """

        task = self._inflight
        if task is None or task.done():
            task = self._start_refresh(manual)
        elif manual and not self._inflight_manual:
            task.cancel()
            task = self._start_refresh(manual)

        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                # The shared read was superseded by a manual refresh; join that one.
                if self._latest is task:
                    task = self._start_refresh(manual)
                else:
                    task = self._latest

    def _start_refresh(self, manual: bool) -> asyncio.Task[BudgetSummary | None]:
        task = asyncio.create_task(
            self._do_refresh(),
            name=f"budget-refresh:{self.project_id}",
        )
        self._inflight = task
        self._latest = task
        self._inflight_manual = manual

        def _clear(done: asyncio.Task[BudgetSummary | None]) -> None:
            if self._inflight is done:
                self._inflight = None

        task.add_done_callback(_clear)
        return task

    async def _do_refresh(self) -> BudgetSummary | None:
        try:
            snapshot = await self._reader.read_snapshot(self.project_id)
        except TransientError as exc:
            self._last_error = exc
            logger.warning(f"Budget snapshot read failed for project {self.project_id}", exc_info=True)
            if self._snapshot is None:
                self._decision = self._failure_decision(exc)
            return self._summary

        previous = self.status
        summary = classify(snapshot, self._reader.today(), warning_threshold_percent=self._threshold)
        self._snapshot = snapshot
        self._summary = summary
        self._last_error = None
        self._last_refreshed_at = datetime.now(timezone.utc)
        self._decision = decide(
            summary,
            snapshot.settings.enforcement_mode,
            max_cost_per_query_usd=snapshot.settings.max_cost_per_query_usd,
            planner=self._planner,
        )

        if self._emitter is not None and summary.status is not previous:
            self._emitter.on_status_transition(self.project_id, previous, summary.status, summary)
        return summary

    def _failure_decision(self, exc: TransientError) -> EnforcementDecision:
        if self._failure_policy is FailurePolicy.FAIL_CLOSED:
            return EnforcementDecision(
                allowed=False,
                action=EnforcementAction.BLOCK,
                reason=f"Budget data is unavailable ({exc.message}); operation blocked (policy: fail_closed).",
                status=None,
                mode=self._fallback_mode,
                severity=AlertSeverity.CRITICAL,
            )
        return EnforcementDecision(
            allowed=True,
            action=EnforcementAction.PROCEED,
            reason=f"Budget data is unavailable ({exc.message}); proceeding (policy: fail_open).",
            status=None,
            mode=self._fallback_mode,
            severity=AlertSeverity.WARNING,
        )

    # Decisions

    async def check(
        self,
        estimated_cost_usd: Decimal | None = None,
        *,
        operation: OperationConfig | None = None,
        operation_type: OperationType | str | None = None,
        sample_texts: Sequence[str] | None = None,
        record: bool = False,
    ) -> EnforcementDecision:
        """Decide whether an operation may run against the latest snapshot.

        When no estimate is given but ``operation_type`` is, the cost is
        estimated from ``operation``. With ``record`` set, non-proceed
        decisions are appended to the decision ledger.
        """

        if self._snapshot is None:
            await self.refresh(manual=True)

        op_type = OperationType(operation_type) if operation_type is not None else None
        if estimated_cost_usd is None and op_type is not None:
            estimated_cost_usd = estimate_operation_cost(op_type, operation, sample_texts)

        if self._summary is None or self._snapshot is None:
            error = self._last_error or TransientError(
                "no snapshot has been read", project_id=self.project_id
            )
            decision = self._failure_decision(error)
        else:
            settings = self._snapshot.settings
            decision = decide(
                self._summary,
                settings.enforcement_mode,
                estimated_cost_usd,
                max_cost_per_query_usd=settings.max_cost_per_query_usd,
                operation=operation,
                planner=self._planner,
            )
        self._decision = decision

        DECISIONS_TOTAL.labels(
            action=decision.action.value,
            mode=decision.mode.value,
            status=decision.status.value if decision.status is not None else "unknown",
        ).inc()
        level = logging.INFO if decision.decision_type == "proceed" else logging.WARNING
        logger.log_with_extra(  # type: ignore[attr-defined]
            level,
            f"Budget decision for project {self.project_id}: {decision.action.value}",
            project_id=self.project_id,
            reason=decision.reason,
            estimated_cost_usd=str(estimated_cost_usd) if estimated_cost_usd is not None else None,
        )

        if record and decision.decision_type != "proceed":
            await self._record_decision(decision, op_type)
        return decision

    async def execute_with_guard(
        self,
        on_execute: Callable[[OperationConfig], Awaitable[T]],
        *,
        estimated_cost_usd: Decimal | None = None,
        operation: OperationConfig | None = None,
        operation_type: OperationType | str | None = None,
        actor_id: str | None = None,
    ) -> GuardOutcome[T]:
        """Refresh, decide, then run ``on_execute`` unless the decision blocks.

        A downgrade decision runs ``on_execute`` with the adjusted configuration
        and emits a downgrade notification; a block emits an abort notification
        and skips the operation.
        """

        await self.refresh(manual=True)
        operation = operation or OperationConfig()
        decision = await self.check(
            estimated_cost_usd,
            operation=operation,
            operation_type=operation_type,
            record=True,
        )

        if decision.is_blocked:
            if self._emitter is not None:
                self._emitter.trigger_abort_notification(self.project_id, decision.reason)
            if self._audit is not None:
                await self._audit.log(
                    "budget.operation_blocked",
                    actor_id,
                    self.project_id,
                    payload={
                        "reason": decision.reason,
                        "operation_type": str(operation_type) if operation_type else None,
                        "estimated_cost_usd": str(decision.estimated_cost_usd),
                    },
                )
            return GuardOutcome(executed=False, decision=decision)

        config = operation
        if decision.suggested_downgrade is not None:
            config = decision.suggested_downgrade.adjusted_config
            if self._emitter is not None:
                self._emitter.trigger_downgrade_notification(
                    self.project_id,
                    DowngradeDetails.from_suggestion(decision.suggested_downgrade),
                )

        result = await on_execute(config)
        return GuardOutcome(executed=True, decision=decision, config=config, result=result)

    async def _record_decision(self, decision: EnforcementDecision, operation_type: OperationType | None) -> None:
        if self._ledger is None:
            return
        suggestion = decision.suggested_downgrade
        await self._ledger.record_decision(
            DecisionRecord(
                project_id=self.project_id,
                decision_type=decision.decision_type,
                reason=decision.reason,
                created_at=datetime.now(timezone.utc),
                operation_type=operation_type.value if operation_type is not None else None,
                tier=suggestion.tier if suggestion else None,
                original_config=suggestion.original_config.as_dict() if suggestion else None,
                adjusted_config=suggestion.adjusted_config.as_dict() if suggestion else None,
                original_estimated_cost_usd=decision.estimated_cost_usd,
                adjusted_estimated_cost_usd=suggestion.estimated_new_cost_usd if suggestion else None,
                cost_savings_percent=suggestion.cost_savings_percent if suggestion else None,
                quality_impact_percent=suggestion.quality_impact_percent if suggestion else None,
            )
        )


class GuardRegistry:
    """Creates and caches one BudgetGuard per project."""

    def __init__(self, factory: Callable[[str], BudgetGuard]) -> None:
        self._factory = factory
        self._guards: dict[str, BudgetGuard] = {}

    def get(self, project_id: str) -> BudgetGuard:
        guard = self._guards.get(project_id)
        if guard is None:
            guard = self._factory(project_id)
            self._guards[project_id] = guard
        return guard

    def peek(self, project_id: str) -> BudgetGuard | None:
        return self._guards.get(project_id)

    def forget(self, project_id: str) -> None:
        self._guards.pop(project_id, None)

    def __iter__(self):
        return iter(list(self._guards.values()))

    def __len__(self) -> int:
        return len(self._guards)
