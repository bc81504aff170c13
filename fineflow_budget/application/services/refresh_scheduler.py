from __future__ import annotations

import asyncio
from typing import Callable

from fineflow_budget.application.services.budget_guard import BudgetGuard
from fineflow_budget.core.errors import NotFoundError
from fineflow_budget.core.logging import get_logger
from fineflow_budget.monitoring.metrics import WATCHED_PROJECTS

logger = get_logger(__name__)


class RefreshScheduler:
    """Polls watched guards on a fixed interval, one task per guard.

    Polls are scheduled (non-manual) refreshes, so a manual refresh issued by
    a guarded call site supersedes a poll that is still in flight. A project
    that disappears from the store is unwatched and handed to ``on_gone``.
    """

    def __init__(
        self,
        interval_s: float = 30.0,
        on_gone: Callable[[str], None] | None = None,
    ) -> None:
        self._interval_s = interval_s
        self._on_gone = on_gone
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._guards: dict[str, BudgetGuard] = {}
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    def watched(self) -> list[str]:
        return sorted(self._guards)

    def watch(self, guard: BudgetGuard) -> None:
        if guard.project_id in self._guards:
            return
        self._guards[guard.project_id] = guard
        WATCHED_PROJECTS.set(len(self._guards))
        if self._is_running:
            self._spawn(guard)

    async def unwatch(self, project_id: str) -> None:
        self._guards.pop(project_id, None)
        WATCHED_PROJECTS.set(len(self._guards))
        task = self._tasks.pop(project_id, None)
        if task is not None:
            await self._cancel(task)

    async def start(self) -> None:
        """Start polling every watched guard."""
        if self._is_running:
            return
        self._is_running = True
        for guard in self._guards.values():
            self._spawn(guard)
        logger.info(f"Budget refresh scheduler started ({len(self._guards)} projects).")

    async def stop(self) -> None:
        """Cancel every poll task and wait for them to finish."""
        self._is_running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            await self._cancel(task)
        logger.info("Budget refresh scheduler stopped.")

    def _spawn(self, guard: BudgetGuard) -> None:
        self._tasks[guard.project_id] = asyncio.create_task(
            self._refresh_loop(guard),
            name=f"budget-poll:{guard.project_id}",
        )

    @staticmethod
    async def _cancel(task: asyncio.Task[None]) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _drop_gone(self, guard: BudgetGuard) -> None:
        # Runs inside the guard's own poll task, which simply returns afterwards.
        project_id = guard.project_id
        if self._guards.get(project_id) is guard:
            del self._guards[project_id]
            WATCHED_PROJECTS.set(len(self._guards))
        self._tasks.pop(project_id, None)
        if self._on_gone is not None:
            self._on_gone(project_id)

    async def _refresh_loop(self, guard: BudgetGuard) -> None:
        while self._is_running:
            await asyncio.sleep(self._interval_s)
            try:
                await guard.refresh(manual=False)
            except NotFoundError:
                logger.warning(f"Project {guard.project_id} no longer exists; stopping its budget polling")
                self._drop_gone(guard)
                return
            except Exception:
                logger.exception(f"Error during scheduled budget refresh of project {guard.project_id}")
