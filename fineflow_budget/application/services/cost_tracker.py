from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from redis.exceptions import RedisError

from fineflow_budget.application.services.snapshot_reader import month_bounds
from fineflow_budget.core.errors import ValidationError
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.budget import OperationType
from fineflow_budget.domain.services.budget_store import BudgetLedger, BudgetStore, CostEntry
from fineflow_budget.monitoring.metrics import (
    COST_RECORDED_USD_TOTAL,
    SPEND_CACHE_HITS_TOTAL,
    SPEND_CACHE_MISS_TOTAL,
)

logger = get_logger(__name__)

# Other writers append to the ledger directly, so a counter is only trusted briefly.
DEFAULT_COUNTER_TTL_S = 30


def monthly_cost_key(project_id: str, day: date) -> str:
    return f"ffb:spend:project:{project_id}:monthly:{day.year}:{day.month:02d}:cost"


class CostTrackerService:
    """
    Records AI operation costs and keeps month-to-date spend counters.

    The ledger is the source of truth. Redis holds a short-lived per-project
    monthly counter, seeded from the ledger aggregate on read and bumped by
    ``record_cost`` while it exists. Redis failures degrade to ledger reads.
    """

    def __init__(
        self,
        redis: Any,
        store: BudgetStore,
        ledger: BudgetLedger,
        clock: Callable[[], datetime] | None = None,
        counter_ttl_s: int = DEFAULT_COUNTER_TTL_S,
    ) -> None:
        self._redis = redis
        self._store = store
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._counter_ttl_s = counter_ttl_s

    async def record_cost(
        self,
        project_id: str,
        operation_type: OperationType | str,
        cost_usd: Decimal,
        *,
        operation_id: str | None = None,
        tokens_used: int | None = None,
        model_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CostEntry:
        """Persist a cost and bump the project's monthly counter."""

        if cost_usd < 0:
            raise ValidationError("cost_usd must not be negative", project_id=project_id, field="cost_usd")
        operation_type = OperationType(operation_type)

        # Fail fast on unknown projects before anything is written.
        await self._store.get_budget_row(project_id)

        now = self._clock()
        entry = CostEntry(
            project_id=project_id,
            operation_type=operation_type.value,
            cost_usd=cost_usd,
            created_at=now,
            operation_id=operation_id,
            tokens_used=tokens_used,
            model_name=model_name,
            metadata=metadata or {},
        )
        await self._ledger.record_cost(entry)
        COST_RECORDED_USD_TOTAL.labels(operation_type=operation_type.value).inc(float(cost_usd))

        try:
            await self._bump_counter(monthly_cost_key(project_id, now.date()), cost_usd)
        except RedisError:
            logger.warning(f"Spend counter update failed for project {project_id}; dropping it", exc_info=True)
            await self._drop_counter(project_id, now.date())

        logger.log_with_extra(  # type: ignore[attr-defined]
            logging.INFO,
            f"Recorded {operation_type.value} cost for project {project_id}",
            project_id=project_id,
            cost_usd=str(cost_usd),
        )
        return entry

    async def _bump_counter(self, key: str, cost_usd: Decimal) -> None:
        # EXISTS and INCRBYFLOAT run in one MULTI block. A counter this call
        # created holds only this entry, so it is dropped and reseeded on read.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.exists(key)
            pipe.incrbyfloat(key, str(cost_usd))
            pipe.expire(key, self._counter_ttl_s)
            existed, _, _ = await pipe.execute()
        if not existed:
            await self._redis.delete(key)

    async def _drop_counter(self, project_id: str, day: date) -> None:
        try:
            await self._redis.delete(monthly_cost_key(project_id, day))
        except RedisError:
            logger.warning(f"Could not drop spend counter for project {project_id}", exc_info=True)

    async def cached_month_spending(self, project_id: str, today: date) -> Decimal | None:
        """Counter value, or None when it is absent or Redis is unreachable."""

        try:
            raw = await self._redis.get(monthly_cost_key(project_id, today))
        except RedisError:
            logger.warning(f"Spend counter read failed for project {project_id}", exc_info=True)
            SPEND_CACHE_MISS_TOTAL.inc()
            return None
        if raw is None:
            SPEND_CACHE_MISS_TOTAL.inc()
            return None
        SPEND_CACHE_HITS_TOTAL.inc()
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        return Decimal(text)

    async def month_spending(self, project_id: str, today: date | None = None) -> Decimal:
        """Month-to-date spend, from the counter when present, else the ledger aggregate."""

        today = today or self._clock().date()
        cached = await self.cached_month_spending(project_id, today)
        if cached is not None:
            return cached
        month_start, month_end = month_bounds(today)
        total = await self._store.get_month_spending(project_id, month_start, month_end)
        try:
            await self._redis.set(
                monthly_cost_key(project_id, today), str(total), ex=self._counter_ttl_s, nx=True
            )
        except RedisError:
            logger.warning(f"Could not seed spend counter for project {project_id}", exc_info=True)
        return total

    async def invalidate(self, project_id: str, today: date | None = None) -> None:
        today = today or self._clock().date()
        await self._redis.delete(monthly_cost_key(project_id, today))
