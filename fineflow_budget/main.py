from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fineflow_budget.api.middleware.auth import ApiKeyAuthMiddleware
from fineflow_budget.api.routes import budget, health, metrics
from fineflow_budget.application.services.alert_emitter import (
    AlertDedupCache,
    AlertEmitter,
    CollectingAlertSink,
    LoggingAlertSink,
)
from fineflow_budget.application.services.budget_guard import BudgetGuard, GuardRegistry
from fineflow_budget.application.services.budget_report import BudgetReportService
from fineflow_budget.application.services.budget_settings import BudgetSettingsService
from fineflow_budget.application.services.cost_tracker import CostTrackerService
from fineflow_budget.application.services.memory_budget_store import InMemoryBudgetStore
from fineflow_budget.application.services.refresh_scheduler import RefreshScheduler
from fineflow_budget.application.services.snapshot_reader import BudgetSnapshotReader
from fineflow_budget.core.audit import AuditLogger
from fineflow_budget.core.errors import BudgetError
from fineflow_budget.core.logging import configure_logging, get_logger
from fineflow_budget.core.settings import Settings, get_settings
from fineflow_budget.infrastructure.db import build_engine, build_session_factory
from fineflow_budget.infrastructure.hosted_backend import HostedBudgetBackend
from fineflow_budget.infrastructure.models import Base
from fineflow_budget.infrastructure.redis_client import build_redis_client
from fineflow_budget.infrastructure.repositories.budget import SqlAlchemyBudgetStore


logger = get_logger(__name__)


def create_app(
    app_settings: Settings | None = None,
    *,
    store: Any | None = None,
    require_api_key: bool | None = None,
) -> FastAPI:
    """Application factory.

    ``store`` overrides backend selection; it must implement both the budget
    store and the ledger. Otherwise the hosted backend is used when
    ``hosted_backend_url`` is set, then the SQL database, then process memory.
    """

    settings = app_settings or get_settings()
    if require_api_key is None:
        require_api_key = settings.require_api_key

    engine = build_engine(settings.database_url) if settings.database_url != "memory://" else None
    session_factory = build_session_factory(engine) if engine is not None else None
    redis = build_redis_client(settings.redis_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan context."""

        configure_logging(
            json=settings.environment != "dev",
            level=logging.DEBUG if settings.enable_debug else logging.INFO,
        )

        if settings.sentry_dsn:
            sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=0.1)

        http_client: httpx.AsyncClient | None = None
        budget_store = store
        if budget_store is not None:
            backend_name = "custom"
        elif settings.hosted_backend_url is not None:
            http_client = httpx.AsyncClient(
                base_url=str(settings.hosted_backend_url),
                timeout=httpx.Timeout(settings.http_read_timeout_s, connect=settings.http_connect_timeout_s),
            )
            budget_store = HostedBudgetBackend(http_client, settings.hosted_backend_key)
            backend_name = "hosted"
        elif session_factory is not None:
            budget_store = SqlAlchemyBudgetStore(session_factory)
            backend_name = "database"
        else:
            budget_store = InMemoryBudgetStore()
            backend_name = "memory"

        if engine is not None and settings.database_url.startswith("sqlite"):
            # Local development databases are created on the fly; others go through alembic.
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        cost_tracker = CostTrackerService(
            redis, budget_store, budget_store, counter_ttl_s=settings.spend_counter_ttl_s
        )
        reader = BudgetSnapshotReader(
            budget_store,
            default_monthly_budget_usd=settings.default_monthly_budget_usd,
            default_max_cost_per_query_usd=settings.default_max_cost_per_query_usd,
            default_enforcement_mode=settings.default_enforcement_mode,
            timeout_s=settings.budget_check_timeout_s,
            backend_name=backend_name,
        )

        alert_inbox = CollectingAlertSink()
        emitter = AlertEmitter(AlertDedupCache(), sinks=[LoggingAlertSink(), alert_inbox])
        audit = AuditLogger(session_factory) if session_factory is not None else None

        def _make_guard(project_id: str) -> BudgetGuard:
            return BudgetGuard(
                project_id,
                reader,
                emitter=emitter,
                ledger=budget_store,
                audit=audit,
                failure_policy=settings.guard_failure_policy,
                fallback_mode=settings.default_enforcement_mode,
                warning_threshold_percent=settings.warning_threshold_percent,
            )

        guards = GuardRegistry(_make_guard)
        scheduler = RefreshScheduler(interval_s=settings.budget_refresh_interval_s, on_gone=guards.forget)
        await scheduler.start()

        # Store in app state for dependencies
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.redis = redis
        app.state.redis_url = settings.redis_url
        app.state.backend_name = backend_name
        app.state.store = budget_store
        app.state.ledger = budget_store
        app.state.cost_tracker = cost_tracker
        app.state.reader = reader
        app.state.emitter = emitter
        app.state.alert_inbox = alert_inbox
        app.state.audit = audit
        app.state.guards = guards
        app.state.scheduler = scheduler
        app.state.settings_service = BudgetSettingsService(reader, guards=guards, audit=audit)
        app.state.report_service = BudgetReportService(
            reader,
            budget_store,
            warning_threshold_percent=settings.warning_threshold_percent,
        )

        logger.log_with_extra(  # type: ignore[attr-defined]
            logging.INFO,
            "Budget guard service started",
            backend=backend_name,
            require_api_key=require_api_key,
        )

        yield

        # Cleanup
        await scheduler.stop()
        if http_client is not None:
            await http_client.aclose()
        await redis.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.state.require_api_key = require_api_key

    @app.exception_handler(BudgetError)
    async def budget_error_handler(request: Request, exc: BudgetError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
        content: dict[str, Any] = {"detail": exc.message}
        field = getattr(exc, "field", None)
        if field is not None:
            content["field"] = field
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.debug(f"Incoming {request.method} request to {request.url.path}")
        response = await call_next(request)
        logger.debug(f"Response status: {response.status_code}")
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if require_api_key:
        app.add_middleware(ApiKeyAuthMiddleware, redis_client=redis, session_factory=session_factory)

    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.api_version,
            "status": "online",
            "message": "Budget guard service. Access /internal/health for status.",
        }

    app.include_router(health.router, prefix="/internal")
    app.include_router(metrics.router, prefix="/internal")
    app.include_router(budget.router)

    return app


app = create_app()
