from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Service settings loaded from environment variables.

    Args:
        environment: Deployment environment, e.g. 'dev', 'staging', 'prod'.
        app_name: Human-readable application name.
        api_version: API version prefix.
        database_url: DSN for the budget database (projects, cost logs, decisions).
        redis_url: Redis DSN for spend counters, key cache and rate limiting.
        sentry_dsn: Optional Sentry DSN for error reporting.
        hosted_backend_url: Base URL of the managed backend. When set, budget
            settings and spend are read from it instead of the local database.
        hosted_backend_key: Service key sent to the managed backend.
        default_monthly_budget_usd: Plan default used when a project has no budget yet.
        default_enforcement_mode: Mode used when a project has none configured.
        warning_threshold_percent: Utilization at which a project is 'on_track'.
        critical_threshold_percent: Utilization at which budget banners turn critical.
        budget_refresh_interval_s: Polling cadence of the guard refresh scheduler.
        budget_check_timeout_s: Upper bound on a single snapshot read.
        spend_counter_ttl_s: Lifetime of the Redis month-to-date counter that
            serves cost-recording responses.
        guard_failure_policy: What the guard does when no snapshot can be read.
        require_api_key: Whether /v1 routes demand an API key. Disable only for
            local development.
    """

    environment: Literal["dev", "staging", "prod"] = Field(default="dev")
    app_name: str = Field(default="FineFlow Budget Guard")
    api_version: str = Field(default="v1")

    database_url: str = Field(default="sqlite+aiosqlite:///./fineflow_budget.db")
    redis_url: str = Field(default="memory://")

    sentry_dsn: str | None = None
    enable_debug: bool = Field(default=False)

    hosted_backend_url: HttpUrl | None = None
    hosted_backend_key: str | None = None

    # Default HTTP timeouts (seconds)
    http_connect_timeout_s: float = Field(default=5.0)
    http_read_timeout_s: float = Field(default=10.0)

    api_key_bcrypt_rounds: int = Field(default=12)
    api_key_prefix: str = Field(default="ffb_")
    rate_limit_requests_per_minute: int = Field(default=600)

    # Budget policy defaults
    default_monthly_budget_usd: Decimal = Field(default=Decimal("50.00"), ge=0)
    default_max_cost_per_query_usd: Decimal | None = Field(default=None, gt=0)
    default_enforcement_mode: Literal["warn", "auto_downgrade", "abort"] = Field(default="warn")
    warning_threshold_percent: float = Field(default=75.0, gt=0)
    critical_threshold_percent: float = Field(default=90.0, gt=0)

    budget_refresh_interval_s: float = Field(default=30.0, gt=0)
    budget_check_timeout_s: float = Field(default=10.0, gt=0)
    spend_counter_ttl_s: int = Field(default=30, gt=0)
    guard_failure_policy: Literal["fail_open", "fail_closed"] = Field(default="fail_open")
    require_api_key: bool = Field(default=True)

    allowed_origins: list[str] = Field(default=["*"])

    class Config:
        env_prefix = "FFB_"
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached instance of Settings."""

    return Settings()  # type: ignore[call-arg]
