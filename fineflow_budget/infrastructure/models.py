from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _uuid() -> str:
    return str(uuid.uuid4())


class ProjectModel(Base):
    """Project row; only the budget-related columns are owned by this service."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)

    # Nullable so projects created before budgets existed fall back to defaults.
    monthly_budget_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    max_cost_per_query_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 6))
    budget_enforcement_mode: Mapped[str | None] = mapped_column(String(length=32))
    preferred_baseline_strategy: Mapped[str | None] = mapped_column(String(length=32))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class ProjectCostLogModel(Base):
    """One recorded AI operation cost."""

    __tablename__ = "project_cost_logs"

    id: Mapped[str] = mapped_column(String(length=36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(
        String(length=64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    operation_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    operation_id: Mapped[str | None] = mapped_column(String(length=64))
    cost_usd: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False)
    tokens_used: Mapped[int | None] = mapped_column()
    model_name: Mapped[str | None] = mapped_column(String(length=100))
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_project_cost_logs_project_created", "project_id", "created_at"),
    )


class BudgetDecisionModel(Base):
    """Ledger of non-proceed guard decisions."""

    __tablename__ = "budget_decisions"

    id: Mapped[str] = mapped_column(String(length=36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(
        String(length=64),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    operation_type: Mapped[str | None] = mapped_column(String(length=32))
    decision_type: Mapped[str] = mapped_column(String(length=16), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    tier: Mapped[str | None] = mapped_column(String(length=32))
    original_config: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    adjusted_config: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    original_estimated_cost_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 6))
    adjusted_estimated_cost_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 6))
    cost_savings_percent: Mapped[float | None] = mapped_column(Float)
    quality_impact_percent: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_budget_decisions_project_created", "project_id", "created_at"),
        Index("ix_budget_decisions_type", "decision_type"),
    )


class ApiKeyModel(Base):
    """SQLAlchemy model backing the ApiKey domain entity."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(length=64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(length=64), nullable=False)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)

    # SHA-256 of the full key, used for lookups and as the cache key.
    key_hash: Mapped[str] = mapped_column(String(length=64), nullable=False, unique=True)
    bcrypt_hash: Mapped[str] = mapped_column(String(length=255), nullable=False)
    preview: Mapped[str] = mapped_column(String(length=16), nullable=False)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    permissions: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("ix_api_keys_org_id", "org_id"),
    )


class AuditLogModel(Base):
    """Budget configuration changes and blocked operations, hash-chained."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    sequence: Mapped[int] = mapped_column(nullable=False, unique=True)
    actor_id: Mapped[str | None] = mapped_column(String(64))
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    recorded_at: Mapped[str] = mapped_column(String(40), nullable=False)

    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_audit_logs_target", "target_type", "target_id"),
    )
