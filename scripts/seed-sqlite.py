import asyncio
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fineflow_budget.domain.services.budget_store import CostEntry
from fineflow_budget.infrastructure.db import build_engine, build_session_factory
from fineflow_budget.infrastructure.models import Base
from fineflow_budget.infrastructure.repositories.budget import SqlAlchemyBudgetStore

DATABASE_PATH = "./fineflow_budget.db"
DATABASE_URL = f"sqlite+aiosqlite:///{DATABASE_PATH}"

# (id, name, settings, month-to-date spend spread over the last few days)
PROJECTS = [
    ("proj_healthy", "Healthy Project", {"monthly_budget_usd": Decimal("100"), "enforcement_mode": "warn"}, Decimal("12.50")),
    ("proj_at_risk", "At-Risk Project", {"monthly_budget_usd": Decimal("100"), "enforcement_mode": "auto_downgrade"}, Decimal("88.00")),
    (
        "proj_exceeded",
        "Exceeded Project",
        {"monthly_budget_usd": Decimal("50"), "enforcement_mode": "abort", "max_cost_per_query_usd": Decimal("0.50")},
        Decimal("61.20"),
    ),
    ("proj_unlimited", "Unlimited Project", {"monthly_budget_usd": Decimal("0")}, Decimal("240.00")),
    ("proj_defaults", "Defaults Project", {}, Decimal("0")),
]

OPERATION_TYPES = ["embedding", "experiment", "evaluation"]


async def seed():
    # Delete existing DB file to ensure fresh start
    if os.path.exists(DATABASE_PATH):
        os.remove(DATABASE_PATH)

    engine = build_engine(DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    store = SqlAlchemyBudgetStore(build_session_factory(engine))
    now = datetime.now(timezone.utc)
    days = max(1, now.day)

    for project_id, name, settings, spend in PROJECTS:
        await store.create_project(project_id, name, **settings)
        if spend <= 0:
            print(f"Added project {project_id} (no spend)")
            continue
        # Split the spend over up to three entries inside the current month.
        parts = min(3, days)
        share = (spend / parts).quantize(Decimal("0.000001"))
        for index in range(parts):
            cost = share if index < parts - 1 else spend - share * (parts - 1)
            await store.record_cost(
                CostEntry(
                    project_id=project_id,
                    operation_type=OPERATION_TYPES[index % len(OPERATION_TYPES)],
                    cost_usd=cost,
                    created_at=now - timedelta(days=index),
                    model_name="text-embedding-3-small",
                    metadata={"seeded": True},
                )
            )
        print(f"Added project {project_id} with ${spend} month-to-date")

    await engine.dispose()
    print("Database seeded successfully.")


if __name__ == "__main__":
    asyncio.run(seed())
