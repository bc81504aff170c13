from __future__ import annotations

import argparse
import asyncio

from fineflow_budget.core.settings import get_settings
from fineflow_budget.domain.api_keys import ApiKeyPermissions, ApiKeyService
from fineflow_budget.infrastructure.db import build_engine, build_session_factory
from fineflow_budget.infrastructure.models import Base
from fineflow_budget.infrastructure.repositories.api_keys import SqlAlchemyApiKeyRepository


async def _main(args: argparse.Namespace) -> None:
    settings = get_settings()
    engine = build_engine(settings.database_url)
    if settings.database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    permissions = ApiKeyPermissions(
        can_read=True,
        can_write=True,
        can_manage_budget=args.manage_budget or args.admin,
        is_admin=args.admin,
        rate_limit_per_minute=settings.rate_limit_requests_per_minute,
        project_ids=tuple(args.project),
    )

    async with build_session_factory(engine)() as session:
        repo = SqlAlchemyApiKeyRepository(session)
        service = ApiKeyService(repo)
        api_key, plaintext = await service.generate_key(
            org_id="org_dev",
            user_id="user_dev",
            name="dev key",
            permissions=permissions,
        )
        print("PLAINTEXT KEY (save this now):", plaintext)
        print("Preview:", api_key.preview)
        print("Projects:", ", ".join(permissions.project_ids) or "all")

    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a development API key.")
    parser.add_argument("--project", action="append", default=[], help="Scope the key to a project (repeatable)")
    parser.add_argument("--manage-budget", action="store_true", help="Allow changing budget settings")
    parser.add_argument("--admin", action="store_true", help="Admin key (all permissions, all projects)")
    asyncio.run(_main(parser.parse_args()))
