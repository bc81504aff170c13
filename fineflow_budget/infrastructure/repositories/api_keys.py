from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fineflow_budget.domain.api_keys import ApiKey, ApiKeyPermissions, ApiKeyRepository
from fineflow_budget.infrastructure.models import ApiKeyModel


def permissions_to_dict(perms: ApiKeyPermissions) -> dict[str, Any]:
    return {
        "can_read": perms.can_read,
        "can_write": perms.can_write,
        "can_manage_budget": perms.can_manage_budget,
        "is_admin": perms.is_admin,
        "rate_limit_per_minute": perms.rate_limit_per_minute,
        "project_ids": list(perms.project_ids),
    }


def permissions_from_dict(data: dict[str, Any]) -> ApiKeyPermissions:
    return ApiKeyPermissions(
        can_read=bool(data.get("can_read", True)),
        can_write=bool(data.get("can_write", False)),
        can_manage_budget=bool(data.get("can_manage_budget", False)),
        is_admin=bool(data.get("is_admin", False)),
        rate_limit_per_minute=int(data.get("rate_limit_per_minute", 0)),
        project_ids=tuple(data.get("project_ids") or ()),
    )


class SqlAlchemyApiKeyRepository(ApiKeyRepository):
    """SQLAlchemy implementation of the ApiKeyRepository protocol."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_hash(self, key_hash: str) -> ApiKey | None:
        stmt = select(ApiKeyModel).where(ApiKeyModel.key_hash == key_hash)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return self._to_domain(row) if row is not None else None

    async def save(self, api_key: ApiKey) -> None:
        model = await self._session.get(ApiKeyModel, api_key.id)
        if model is None:
            model = ApiKeyModel(id=api_key.id)
            self._session.add(model)
        model.org_id = api_key.org_id
        model.user_id = api_key.user_id
        model.name = api_key.name
        model.key_hash = api_key.key_hash
        model.bcrypt_hash = api_key.bcrypt_hash
        model.preview = api_key.preview
        model.expires_at = api_key.expires_at
        model.last_used_at = api_key.last_used_at
        model.is_active = api_key.is_active
        model.permissions = permissions_to_dict(api_key.permissions)
        await self._session.commit()

    async def touch_last_used(self, api_key_id: str, when: datetime) -> None:
        await self._session.execute(
            update(ApiKeyModel).where(ApiKeyModel.id == api_key_id).values(last_used_at=when),
        )
        await self._session.commit()

    @staticmethod
    def _aware(value: datetime | None) -> datetime | None:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=timezone.utc)

    def _to_domain(self, model: ApiKeyModel) -> ApiKey:
        return ApiKey(
            id=model.id,
            org_id=model.org_id,
            user_id=model.user_id,
            name=model.name,
            key_hash=model.key_hash,
            bcrypt_hash=model.bcrypt_hash,
            preview=model.preview,
            expires_at=self._aware(model.expires_at),
            last_used_at=self._aware(model.last_used_at),
            is_active=model.is_active,
            permissions=permissions_from_dict(model.permissions or {}),
        )
