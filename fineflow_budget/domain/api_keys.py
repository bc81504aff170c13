from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from typing import Protocol

import bcrypt

from fineflow_budget.core.settings import get_settings


settings = get_settings()


def lookup_hash(plaintext_key: str) -> str:
    """Stable SHA-256 of a key, used for lookups and cache keys."""
    return sha256(plaintext_key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ApiKeyPermissions:
    """What a key may do with project budgets.

    Args:
        can_read: Read summaries, settings, reports and decisions.
        can_write: Run guard checks and record operation costs.
        can_manage_budget: Change budget settings.
        is_admin: Bypasses project scoping.
        rate_limit_per_minute: Requests allowed per minute per client.
        project_ids: Projects the key is scoped to; empty means all projects.
    """

    can_read: bool
    can_write: bool
    can_manage_budget: bool
    is_admin: bool
    rate_limit_per_minute: int
    project_ids: tuple[str, ...] = ()

    def allows_project(self, project_id: str) -> bool:
        return self.is_admin or not self.project_ids or project_id in self.project_ids


@dataclass(frozen=True)
class ApiKey:
    """API key entity; the plaintext is never stored.

    Args:
        id: Stable identifier for the key record.
        org_id: Organization that owns the key.
        user_id: User who created the key.
        name: Human-friendly name.
        key_hash: SHA-256 lookup hash.
        bcrypt_hash: Bcrypt hash of the full key.
        preview: First 8 characters of the key for display.
        expires_at: Optional expiration timestamp.
        last_used_at: Optional last-used timestamp.
        is_active: Whether the key is active.
        permissions: Permissions and rate limit of the key.
    """

    id: str
    org_id: str
    user_id: str
    name: str
    key_hash: str
    bcrypt_hash: str
    preview: str
    expires_at: datetime | None
    last_used_at: datetime | None
    is_active: bool
    permissions: ApiKeyPermissions


class ApiKeyRepository(Protocol):
    """Repository interface for API key persistence."""

    async def get_by_hash(self, key_hash: str) -> ApiKey | None:
        """Return the API key matching the given lookup hash."""

    async def save(self, api_key: ApiKey) -> None:
        """Persist a new or updated ApiKey entity."""

    async def touch_last_used(self, api_key_id: str, when: datetime) -> None:
        """Update last_used_at."""


class ApiKeyService:
    """Generates and validates API keys."""

    def __init__(self, repo: ApiKeyRepository) -> None:
        self._repo = repo

    async def generate_key(
        self,
        *,
        org_id: str,
        user_id: str,
        name: str,
        permissions: ApiKeyPermissions | None = None,
        ttl: timedelta | None = None,
    ) -> tuple[ApiKey, str]:
        """Generate a new key and return (entity, plaintext_key).

        The plaintext key is returned once and is not stored.
        """

        plaintext_key = f"{settings.api_key_prefix}{secrets.token_urlsafe(32)}"
        salt = bcrypt.gensalt(rounds=settings.api_key_bcrypt_rounds)
        bcrypt_hash = bcrypt.hashpw(plaintext_key.encode("utf-8"), salt).decode("utf-8")

        now = datetime.now(timezone.utc)
        entity = ApiKey(
            id=sha256(os.urandom(32)).hexdigest(),
            org_id=org_id,
            user_id=user_id,
            name=name,
            key_hash=lookup_hash(plaintext_key),
            bcrypt_hash=bcrypt_hash,
            preview=plaintext_key[:8],
            expires_at=now + ttl if ttl is not None else None,
            last_used_at=None,
            is_active=True,
            permissions=permissions
            or ApiKeyPermissions(
                can_read=True,
                can_write=True,
                can_manage_budget=False,
                is_admin=False,
                rate_limit_per_minute=settings.rate_limit_requests_per_minute,
            ),
        )

        await self._repo.save(entity)
        return entity, plaintext_key

    async def authenticate(self, plaintext_key: str) -> ApiKey | None:
        """Return the active, unexpired key matching ``plaintext_key``, if any."""

        stored = await self._repo.get_by_hash(lookup_hash(plaintext_key))
        if stored is None or not stored.is_active:
            return None

        if stored.expires_at is not None and stored.expires_at < datetime.now(timezone.utc):
            return None

        if not bcrypt.checkpw(plaintext_key.encode("utf-8"), stored.bcrypt_hash.encode("utf-8")):
            return None

        await self._repo.touch_last_used(stored.id, datetime.now(timezone.utc))
        return stored
