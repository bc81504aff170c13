from __future__ import annotations

import logging
import time
from typing import Any, Callable

import msgpack
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from fineflow_budget.application.auth.context import CachedApiKey, RequestContext
from fineflow_budget.core.logging import get_logger
from fineflow_budget.domain.api_keys import ApiKeyService, lookup_hash
from fineflow_budget.infrastructure.repositories.api_keys import (
    SqlAlchemyApiKeyRepository,
    permissions_from_dict,
    permissions_to_dict,
)
from fineflow_budget.monitoring.metrics import RATE_LIMIT_HITS_TOTAL


logger = get_logger(__name__)

PUBLIC_PATHS = frozenset(
    {
        "/",
        "/internal/health",
        "/internal/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    }
)

CACHE_TTL_S = 300
RATE_LIMIT_WINDOW_S = 60


def _error(status_code: int, detail: str, headers: dict[str, str] | None = None) -> Response:
    return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    """Authenticate requests with API keys, with a Redis key cache and per-key rate limits."""

    def __init__(
        self,
        app: Callable,
        redis_client: Any,
        session_factory: async_sessionmaker[AsyncSession] | None,
    ) -> None:
        super().__init__(app)
        self._redis_client = redis_client
        self._session_factory = session_factory

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if request.url.path in PUBLIC_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        api_key = self._extract_api_key(request)
        if api_key is None:
            logger.warning(f"Missing API key for request to {request.url.path}")
            return _error(401, "Missing API key")

        key_hash = lookup_hash(api_key)

        start_ns = time.perf_counter_ns()
        cached = await self._get_cached_key(key_hash)
        cache_duration_ms = (time.perf_counter_ns() - start_ns) / 1_000_000

        if cached is None:
            cached = await self._authenticate_via_db(api_key)
            if cached is None:
                return _error(401, "Invalid API key")

        principal = cached.to_principal()
        client_ip = request.client.host if request.client else "unknown"

        allowed, remaining, reset_ts = await self._check_rate_limit(
            key_hash=key_hash,
            client_ip=client_ip,
            limit_per_minute=principal.permissions.rate_limit_per_minute,
        )
        if not allowed:
            RATE_LIMIT_HITS_TOTAL.inc()
            logger.log_with_extra(  # type: ignore[attr-defined]
                logging.WARNING,
                "Rate limit exceeded",
                api_key_id=principal.api_key_id,
            )
            return _error(429, "Rate limit exceeded", headers={"Retry-After": str(RATE_LIMIT_WINDOW_S)})

        request.state.request_context = RequestContext(principal=principal, client_ip=client_ip)

        response = await call_next(request)
        response.headers["X-Auth-Cache-Latency-ms"] = f"{cache_duration_ms:.2f}"
        response.headers["X-RateLimit-Limit"] = str(principal.permissions.rate_limit_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_ts)
        return response

    @staticmethod
    def _extract_api_key(request: Request) -> str | None:
        header_val = request.headers.get("x-api-key")
        if header_val and header_val.strip():
            return header_val.strip()

        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.lower().startswith("bearer "):
            return auth_header[7:].strip() or None
        return None

    async def _get_cached_key(self, key_hash: str) -> CachedApiKey | None:
        raw = await self._redis_client.get(f"ffb:auth:apikey:{key_hash}")
        if raw is None:
            return None
        data = msgpack.unpackb(raw, raw=False)
        cached = CachedApiKey(
            id=data["id"],
            org_id=data["org_id"],
            user_id=data["user_id"],
            preview=data["preview"],
            key_hash=data["key_hash"],
            is_active=bool(data["is_active"]),
            expires_at_ts=data["expires_at_ts"],
            permissions=permissions_from_dict(data["permissions"]),
        )
        if not cached.is_active:
            return None
        if cached.expires_at_ts is not None and cached.expires_at_ts < time.time():
            # Let the database make the final call.
            return None
        return cached

    async def _authenticate_via_db(self, api_key: str) -> CachedApiKey | None:
        if self._session_factory is None:
            logger.warning("API key presented but no key database is configured")
            return None
        async with self._session_factory() as session:
            entity = await ApiKeyService(SqlAlchemyApiKeyRepository(session)).authenticate(api_key)
        if entity is None:
            return None
        cached = CachedApiKey.from_entity(entity)
        await self._cache_key(cached)
        return cached

    async def _cache_key(self, cached: CachedApiKey) -> None:
        payload = {
            "id": cached.id,
            "org_id": cached.org_id,
            "user_id": cached.user_id,
            "preview": cached.preview,
            "key_hash": cached.key_hash,
            "is_active": cached.is_active,
            "expires_at_ts": cached.expires_at_ts,
            "permissions": permissions_to_dict(cached.permissions),
        }
        ttl_seconds = CACHE_TTL_S
        if cached.expires_at_ts is not None:
            seconds_until_expiry = int(cached.expires_at_ts - time.time())
            if seconds_until_expiry <= 0:
                return
            ttl_seconds = min(ttl_seconds, seconds_until_expiry)
        await self._redis_client.set(
            f"ffb:auth:apikey:{cached.key_hash}",
            msgpack.packb(payload),
            ex=ttl_seconds,
        )

    async def _check_rate_limit(
        self,
        *,
        key_hash: str,
        client_ip: str,
        limit_per_minute: int,
    ) -> tuple[bool, int, int]:
        if limit_per_minute <= 0:
            return True, 0, 0
        now = int(time.time())
        redis_key = f"ffb:ratelimit:{key_hash}:{client_ip}:{now // RATE_LIMIT_WINDOW_S}"
        current = await self._redis_client.incr(redis_key)
        if current == 1:
            await self._redis_client.expire(redis_key, RATE_LIMIT_WINDOW_S)
        reset_ts = (now // RATE_LIMIT_WINDOW_S + 1) * RATE_LIMIT_WINDOW_S
        return current <= limit_per_minute, max(0, limit_per_minute - current), reset_ts
