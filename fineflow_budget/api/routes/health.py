from typing import Any

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from redis.exceptions import RedisError


router = APIRouter(tags=["health"])


@router.get("/health", summary="Readiness probe")
async def health(request: Request) -> dict[str, Any]:
    """Check health of the budget store and the spend counter cache."""

    state = request.app.state
    health_status: dict[str, Any] = {
        "status": "healthy",
        "budget_backend": state.backend_name,
        "dependencies": {
            "database": "unknown",
            "redis": "unknown",
        },
        "watched_projects": len(state.scheduler.watched()),
    }

    engine = state.engine
    if engine is None:
        health_status["dependencies"]["database"] = "not configured"
    else:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["dependencies"]["database"] = "healthy"
        except SQLAlchemyError as e:
            health_status["dependencies"]["database"] = f"unhealthy: {str(e)}"
            health_status["status"] = "degraded"

    if state.redis_url == "memory://":
        health_status["dependencies"]["redis"] = "healthy (in-memory)"
    else:
        try:
            await state.redis.ping()
            health_status["dependencies"]["redis"] = "healthy"
        except (RedisError, OSError) as e:
            health_status["dependencies"]["redis"] = f"unhealthy: {str(e)}"
            health_status["status"] = "degraded"

    return health_status
