"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from studyhub.config import get_settings
from studyhub.database import get_session, ping_db
from studyhub.redis_client import ping_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is up."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    request: Request,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe: checks DB and Redis, and reports live realtime sessions."""
    checks: dict[str, object] = {}

    try:
        checks["database"] = "ok" if await ping_db(db) else "error: unexpected SELECT 1 result"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    try:
        checks["redis"] = "ok" if await ping_redis() else "error: no PONG"
    except Exception as exc:
        checks["redis"] = f"error: {exc}"

    all_ok = all(v == "ok" for v in checks.values())
    state = request.app.state
    realtime = {
        "websockets": state.ws_manager.get_stats() if hasattr(state, "ws_manager") else {},
        "live_channels": state.change_stream.live_channels if hasattr(state, "change_stream") else 0,
    }
    return {"status": "ready" if all_ok else "degraded", "checks": checks, "realtime": realtime}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
