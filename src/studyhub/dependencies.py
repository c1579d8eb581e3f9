"""Shared FastAPI dependencies.

Sign-in happens upstream; the gateway forwards the authenticated user's
id in ``X-User-Id``.
"""

from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException

from studyhub.redis_client import get_redis as _get_redis

MAX_USER_ID_LENGTH = 64


def normalize_user_id(raw: str | None) -> str | None:
    """Strip a user id and reject empty or oversized values."""
    if raw is None:
        return None
    user_id = raw.strip()
    if not user_id or len(user_id) > MAX_USER_ID_LENGTH:
        return None
    return user_id


async def get_current_user_id(x_user_id: str | None = Header(None)) -> str:
    """Resolve the caller's user id or fail with 401."""
    user_id = normalize_user_id(x_user_id)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return user_id


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client as a FastAPI dependency."""
    yield _get_redis()
