"""WebSocket endpoint: live updates, toasts and study tracking for one user."""

import json
import uuid

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from studyhub.config import get_settings
from studyhub.database import get_session_factory
from studyhub.dependencies import normalize_user_id
from studyhub.notifications.service import NotificationStore
from studyhub.redis_client import get_redis
from studyhub.tracking.recorder import DbSessionRecorder
from studyhub.ws.manager import ConnectionManager
from studyhub.ws.session import LiveSession

logger = structlog.get_logger()

router = APIRouter()

CLOSE_MISSING_IDENTITY = 4001


def build_live_session(websocket: WebSocket, conn_id: str, user_id: str) -> LiveSession:
    """Assemble a LiveSession from the application's shared clients."""
    settings = get_settings()
    manager: ConnectionManager = websocket.app.state.ws_manager
    redis = get_redis()
    session_factory = get_session_factory()

    async def send(message: dict) -> bool:
        return await manager.send(conn_id, message)

    return LiveSession(
        user_id=user_id,
        send=send,
        stream=websocket.app.state.change_stream,
        recorder=DbSessionRecorder(session_factory, redis, channel_prefix=settings.change_channel_prefix),
        notifications=NotificationStore(session_factory, redis),
        settings=settings,
    )


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    user_id: str | None = Query(None),
) -> None:
    """Single WebSocket endpoint per browsing session. See studyhub.ws.session for the protocol."""
    uid = normalize_user_id(user_id)
    if uid is None:
        await websocket.close(code=CLOSE_MISSING_IDENTITY, reason="Missing user identity")
        return

    manager: ConnectionManager = websocket.app.state.ws_manager
    conn_id = str(uuid.uuid4())
    if not await manager.connect(websocket, conn_id, uid):
        return

    structlog.contextvars.bind_contextvars(user_id=uid, conn_id=conn_id)
    session = build_live_session(websocket, conn_id, uid)

    try:
        await session.open()
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send(conn_id, {"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(msg, dict):
                await manager.send(conn_id, {"type": "error", "message": "Expected a JSON object"})
                continue
            await session.handle(msg)

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
    finally:
        # Final study save runs before the channel and connection go away
        await session.close()
        await manager.disconnect(conn_id)
        structlog.contextvars.unbind_contextvars("user_id", "conn_id")
