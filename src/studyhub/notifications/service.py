"""Notification creation, listing and read acknowledgement.

Notifications are:
1. Persisted in the database
2. Announced on the owner's change channel (INSERT on create, UPDATE on read)
3. Mirrored by each live session's NotificationFeed through the router

Types: course, appointment, achievement, general
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studyhub.config import get_settings
from studyhub.db.models import Notification
from studyhub.realtime.events import ChangeEvent, ChangeOperation, Table
from studyhub.realtime.stream import publish_change

logger = logging.getLogger(__name__)

VALID_TYPES = {"course", "appointment", "achievement", "general"}

DEFAULT_LIST_LIMIT = 50


def notification_to_row(notification: Notification) -> dict[str, Any]:
    """Row shape shared by the change stream, the feed and the API."""

    def iso(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    return {
        "id": str(notification.id),
        "user_id": notification.user_id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.type,
        "is_read": bool(notification.is_read),
        "action_url": notification.action_url,
        "created_at": iso(notification.created_at),
        "read_at": iso(notification.read_at),
        "expires_at": iso(notification.expires_at),
    }


def _not_expired(now: datetime) -> Any:
    return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


async def _announce(redis: Any | None, operation: ChangeOperation, notification: Notification) -> None:
    await publish_change(
        redis,
        ChangeEvent(
            table=Table.NOTIFICATIONS.value,
            operation=operation,
            user_id=notification.user_id,
            new=notification_to_row(notification),
        ),
        prefix=get_settings().change_channel_prefix,
    )


async def create_notification(
    db: AsyncSession,
    user_id: str,
    title: str,
    message: str,
    type_: str = "general",
    action_url: str | None = None,
    expires_at: datetime | None = None,
    redis: Any | None = None,
) -> Notification:
    """Create a notification and push it to the owner's live sessions."""
    if type_ not in VALID_TYPES:
        raise ValueError(f"Invalid notification type: {type_}. Must be one of {sorted(VALID_TYPES)}")

    notification = Notification(
        id=uuid.uuid4(),
        user_id=user_id,
        title=title,
        message=message,
        type=type_,
        is_read=False,
        action_url=action_url,
        created_at=datetime.now(timezone.utc),
        expires_at=expires_at,
    )
    db.add(notification)
    await db.flush()

    await _announce(redis, ChangeOperation.INSERT, notification)
    return notification


async def get_notifications(
    db: AsyncSession,
    user_id: str,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[Notification]:
    """Get the user's unexpired notifications, most recent first."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(Notification)
        .where(Notification.user_id == user_id, _not_expired(now))
        .order_by(Notification.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_as_read(
    db: AsyncSession,
    user_id: str,
    notification_id: uuid.UUID,
    redis: Any | None = None,
) -> Notification | None:
    """Mark one notification as read. Returns None if it does not exist.

    Reading is one-way: an already read notification is returned as is,
    keeping its original ``read_at``, and nothing is announced.
    """
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        return None

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        await db.flush()
        await _announce(redis, ChangeOperation.UPDATE, notification)

    return notification


async def mark_all_as_read(db: AsyncSession, user_id: str, redis: Any | None = None) -> int:
    """Mark all unread notifications as read and announce each one. Returns count updated."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(timezone.utc))
        .returning(Notification)
    )
    notifications = list(result.scalars().all())
    await db.flush()
    for notification in notifications:
        await _announce(redis, ChangeOperation.UPDATE, notification)
    return len(notifications)


async def get_unread_count(db: AsyncSession, user_id: str) -> int:
    """Get count of unread, unexpired notifications."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
            _not_expired(now),
        )
    )
    return result.scalar_one()


class NotificationStore:
    """Session-scoped access for code running outside a request (WebSocket sessions)."""

    def __init__(self, session_factory: Any, redis: Any | None = None) -> None:
        self._session_factory = session_factory
        self._redis = redis

    async def recent(self, user_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[dict[str, Any]]:
        async with self._session_factory() as db:
            return [notification_to_row(n) for n in await get_notifications(db, user_id, limit)]

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        """Persist a read. Returns False when the id is malformed or unknown."""
        try:
            nid = uuid.UUID(notification_id)
        except ValueError:
            return False
        async with self._session_factory() as db:
            notification = await mark_as_read(db, user_id, nid, redis=self._redis)
            if notification is None:
                return False
            await db.commit()
        return True

    async def mark_all_read(self, user_id: str) -> int:
        async with self._session_factory() as db:
            count = await mark_all_as_read(db, user_id, redis=self._redis)
            await db.commit()
        return count
