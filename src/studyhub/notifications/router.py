"""Notification API endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studyhub.database import get_session
from studyhub.dependencies import get_current_user_id, get_redis_dep
from studyhub.notifications.schemas import (
    CreateNotificationRequest,
    NotificationItem,
    NotificationListResponse,
    UnreadCountResponse,
)
from studyhub.notifications.service import (
    create_notification,
    get_notifications,
    get_unread_count,
    mark_all_as_read,
    mark_as_read,
    notification_to_row,
)

router = APIRouter(prefix="/api/v1", tags=["Notifications"])


@router.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(
    limit: int = Query(50, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """List the user's notifications, newest first."""
    notifications = await get_notifications(db, user_id, limit)
    unread = await get_unread_count(db, user_id)
    return NotificationListResponse(
        notifications=[NotificationItem.model_validate(notification_to_row(n)) for n in notifications],
        unread_count=unread,
    )


@router.post("/notifications", response_model=NotificationItem, status_code=201)
async def create_user_notification(
    body: CreateNotificationRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Create a notification for the calling user."""
    try:
        notification = await create_notification(
            db,
            user_id,
            body.title,
            body.message,
            type_=body.type,
            action_url=body.action_url,
            expires_at=body.expires_at,
            redis=redis,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return NotificationItem.model_validate(notification_to_row(notification))


@router.post("/notifications/{notification_id}/read", status_code=200)
async def mark_notification_read(
    notification_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Mark a notification as read."""
    notification = await mark_as_read(db, user_id, notification_id, redis=redis)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return {"detail": "Notification marked as read"}


@router.post("/notifications/read-all", status_code=200)
async def mark_all_read(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Mark all notifications as read."""
    count = await mark_all_as_read(db, user_id, redis=redis)
    await db.commit()
    return {"detail": f"Marked {count} notifications as read"}


@router.get("/notifications/unread-count", response_model=UnreadCountResponse)
async def get_unread_notification_count(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """Get unread notification count."""
    count = await get_unread_count(db, user_id)
    return UnreadCountResponse(unread_count=count)
