"""Pydantic schemas for notification endpoints and the in-memory feed."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

NotificationType = Literal["course", "appointment", "achievement", "general"]


class NotificationItem(BaseModel):
    """A notification row as mirrored in a browsing session."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str = ""
    message: str = ""
    type: str = "general"
    is_read: bool = False
    action_url: str | None = None
    created_at: datetime | None = None
    read_at: datetime | None = None
    expires_at: datetime | None = None


class NotificationListResponse(BaseModel):
    notifications: list[NotificationItem]
    unread_count: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class CreateNotificationRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)
    message: str = Field(..., min_length=1, max_length=2000)
    type: NotificationType = "general"
    action_url: str | None = Field(None, max_length=512)
    expires_at: datetime | None = None
