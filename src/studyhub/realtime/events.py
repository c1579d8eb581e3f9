"""Change records and in-process update events.

A change record arrives on the user's change channel as JSON:
{
    "table": "user_achievements",
    "eventType": "INSERT",
    "user_id": "8c1d...",
    "new": { ... row after the change ... },
    "old": { ... row before the change (updates/deletes) ... }
}

The router turns each record it routes into an UpdateEvent whose kind
comes from the closed UpdateKind enum. Listeners receive the detail as
{"type": "<lower-case operation>", "data": {...row...}}.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChangeOperation(str, Enum):
    """Row-level operations carried by the change stream."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class UpdateKind(str, Enum):
    """Every in-process update event a listener can register for."""

    STUDY_SESSION = "studySessionUpdate"
    ENROLLMENT = "enrollmentUpdate"
    ACHIEVEMENT = "achievementUpdate"
    BOOKMARK = "bookmarkUpdate"
    CERTIFICATE = "certificateUpdate"
    NOTIFICATION = "notificationUpdate"


class Table(str, Enum):
    """Tables whose changes are routed for the signed-in user."""

    STUDY_SESSIONS = "study_sessions"
    COURSE_ENROLLMENTS = "course_enrollments"
    USER_ACHIEVEMENTS = "user_achievements"
    COURSE_BOOKMARKS = "course_bookmarks"
    CERTIFICATES = "certificates"
    NOTIFICATIONS = "notifications"


class ChangeEvent(BaseModel):
    """One row-level change pushed by the backend."""

    model_config = ConfigDict(populate_by_name=True)

    table: str
    operation: ChangeOperation = Field(alias="eventType")
    user_id: str = ""
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)

    @property
    def row(self) -> dict[str, Any]:
        """The row a listener cares about: the new state, or the old one for deletes."""
        return self.new or self.old

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UpdateDetail(BaseModel):
    """Payload carried by every update event."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class UpdateEvent(BaseModel):
    """An update event as seen by in-process listeners."""

    kind: UpdateKind
    detail: UpdateDetail


class Toast(BaseModel):
    """A transient user-facing notice."""

    title: str
    description: str | None = None
    duration_ms: int = 5000


def parse_change(raw: dict[str, Any]) -> ChangeEvent:
    """Validate a raw change record.

    The operation is matched case-insensitively so producers may send
    "insert" as well as "INSERT". Anything but a JSON object raises TypeError.
    """
    if not isinstance(raw, dict):
        msg = f"change record must be an object, got {type(raw).__name__}"
        raise TypeError(msg)
    data = dict(raw)
    op = data.get("eventType", data.pop("operation", None))
    if isinstance(op, str):
        data["eventType"] = op.upper()
    return ChangeEvent.model_validate(data)
