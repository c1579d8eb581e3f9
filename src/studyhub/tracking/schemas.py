"""Result types returned by the study tracker and the study-session API schemas."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class TrackStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"


class SkipReason(str, Enum):
    NO_USER = "no_user"
    NO_COURSE = "no_course"
    ALREADY_TRACKING = "already_tracking"
    NOT_TRACKING = "not_tracking"
    ALREADY_ACTIVE = "already_active"
    PAUSED = "paused"
    IDLE = "idle"
    SAVE_IN_FLIGHT = "save_in_flight"
    BELOW_MINIMUM = "below_minimum"


@dataclass(frozen=True)
class TrackResult:
    """Outcome of a tracker operation. Tracker calls never raise; they report."""

    status: TrackStatus
    reason: SkipReason | None = None
    error: str | None = None
    session_id: str | None = None
    duration_minutes: int | None = None

    @classmethod
    def done(cls, session_id: str | None = None, duration_minutes: int | None = None) -> TrackResult:
        return cls(TrackStatus.OK, session_id=session_id, duration_minutes=duration_minutes)

    @classmethod
    def skip(cls, reason: SkipReason) -> TrackResult:
        return cls(TrackStatus.SKIPPED, reason=reason)

    @classmethod
    def fail(cls, error: str) -> TrackResult:
        return cls(TrackStatus.ERROR, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status == TrackStatus.OK

    def to_message(self) -> dict[str, Any]:
        """WebSocket representation."""
        msg: dict[str, Any] = {"type": "tracking", "status": self.status.value}
        if self.reason is not None:
            msg["reason"] = self.reason.value
        if self.error is not None:
            msg["error"] = self.error
        if self.session_id is not None:
            msg["session_id"] = self.session_id
        if self.duration_minutes is not None:
            msg["duration_minutes"] = self.duration_minutes
        return msg


# --- API ---


class StudySessionResponse(BaseModel):
    id: str
    course_id: str
    lesson_id: str | None = None
    duration_minutes: int
    session_type: str
    started_at: datetime
    ended_at: datetime | None = None


class StudySessionListResponse(BaseModel):
    sessions: list[StudySessionResponse]
    total_minutes: int
