"""Study-session persistence.

A tracked lifecycle is stored as one row: the first save inserts it and
every later save rewrites its duration and end timestamp.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from studyhub.db.models import StudySession

logger = logging.getLogger(__name__)

SESSION_TYPE_LESSON = "lesson"
SESSION_TYPE_COURSE = "course_study"


def session_type_for(lesson_id: str | None) -> str:
    return SESSION_TYPE_LESSON if lesson_id else SESSION_TYPE_COURSE


def session_to_row(session: StudySession) -> dict[str, Any]:
    """Row shape published on the change stream."""
    return {
        "id": str(session.id),
        "user_id": session.user_id,
        "course_id": session.course_id,
        "lesson_id": session.lesson_id,
        "duration_minutes": session.duration_minutes,
        "session_type": session.session_type,
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "ended_at": session.ended_at.isoformat() if session.ended_at else None,
    }


async def record_study_session(
    db: AsyncSession,
    user_id: str,
    course_id: str,
    lesson_id: str | None,
    duration_minutes: int,
    started_at: datetime,
    ended_at: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> StudySession:
    """Insert a new study session row."""
    if duration_minutes < 0:
        raise ValueError(f"duration_minutes must be >= 0, got {duration_minutes}")

    session = StudySession(
        id=uuid.uuid4(),
        user_id=user_id,
        course_id=course_id,
        lesson_id=lesson_id,
        duration_minutes=duration_minutes,
        session_type=session_type_for(lesson_id),
        session_metadata=metadata or {},
        started_at=started_at,
        ended_at=ended_at,
    )
    db.add(session)
    await db.flush()
    logger.debug("Recorded study session %s for user %s (%d min)", session.id, user_id, duration_minutes)
    return session


async def update_study_session(
    db: AsyncSession,
    session_id: uuid.UUID,
    duration_minutes: int,
    ended_at: datetime,
    metadata: dict[str, Any] | None = None,
) -> StudySession | None:
    """Rewrite duration and end timestamp of an existing row. Returns None if missing."""
    session = await db.get(StudySession, session_id)
    if session is None:
        return None

    session.duration_minutes = duration_minutes
    session.ended_at = ended_at
    if metadata is not None:
        session.session_metadata = {**(session.session_metadata or {}), **metadata}
    await db.flush()
    return session


async def get_recent_sessions(
    db: AsyncSession,
    user_id: str,
    limit: int = 20,
) -> tuple[list[StudySession], int]:
    """Most recent sessions first, plus the user's all-time total minutes."""
    total_result = await db.execute(
        select(func.coalesce(func.sum(StudySession.duration_minutes), 0)).where(StudySession.user_id == user_id)
    )
    total_minutes = int(total_result.scalar_one())

    result = await db.execute(
        select(StudySession)
        .where(StudySession.user_id == user_id)
        .order_by(StudySession.started_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all()), total_minutes
