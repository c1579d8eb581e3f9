"""Persistence seam between the study tracker and the database."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studyhub.realtime.events import ChangeEvent, ChangeOperation, Table
from studyhub.realtime.stream import DEFAULT_CHANNEL_PREFIX, publish_change
from studyhub.tracking.service import record_study_session, session_to_row, update_study_session


class SessionRecorder(Protocol):
    """Creates a study-session record once, then revises it by id."""

    async def create(
        self,
        *,
        user_id: str,
        course_id: str,
        lesson_id: str | None,
        duration_minutes: int,
        started_at: datetime,
        ended_at: datetime | None,
        metadata: dict[str, Any],
    ) -> str: ...

    async def update(
        self,
        session_id: str,
        *,
        duration_minutes: int,
        ended_at: datetime,
        metadata: dict[str, Any],
    ) -> None: ...


class DbSessionRecorder:
    """Stores sessions with SQLAlchemy and announces them on the change stream."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Any | None = None,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis
        self._prefix = channel_prefix

    async def create(
        self,
        *,
        user_id: str,
        course_id: str,
        lesson_id: str | None,
        duration_minutes: int,
        started_at: datetime,
        ended_at: datetime | None,
        metadata: dict[str, Any],
    ) -> str:
        async with self._session_factory() as db:
            session = await record_study_session(
                db,
                user_id=user_id,
                course_id=course_id,
                lesson_id=lesson_id,
                duration_minutes=duration_minutes,
                started_at=started_at,
                ended_at=ended_at,
                metadata=metadata,
            )
            await db.commit()
            row = session_to_row(session)

        await publish_change(
            self._redis,
            ChangeEvent(table=Table.STUDY_SESSIONS.value, operation=ChangeOperation.INSERT, user_id=user_id, new=row),
            prefix=self._prefix,
        )
        return row["id"]

    async def update(
        self,
        session_id: str,
        *,
        duration_minutes: int,
        ended_at: datetime,
        metadata: dict[str, Any],
    ) -> None:
        async with self._session_factory() as db:
            session = await update_study_session(
                db,
                uuid.UUID(session_id),
                duration_minutes=duration_minutes,
                ended_at=ended_at,
                metadata=metadata,
            )
            if session is None:
                msg = f"Study session {session_id} not found"
                raise LookupError(msg)
            await db.commit()
            row = session_to_row(session)

        await publish_change(
            self._redis,
            ChangeEvent(
                table=Table.STUDY_SESSIONS.value,
                operation=ChangeOperation.UPDATE,
                user_id=row["user_id"],
                new=row,
            ),
            prefix=self._prefix,
        )
