"""Study session API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studyhub.database import get_session
from studyhub.dependencies import get_current_user_id
from studyhub.tracking.schemas import StudySessionListResponse, StudySessionResponse
from studyhub.tracking.service import get_recent_sessions

router = APIRouter(prefix="/api/v1", tags=["Study sessions"])


@router.get("/study-sessions", response_model=StudySessionListResponse)
async def list_study_sessions(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """List the user's most recent tracked sessions and their all-time total."""
    sessions, total_minutes = await get_recent_sessions(db, user_id, limit)
    return StudySessionListResponse(
        sessions=[
            StudySessionResponse(
                id=str(s.id),
                course_id=s.course_id,
                lesson_id=s.lesson_id,
                duration_minutes=s.duration_minutes,
                session_type=s.session_type,
                started_at=s.started_at,
                ended_at=s.ended_at,
            )
            for s in sessions
        ],
        total_minutes=total_minutes,
    )
