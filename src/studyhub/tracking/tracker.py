"""Activity-gated study session tracker.

Measures time spent on one course (or lesson) while the page is visible,
saves progress every ``autosave_interval`` and finalizes the record when
tracking stops. A crash or closed tab loses at most one interval.

Accrual model:
    - ``_window_start`` marks the start of the live measurement window;
      it is None while the page is hidden.
    - ``_pending_seconds`` is time measured but not yet saved.
    - ``_saved_seconds`` is time already written to the session record.

The record always holds floor((saved + pending) / 60) minutes after a
save. Folding the live window into ``_pending_seconds`` happens without
an await between reading the clock and reading the window start, so a
visibility change can interleave with a save without losing or double
counting time. Only the snapshot a successful save wrote moves from
pending to saved; a failed save keeps it pending for the next attempt.

Auto-save is best effort: one attempt per tick, no retry beyond the
next tick.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import structlog

from studyhub.tracking.recorder import SessionRecorder
from studyhub.tracking.schemas import SkipReason, TrackResult

logger = structlog.get_logger()

ACTIVITY_EVENTS = frozenset({"mousedown", "mousemove", "keypress", "scroll", "touchstart"})

DEFAULT_AUTOSAVE_INTERVAL = timedelta(minutes=5)
DEFAULT_LIVENESS_THRESHOLD = timedelta(minutes=2)
DEFAULT_HIDDEN_FINALIZE_AFTER = timedelta(minutes=30)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackerState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"


class StudySessionTracker:
    """Tracks one user's time on one learning resource."""

    def __init__(
        self,
        recorder: SessionRecorder,
        user_id: str | None,
        course_id: str | None,
        lesson_id: str | None = None,
        *,
        autosave_interval: timedelta = DEFAULT_AUTOSAVE_INTERVAL,
        min_session_minutes: int = 1,
        liveness_threshold: timedelta = DEFAULT_LIVENESS_THRESHOLD,
        hidden_finalize_after: timedelta | None = DEFAULT_HIDDEN_FINALIZE_AFTER,
        clock: Clock = utcnow,
    ) -> None:
        self.user_id = user_id
        self.course_id = course_id
        self.lesson_id = lesson_id
        self.autosave_interval = autosave_interval
        self.min_session_minutes = min_session_minutes
        self.liveness_threshold = liveness_threshold
        self.hidden_finalize_after = hidden_finalize_after
        self._recorder = recorder
        self._clock = clock

        self._tracking = False
        self._listening = False
        self._session_id: str | None = None
        self._started_at: datetime | None = None
        self._window_start: datetime | None = None
        self._last_active: datetime = clock()
        self._pending_seconds = 0.0
        self._saved_seconds = 0.0
        self._restart_on_resume = False

        self._save_lock = asyncio.Lock()
        self._autosave_task: asyncio.Task[None] | None = None
        self._hidden_task: asyncio.Task[None] | None = None
        self._stopping: asyncio.Future[TrackResult] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        if not self._tracking:
            return TrackerState.IDLE
        return TrackerState.ACTIVE if self._window_start is not None else TrackerState.PAUSED

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def accumulated_minutes(self) -> int:
        """Whole minutes measured in this lifecycle, saved or not."""
        seconds = self._saved_seconds + self._pending_seconds
        if self._window_start is not None:
            seconds += max((self._clock() - self._window_start).total_seconds(), 0.0)
        return int(seconds // 60)

    def is_active_session(self) -> bool:
        """True while the last user interaction is within the liveness threshold."""
        return (self._clock() - self._last_active) < self.liveness_threshold

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_tracking(self) -> TrackResult:
        """Begin a new lifecycle. Needs a user and a course; otherwise a skip."""
        if not self.user_id:
            return TrackResult.skip(SkipReason.NO_USER)
        if not self.course_id:
            return TrackResult.skip(SkipReason.NO_COURSE)
        if self._tracking:
            return TrackResult.skip(SkipReason.ALREADY_TRACKING)

        now = self._clock()
        self._session_id = None
        self._started_at = now
        self._window_start = now
        self._last_active = now
        self._pending_seconds = 0.0
        self._saved_seconds = 0.0
        self._restart_on_resume = False
        self._tracking = True
        self._listening = True
        self._autosave_task = self._spawn(self._autosave_loop(), "autosave")

        logger.info(
            "study_tracking_started",
            user_id=self.user_id,
            course_id=self.course_id,
            lesson_id=self.lesson_id,
        )
        return TrackResult.done()

    async def stop_tracking(self) -> TrackResult:
        """Detach, cancel timers, save a final time and clear all state.

        Overlapping calls (the hidden timeout racing a disconnect) share the
        first call's final save and result.
        """
        if self._stopping is not None:
            return await asyncio.shield(self._stopping)
        if not self._tracking:
            self._restart_on_resume = False
            return TrackResult.skip(SkipReason.NOT_TRACKING)

        stopping = asyncio.get_running_loop().create_future()
        self._stopping = stopping
        try:
            result = await self._finalize()
        except BaseException:
            stopping.cancel()
            raise
        else:
            stopping.set_result(result)
            return result
        finally:
            self._stopping = None

    async def _finalize(self) -> TrackResult:
        self._listening = False
        await self._cancel(self._autosave_task)
        await self._cancel(self._hidden_task)
        self._autosave_task = None
        self._hidden_task = None

        # Waits for an in-flight auto-save before the final one runs
        result = await self.save_session(is_ending_session=True)

        logger.info(
            "study_tracking_stopped",
            user_id=self.user_id,
            course_id=self.course_id,
            session_id=self._session_id,
            minutes=result.duration_minutes,
            status=result.status.value,
        )

        self._tracking = False
        self._session_id = None
        self._started_at = None
        self._window_start = None
        self._pending_seconds = 0.0
        self._saved_seconds = 0.0
        return result

    def pause_tracking(self) -> TrackResult:
        """Fold the live window into the accumulator and stop accruing."""
        if not self._tracking:
            return TrackResult.skip(SkipReason.NOT_TRACKING)
        if self._window_start is None:
            return TrackResult.skip(SkipReason.PAUSED)

        self._fold_window(self._clock())
        self._window_start = None
        if self.hidden_finalize_after is not None:
            self._hidden_task = self._spawn(self._finalize_when_hidden(), "hidden-finalize")
        logger.debug("study_tracking_paused", course_id=self.course_id, pending_seconds=self._pending_seconds)
        return TrackResult.done()

    def resume_tracking(self) -> TrackResult:
        """Start a new live window, keeping everything accumulated so far."""
        if not self._tracking:
            if self._restart_on_resume:
                # The hidden timeout finalized the previous lifecycle
                return self.start_tracking()
            return TrackResult.skip(SkipReason.NOT_TRACKING)
        if self._window_start is not None:
            return TrackResult.skip(SkipReason.ALREADY_ACTIVE)

        if self._hidden_task is not None:
            self._hidden_task.cancel()
            self._hidden_task = None
        now = self._clock()
        self._window_start = now
        self._last_active = now
        logger.debug("study_tracking_resumed", course_id=self.course_id)
        return TrackResult.done()

    def set_visibility(self, hidden: bool) -> TrackResult:
        return self.pause_tracking() if hidden else self.resume_tracking()

    def record_activity(self, event_type: str = "mousemove") -> bool:
        """Refresh the last-active stamp. Returns False when the event does not count."""
        if not self._listening or event_type not in ACTIVITY_EVENTS:
            return False
        self._last_active = self._clock()
        return True

    async def expire_hidden(self) -> TrackResult:
        """Finalize a lifecycle whose page stayed hidden past the threshold."""
        if not self._tracking or self._window_start is not None:
            return TrackResult.skip(SkipReason.NOT_TRACKING if not self._tracking else SkipReason.ALREADY_ACTIVE)
        logger.info("study_tracking_hidden_timeout", course_id=self.course_id, session_id=self._session_id)
        result = await self.stop_tracking()
        self._restart_on_resume = True
        return result

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    async def tick(self) -> TrackResult:
        """One auto-save step; skipped while paused, idle, or already saving."""
        if not self._tracking:
            return TrackResult.skip(SkipReason.NOT_TRACKING)
        if self._window_start is None:
            return TrackResult.skip(SkipReason.PAUSED)
        if not self.is_active_session():
            logger.debug("study_autosave_skipped_idle", course_id=self.course_id)
            return TrackResult.skip(SkipReason.IDLE)
        if self._save_lock.locked():
            return TrackResult.skip(SkipReason.SAVE_IN_FLIGHT)
        return await self.save_session()

    async def save_session(self, is_ending_session: bool = False) -> TrackResult:
        """Persist the lifecycle's total duration.

        Below ``min_session_minutes`` nothing is written unless the session
        is ending, so short visits still leave a record.
        """
        if not self._tracking or not self.user_id or not self.course_id:
            return TrackResult.skip(SkipReason.NOT_TRACKING)

        async with self._save_lock:
            # A stop that finished while this save waited already finalized the lifecycle
            if not self._tracking:
                return TrackResult.skip(SkipReason.NOT_TRACKING)
            now = self._clock()
            self._fold_window(now)
            snapshot = self._pending_seconds
            total_minutes = int((self._saved_seconds + snapshot) // 60)

            if total_minutes < self.min_session_minutes and not is_ending_session:
                return TrackResult.skip(SkipReason.BELOW_MINIMUM)

            metadata = {
                "auto_tracked": True,
                "last_activity": self._last_active.isoformat(),
                "course_id": self.course_id,
                "lesson_id": self.lesson_id,
            }
            try:
                if self._session_id is None:
                    self._session_id = await self._recorder.create(
                        user_id=self.user_id,
                        course_id=self.course_id,
                        lesson_id=self.lesson_id,
                        duration_minutes=total_minutes,
                        started_at=self._started_at or now,
                        ended_at=now,
                        metadata=metadata,
                    )
                else:
                    await self._recorder.update(
                        self._session_id,
                        duration_minutes=total_minutes,
                        ended_at=now,
                        metadata=metadata,
                    )
            except Exception as exc:
                logger.warning(
                    "study_session_save_failed",
                    user_id=self.user_id,
                    course_id=self.course_id,
                    session_id=self._session_id,
                    pending_seconds=self._pending_seconds,
                    exc_info=True,
                )
                return TrackResult.fail(str(exc) or exc.__class__.__name__)

            # Time folded in by a pause during the await stays pending
            self._saved_seconds += snapshot
            self._pending_seconds -= snapshot
            return TrackResult.done(session_id=self._session_id, duration_minutes=total_minutes)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fold_window(self, now: datetime) -> None:
        if self._window_start is None:
            return
        self._pending_seconds += max((now - self._window_start).total_seconds(), 0.0)
        self._window_start = now

    async def _autosave_loop(self) -> None:
        interval = self.autosave_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            # Shielded so stop_tracking() cancelling the loop never aborts a write
            await asyncio.shield(self.tick())

    async def _finalize_when_hidden(self) -> None:
        delay = self.hidden_finalize_after or timedelta(0)
        await asyncio.sleep(delay.total_seconds())
        self._hidden_task = None
        await self.expire_hidden()

    def _spawn(self, coro: Coroutine[Any, Any, None], label: str) -> asyncio.Task[None]:
        return asyncio.get_running_loop().create_task(coro, name=f"study-{label}:{self.user_id}:{self.course_id}")

    @staticmethod
    async def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
