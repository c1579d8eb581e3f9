"""One live browsing session behind a WebSocket connection.

Wires together, for a single connection:
    change channel --> ChangeEventRouter --> EventBus --+--> client ("update")
                                     \\                 +--> NotificationFeed
                                      +--> client ("toast")
    client actions --> StudySessionTracker --> SessionRecorder

Protocol:
    Client -> Server:
        {"action": "track_start", "course_id": "c1", "lesson_id": "l3"}
        {"action": "track_stop"}
        {"action": "activity", "event": "mousemove"}
        {"action": "visibility", "hidden": true}
        {"action": "mark_read", "id": "<notification id>"}
        {"action": "mark_all_read"}
        {"action": "ping"}

    Server -> Client:
        {"type": "update", "event": "achievementUpdate", "detail": {"type": "insert", "data": {...}}}
        {"type": "toast", "title": "...", "description": "...", "duration_ms": 6000}
        {"type": "tracking", "status": "ok" | "skipped" | "error", ...}
        {"type": "unread_count", "count": 3}
        {"type": "pong"}
        {"type": "error", "message": "..."}
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, Protocol

import structlog

from studyhub.config import Settings
from studyhub.notifications.feed import NotificationFeed
from studyhub.realtime.bus import EventBus
from studyhub.realtime.events import Toast, UpdateEvent, UpdateKind
from studyhub.realtime.router import ChangeEventRouter
from studyhub.realtime.stream import ChangeStream
from studyhub.tracking.recorder import SessionRecorder
from studyhub.tracking.schemas import SkipReason, TrackResult
from studyhub.tracking.tracker import StudySessionTracker

logger = structlog.get_logger()

Send = Callable[[dict[str, Any]], Awaitable[bool]]


class NotificationSource(Protocol):
    async def recent(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]: ...

    async def mark_read(self, user_id: str, notification_id: str) -> bool: ...

    async def mark_all_read(self, user_id: str) -> int: ...


class LiveSession:
    """Realtime state and study tracking for one connection."""

    def __init__(
        self,
        user_id: str,
        send: Send,
        stream: ChangeStream,
        recorder: SessionRecorder,
        notifications: NotificationSource | None,
        settings: Settings,
    ) -> None:
        self.user_id = user_id
        self._send = send
        self._recorder = recorder
        self._notifications = notifications
        self._settings = settings

        self.bus = EventBus()
        self.router = ChangeEventRouter(stream, self.bus, toasts=self._send_toast)
        self.feed = NotificationFeed(limit=settings.notifications_feed_limit)
        self.tracker: StudySessionTracker | None = None

        for kind in UpdateKind:
            self.bus.add_listener(kind, self._forward_update)
        self.bus.add_listener(UpdateKind.NOTIFICATION, self._on_notification)

    async def open(self) -> None:
        """Load the notification feed and open the change channel."""
        if self._notifications is not None:
            try:
                rows = await self._notifications.recent(self.user_id, self._settings.notifications_feed_limit)
                self.feed.load(rows)
            except Exception:
                logger.warning("notification_feed_load_failed", user_id=self.user_id, exc_info=True)

        await self.router.setup(self.user_id)
        await self._send_unread_count()

    async def close(self) -> None:
        """Finalize tracking, then release the change channel."""
        if self.tracker is not None:
            await self.tracker.stop_tracking()
            self.tracker = None
        await self.router.teardown()
        self.bus.clear()

    async def handle(self, msg: dict[str, Any]) -> None:
        action = msg.get("action")

        if action == "activity":
            if self.tracker is not None:
                self.tracker.record_activity(str(msg.get("event", "")))

        elif action == "visibility":
            if self.tracker is None:
                await self._send(TrackResult.skip(SkipReason.NOT_TRACKING).to_message())
                return
            await self._send(self.tracker.set_visibility(bool(msg.get("hidden"))).to_message())

        elif action == "track_start":
            await self._send((await self.start_tracking(msg.get("course_id"), msg.get("lesson_id"))).to_message())

        elif action == "track_stop":
            await self._send((await self.stop_tracking()).to_message())

        elif action == "mark_read":
            await self._mark_read(str(msg.get("id", "")))

        elif action == "mark_all_read":
            await self._mark_all_read()

        elif action == "ping":
            await self._send({"type": "pong"})

        else:
            await self._send({"type": "error", "message": f"Unknown action: {action}"})

    async def start_tracking(self, course_id: str | None, lesson_id: str | None = None) -> TrackResult:
        """Start a tracker for a resource, finalizing any tracker for another one first.

        A request without a course is refused before the running tracker is touched.
        """
        if not course_id:
            return TrackResult.skip(SkipReason.NO_COURSE)
        if self.tracker is not None and self.tracker.is_tracking:
            if self.tracker.course_id == course_id and self.tracker.lesson_id == lesson_id:
                return TrackResult.skip(SkipReason.ALREADY_TRACKING)
            await self.tracker.stop_tracking()

        s = self._settings
        self.tracker = StudySessionTracker(
            self._recorder,
            self.user_id,
            course_id,
            lesson_id,
            autosave_interval=timedelta(minutes=s.tracking_autosave_interval_minutes),
            min_session_minutes=s.tracking_min_session_minutes,
            liveness_threshold=timedelta(minutes=s.tracking_liveness_threshold_minutes),
            hidden_finalize_after=timedelta(minutes=s.tracking_hidden_finalize_minutes),
        )
        return self.tracker.start_tracking()

    async def stop_tracking(self) -> TrackResult:
        if self.tracker is None:
            return TrackResult.skip(SkipReason.NOT_TRACKING)
        return await self.tracker.stop_tracking()

    async def _mark_read(self, notification_id: str) -> None:
        if not notification_id:
            await self._send({"type": "error", "message": "Missing notification id"})
            return
        self.feed.mark_as_read(notification_id)
        if self._notifications is not None:
            try:
                await self._notifications.mark_read(self.user_id, notification_id)
            except Exception:
                logger.warning("notification_mark_read_failed", notification_id=notification_id, exc_info=True)
        await self._send_unread_count()

    async def _mark_all_read(self) -> None:
        self.feed.mark_all_as_read()
        if self._notifications is not None:
            try:
                await self._notifications.mark_all_read(self.user_id)
            except Exception:
                logger.warning("notification_mark_all_read_failed", user_id=self.user_id, exc_info=True)
        await self._send_unread_count()

    async def _forward_update(self, event: UpdateEvent) -> None:
        await self._send(
            {
                "type": "update",
                "event": event.kind.value,
                "detail": event.detail.model_dump(mode="json"),
            }
        )

    async def _on_notification(self, event: UpdateEvent) -> None:
        await self.feed.apply(event)
        await self._send_unread_count()

    async def _send_toast(self, toast: Toast) -> None:
        await self._send({"type": "toast", **toast.model_dump()})

    async def _send_unread_count(self) -> None:
        await self._send({"type": "unread_count", "count": self.feed.unread_count})
