"""Change-event fan-out router.

Holds the single change channel of one signed-in user session and turns
each routed row change into:

1. an update event on the session's EventBus, and
2. for enrollments, achievements, certificates and new notifications, a
   toast for the user.

Live updates are a convenience. Channel failures are logged, never
raised, and never retried: the router drops back to UNSUBSCRIBED and
stays there until its owner calls setup() again.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from studyhub.realtime.bus import EventBus
from studyhub.realtime.events import (
    ChangeEvent,
    ChangeOperation,
    Table,
    Toast,
    UpdateDetail,
    UpdateKind,
)
from studyhub.realtime.stream import ChangeChannel, ChangeStream, ChannelStatus

logger = structlog.get_logger()

CHANNEL_NAME = "user-data-updates"

ToastSink = Callable[[Toast], Awaitable[None]]
ToastBuilder = Callable[[dict[str, Any]], Toast]


class RouterState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"


def _enrollment_toast(_row: dict[str, Any]) -> Toast:
    return Toast(
        title="New enrollment!",
        description="You are now enrolled in a new course.",
        duration_ms=4000,
    )


def _achievement_toast(row: dict[str, Any]) -> Toast:
    return Toast(
        title="New achievement unlocked!",
        description=row.get("achievement_title"),
        duration_ms=6000,
    )


def _certificate_toast(row: dict[str, Any]) -> Toast:
    return Toast(
        title="New certificate earned!",
        description=row.get("title"),
        duration_ms=8000,
    )


def _notification_toast(row: dict[str, Any]) -> Toast:
    return Toast(
        title=row.get("title") or "Notification",
        description=row.get("message"),
        duration_ms=5000,
    )


@dataclass(frozen=True)
class Route:
    """Maps one (table, operation) pair to an update kind and optional toast."""

    table: Table
    operation: ChangeOperation | None  # None routes every operation
    kind: UpdateKind
    toast: ToastBuilder | None = None


ROUTES: tuple[Route, ...] = (
    Route(Table.STUDY_SESSIONS, ChangeOperation.INSERT, UpdateKind.STUDY_SESSION),
    Route(Table.COURSE_ENROLLMENTS, ChangeOperation.INSERT, UpdateKind.ENROLLMENT, _enrollment_toast),
    Route(Table.COURSE_ENROLLMENTS, ChangeOperation.UPDATE, UpdateKind.ENROLLMENT),
    Route(Table.USER_ACHIEVEMENTS, ChangeOperation.INSERT, UpdateKind.ACHIEVEMENT, _achievement_toast),
    Route(Table.COURSE_BOOKMARKS, None, UpdateKind.BOOKMARK),
    Route(Table.CERTIFICATES, ChangeOperation.INSERT, UpdateKind.CERTIFICATE, _certificate_toast),
    Route(Table.NOTIFICATIONS, ChangeOperation.INSERT, UpdateKind.NOTIFICATION, _notification_toast),
    Route(Table.NOTIFICATIONS, ChangeOperation.UPDATE, UpdateKind.NOTIFICATION),
)


class ChangeEventRouter:
    """Owns at most one live change channel and fans its changes out."""

    def __init__(
        self,
        stream: ChangeStream,
        bus: EventBus,
        toasts: ToastSink | None = None,
        routes: tuple[Route, ...] = ROUTES,
    ) -> None:
        self._stream = stream
        self._bus = bus
        self._toasts = toasts
        self._routes = routes
        self._channel: ChangeChannel | None = None
        self._state = RouterState.UNSUBSCRIBED
        self._events_routed = 0
        self._toasts_failed = 0

    @property
    def state(self) -> RouterState:
        return self._state

    @property
    def channel(self) -> ChangeChannel | None:
        return self._channel

    async def setup(self, user_id: str | None) -> ChangeChannel | None:
        """Open the user's channel, releasing any previous one first.

        Returns the new channel, or None when there is no user or the
        subscription could not be made.
        """
        await self.teardown()
        if not user_id:
            return None

        channel = self._stream.channel(CHANNEL_NAME, user_id)
        for route in self._routes:
            channel.on(route.operation, route.table.value, self._make_handler(route))

        self._channel = channel
        try:
            await channel.subscribe(self._status_handler(channel))
        except Exception:
            logger.warning("change_router_setup_failed", user_id=user_id, exc_info=True)
            await self._release(channel)
            return None

        self._state = RouterState.SUBSCRIBED
        return channel

    async def teardown(self) -> None:
        """Release the current channel, if any. Safe to call repeatedly."""
        channel = self._channel
        if channel is None:
            self._state = RouterState.UNSUBSCRIBED
            return
        await self._release(channel)

    async def _release(self, channel: ChangeChannel) -> None:
        # Clear ownership before awaiting so a status callback fired during
        # removal cannot be mistaken for the next channel's
        self._channel = None
        self._state = RouterState.UNSUBSCRIBED
        try:
            await self._stream.remove_channel(channel)
        except Exception:
            logger.warning("change_router_release_failed", channel=channel.name, exc_info=True)

    def _status_handler(self, channel: ChangeChannel) -> Callable[[ChannelStatus, BaseException | None], None]:
        def on_status(status: ChannelStatus, error: BaseException | None) -> None:
            if status == ChannelStatus.SUBSCRIBED:
                logger.info("realtime_subscriptions_established", user_id=channel.user_id)
            elif status == ChannelStatus.CHANNEL_ERROR:
                logger.error(
                    "realtime_subscription_error",
                    user_id=channel.user_id,
                    error=str(error) if error else None,
                )
            elif status == ChannelStatus.CLOSED:
                logger.info("realtime_subscription_closed", user_id=channel.user_id)

            # A stale channel's status must not touch the current one
            if status != ChannelStatus.SUBSCRIBED and channel is self._channel:
                self._state = RouterState.UNSUBSCRIBED

        return on_status

    def _make_handler(self, route: Route) -> Callable[[ChangeEvent], Awaitable[None]]:
        async def handle(change: ChangeEvent) -> None:
            await self.route(route, change)

        return handle

    async def route(self, route: Route, change: ChangeEvent) -> None:
        """Publish one change as an update event and, if the route says so, a toast."""
        detail = UpdateDetail(type=change.operation.value.lower(), data=change.row)
        await self._bus.dispatch(route.kind, detail)
        self._events_routed += 1

        if route.toast is None or self._toasts is None:
            return
        try:
            await self._toasts(route.toast(change.row))
        except Exception:
            self._toasts_failed += 1
            logger.warning("toast_delivery_failed", kind=route.kind.value, exc_info=True)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "events_routed": self._events_routed,
            "toasts_failed": self._toasts_failed,
        }
