"""In-process event bus for update events.

Listeners register per UpdateKind and never see the change channel that
produced the event. One bus is created per live session and handed to
whatever needs it.
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from studyhub.realtime.events import UpdateDetail, UpdateEvent, UpdateKind

logger = structlog.get_logger()

Listener = Callable[[UpdateEvent], Awaitable[None] | None]


class EventBus:
    """Fans one update event out to every listener registered for its kind."""

    def __init__(self) -> None:
        self._listeners: dict[UpdateKind, list[Listener]] = defaultdict(list)
        self._dispatched = 0
        self._listener_errors = 0

    def add_listener(self, kind: UpdateKind, listener: Listener) -> None:
        """Register a listener. Registering the same listener twice is a no-op."""
        if listener not in self._listeners[kind]:
            self._listeners[kind].append(listener)

    def remove_listener(self, kind: UpdateKind, listener: Listener) -> None:
        try:
            self._listeners[kind].remove(listener)
        except ValueError:
            pass

    def listener_count(self, kind: UpdateKind) -> int:
        return len(self._listeners.get(kind, ()))

    async def dispatch(self, kind: UpdateKind, detail: UpdateDetail | dict[str, Any]) -> int:
        """Deliver an event to the listeners of ``kind``.

        Returns the number of listeners invoked. A listener that raises is
        logged and skipped; the others still receive the event.
        """
        if isinstance(detail, dict):
            detail = UpdateDetail.model_validate(detail)
        event = UpdateEvent(kind=kind, detail=detail)
        self._dispatched += 1

        invoked = 0
        # Copy so listeners may unregister themselves while handling
        for listener in list(self._listeners.get(kind, ())):
            invoked += 1
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._listener_errors += 1
                logger.warning("update_listener_failed", kind=kind.value, exc_info=True)
        return invoked

    def clear(self) -> None:
        self._listeners.clear()

    @property
    def stats(self) -> dict[str, int]:
        return {
            "dispatched": self._dispatched,
            "listener_errors": self._listener_errors,
            "listeners": sum(len(v) for v in self._listeners.values()),
        }
