"""In-memory notification mirror for one browsing session.

Loaded once from the database, then kept current by notificationUpdate
events from the router. The unread count is derived from the items, so
repeated reads of the same notification can only lower it once, and a
read item never becomes unread again.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from studyhub.notifications.schemas import NotificationItem
from studyhub.realtime.events import UpdateEvent, UpdateKind

logger = structlog.get_logger()


class NotificationFeed:
    """Newest-first list of a user's notifications, capped at ``limit``."""

    def __init__(
        self,
        limit: int = 50,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._limit = limit
        self._clock = clock
        self._items: list[NotificationItem] = []

    @property
    def items(self) -> list[NotificationItem]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self._items if not item.is_read)

    def load(self, rows: Iterable[dict[str, Any] | NotificationItem]) -> None:
        """Replace the feed with rows already ordered newest first."""
        items = [row if isinstance(row, NotificationItem) else NotificationItem.model_validate(row) for row in rows]
        self._items = items[: self._limit]

    def get(self, notification_id: str) -> NotificationItem | None:
        for item in self._items:
            if item.id == notification_id:
                return item
        return None

    async def apply(self, event: UpdateEvent) -> None:
        """EventBus listener for notificationUpdate events."""
        if event.kind != UpdateKind.NOTIFICATION:
            return
        try:
            item = NotificationItem.model_validate(event.detail.data)
        except ValidationError:
            logger.warning("notification_feed_invalid_row", type=event.detail.type)
            return

        if event.detail.type == "insert":
            self._insert(item)
        elif event.detail.type == "update":
            self._replace(item)

    def mark_as_read(self, notification_id: str) -> bool:
        """Mark one item read. Returns True only when it was unread."""
        for index, item in enumerate(self._items):
            if item.id != notification_id:
                continue
            if item.is_read:
                return False
            self._items[index] = item.model_copy(update={"is_read": True, "read_at": self._clock()})
            return True
        return False

    def mark_all_as_read(self) -> int:
        now = self._clock()
        changed = 0
        for index, item in enumerate(self._items):
            if not item.is_read:
                self._items[index] = item.model_copy(update={"is_read": True, "read_at": now})
                changed += 1
        return changed

    def _insert(self, item: NotificationItem) -> None:
        # A redelivered insert must not add a second copy
        if self.get(item.id) is not None:
            self._replace(item)
            return
        self._items.insert(0, item)
        del self._items[self._limit :]

    def _replace(self, item: NotificationItem) -> None:
        for index, existing in enumerate(self._items):
            if existing.id != item.id:
                continue
            if existing.is_read and not item.is_read:
                item = item.model_copy(update={"is_read": True, "read_at": existing.read_at})
            self._items[index] = item
            return
