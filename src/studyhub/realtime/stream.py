"""Per-user change stream over Redis pub/sub.

Writers publish each row change to ``changes:user:{user_id}``. A reader
opens one channel per live session, registers callbacks per
(operation, table), and subscribes. A background task reads the pub/sub
connection and hands every matching change to its callbacks.

Channel status is reported through the callback passed to subscribe():
SUBSCRIBED once listening, CHANNEL_ERROR when the reader dies, CLOSED
when the channel is removed. A failed channel is not reopened here; the
owner decides whether to build a new one.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from studyhub.realtime.events import ChangeEvent, ChangeOperation, parse_change

logger = structlog.get_logger()

DEFAULT_CHANNEL_PREFIX = "changes:user:"

ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]


class ChannelStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CLOSED = "CLOSED"


StatusCallback = Callable[[ChannelStatus, BaseException | None], None]


@dataclass(frozen=True)
class Binding:
    """A callback registered for one table and operation (None = any)."""

    table: str
    operation: ChangeOperation | None
    callback: ChangeCallback

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        return self.operation is None or self.operation == change.operation


class ChangeChannel(Protocol):
    name: str
    user_id: str

    def on(self, operation: ChangeOperation | None, table: str, callback: ChangeCallback) -> ChangeChannel: ...

    async def subscribe(self, on_status: StatusCallback | None = None) -> None: ...

    @property
    def is_live(self) -> bool: ...


class ChangeStream(Protocol):
    def channel(self, name: str, user_id: str) -> ChangeChannel: ...

    async def remove_channel(self, channel: ChangeChannel) -> None: ...


class BaseChangeChannel:
    """Callback bookkeeping and delivery shared by channel implementations."""

    def __init__(self, name: str, user_id: str) -> None:
        self.name = name
        self.user_id = user_id
        self._bindings: list[Binding] = []
        self._on_status: StatusCallback | None = None
        self._delivered = 0
        self._callback_errors = 0

    def on(self, operation: ChangeOperation | None, table: str, callback: ChangeCallback) -> BaseChangeChannel:
        """Register a callback. Returns the channel so registrations can chain."""
        self._bindings.append(Binding(table=table, operation=operation, callback=callback))
        return self

    async def deliver(self, change: ChangeEvent) -> int:
        """Run every callback bound to this change, in registration order."""
        handled = 0
        for binding in self._bindings:
            if not binding.matches(change):
                continue
            handled += 1
            try:
                result = binding.callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._callback_errors += 1
                logger.warning(
                    "change_callback_failed",
                    channel=self.name,
                    table=change.table,
                    operation=change.operation.value,
                    exc_info=True,
                )
        self._delivered += handled
        return handled

    def _report(self, status: ChannelStatus, error: BaseException | None = None) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status, error)
        except Exception:
            logger.warning("change_status_callback_failed", channel=self.name, status=status.value, exc_info=True)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "bindings": len(self._bindings),
            "delivered": self._delivered,
            "callback_errors": self._callback_errors,
        }


class RedisChangeChannel(BaseChangeChannel):
    """A change channel backed by one Redis pub/sub subscription."""

    def __init__(self, redis: aioredis.Redis, name: str, user_id: str, prefix: str = DEFAULT_CHANNEL_PREFIX) -> None:
        super().__init__(name, user_id)
        self._redis = redis
        self.redis_channel = f"{prefix}{user_id}"
        self._pubsub: Any = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_live(self) -> bool:
        return self._running

    async def subscribe(self, on_status: StatusCallback | None = None) -> None:
        """Start listening. Raises if the pub/sub subscription cannot be made."""
        if self._running:
            return
        self._on_status = on_status
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.redis_channel)
        self._running = True
        self._task = asyncio.create_task(self._read_loop(), name=f"{self.name}:{self.user_id}")
        logger.info("change_channel_subscribed", channel=self.name, redis_channel=self.redis_channel)
        self._report(ChannelStatus.SUBSCRIBED)

    async def close(self) -> None:
        """Stop the reader and release the pub/sub connection."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.redis_channel)
                await self._pubsub.aclose()
            except Exception:
                logger.debug("change_channel_release_failed", channel=self.name, exc_info=True)
            self._pubsub = None
            self._report(ChannelStatus.CLOSED)

    async def _read_loop(self) -> None:
        try:
            while self._running:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                await self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._running = False
            logger.error("change_channel_error", channel=self.name, user_id=self.user_id, error=str(exc))
            self._report(ChannelStatus.CHANNEL_ERROR, exc)

    async def _handle_message(self, message: dict[str, Any]) -> None:
        data = message.get("data", b"")
        try:
            if isinstance(data, bytes):
                data = data.decode()
            change = parse_change(json.loads(data))
        except (ValueError, TypeError, ValidationError):
            logger.warning("change_invalid_message", channel=self.name)
            return

        # Producers tag rows with their owner; anything else is not ours
        if change.user_id and change.user_id != self.user_id:
            logger.debug("change_foreign_row_dropped", channel=self.name, owner=change.user_id)
            return

        await self.deliver(change)


class RedisChangeStream:
    """Creates and releases change channels on a shared Redis client."""

    def __init__(self, redis: aioredis.Redis, prefix: str = DEFAULT_CHANNEL_PREFIX) -> None:
        self._redis = redis
        self._prefix = prefix
        self._channels: set[RedisChangeChannel] = set()

    def channel(self, name: str, user_id: str) -> RedisChangeChannel:
        ch = RedisChangeChannel(self._redis, name, user_id, prefix=self._prefix)
        self._channels.add(ch)
        return ch

    async def remove_channel(self, channel: ChangeChannel) -> None:
        if isinstance(channel, RedisChangeChannel):
            await channel.close()
        self._channels.discard(channel)  # type: ignore[arg-type]

    @property
    def live_channels(self) -> int:
        return sum(1 for ch in self._channels if ch.is_live)


async def publish_change(
    redis: Any | None,
    change: ChangeEvent,
    prefix: str = DEFAULT_CHANNEL_PREFIX,
) -> None:
    """Publish a row change to its owner's change channel.

    Publishing is best effort: the row is already persisted, so a Redis
    failure only costs the live update.
    """
    if redis is None or not change.user_id:
        return
    try:
        await redis.publish(f"{prefix}{change.user_id}", json.dumps(change.to_wire()))
    except Exception:
        logger.warning(
            "change_publish_failed",
            table=change.table,
            user_id=change.user_id,
            exc_info=True,
        )
