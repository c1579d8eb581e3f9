"""Shared test fixtures: a controllable clock, an in-memory recorder and change stream."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from studyhub.config import get_settings
from studyhub.database import get_session
from studyhub.dependencies import get_redis_dep
from studyhub.main import create_app
from studyhub.realtime.bus import EventBus
from studyhub.realtime.events import ChangeEvent, ChangeOperation
from studyhub.realtime.stream import BaseChangeChannel, ChannelStatus, StatusCallback
from studyhub.tracking.tracker import StudySessionTracker


@pytest.fixture(autouse=True)
def _fresh_settings() -> None:
    """Settings are cached per process; tests that patch env need a clean cache."""
    get_settings.cache_clear()


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeRecorder:
    """SessionRecorder that keeps every write in memory.

    ``fail_next`` makes the next N writes raise. ``gate`` (when set) holds
    writes until the test releases it, to simulate a slow backend.
    """

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.updates: list[dict[str, Any]] = []
        self.fail_next = 0
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def _maybe_block_or_fail(self) -> None:
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionError("backend unavailable")

    async def create(self, **kwargs: Any) -> str:
        await self._maybe_block_or_fail()
        self.created.append(kwargs)
        return f"session-{len(self.created)}"

    async def update(self, session_id: str, **kwargs: Any) -> None:
        await self._maybe_block_or_fail()
        self.updates.append({"session_id": session_id, **kwargs})

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.updates)

    @property
    def last_duration(self) -> int | None:
        if self.updates:
            return self.updates[-1]["duration_minutes"]
        if self.created:
            return self.created[-1]["duration_minutes"]
        return None


class FakeChannel(BaseChangeChannel):
    """Change channel driven directly by the test."""

    def __init__(self, name: str, user_id: str, fail_subscribe: bool = False) -> None:
        super().__init__(name, user_id)
        self.live = False
        self.fail_subscribe = fail_subscribe

    @property
    def is_live(self) -> bool:
        return self.live

    async def subscribe(self, on_status: StatusCallback | None = None) -> None:
        if self.fail_subscribe:
            raise ConnectionError("realtime endpoint unreachable")
        self._on_status = on_status
        self.live = True
        self._report(ChannelStatus.SUBSCRIBED)

    async def push(
        self,
        table: str,
        operation: ChangeOperation,
        new: dict[str, Any] | None = None,
        old: dict[str, Any] | None = None,
    ) -> int:
        change = ChangeEvent(table=table, operation=operation, user_id=self.user_id, new=new or {}, old=old or {})
        return await self.deliver(change)

    def fail(self, error: Exception) -> None:
        self.live = False
        self._report(ChannelStatus.CHANNEL_ERROR, error)

    def closed(self) -> None:
        self.live = False
        self._report(ChannelStatus.CLOSED)


class FakeChangeStream:
    """ChangeStream that hands out FakeChannels and logs every lifecycle step."""

    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.log: list[str] = []
        self.fail_subscribe = False

    def channel(self, name: str, user_id: str) -> FakeChannel:
        ch = FakeChannel(name, user_id, fail_subscribe=self.fail_subscribe)
        self.channels.append(ch)
        self.log.append(f"open:{len(self.channels)}")
        return ch

    async def remove_channel(self, channel: FakeChannel) -> None:  # type: ignore[override]
        self.log.append(f"remove:{self.channels.index(channel) + 1}")
        channel.closed()

    @property
    def live_channels(self) -> int:
        return sum(1 for ch in self.channels if ch.live)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()


@pytest.fixture
def stream() -> FakeChangeStream:
    return FakeChangeStream()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def make_tracker(
    recorder: FakeRecorder, clock: FakeClock
) -> AsyncGenerator[Callable[..., StudySessionTracker], None]:
    """Build trackers on the fake clock; anything still tracking is stopped afterwards."""
    trackers: list[StudySessionTracker] = []

    def factory(
        user_id: str | None = "user-1",
        course_id: str | None = "C1",
        lesson_id: str | None = None,
        **kwargs: Any,
    ) -> StudySessionTracker:
        tracker = StudySessionTracker(recorder, user_id, course_id, lesson_id, clock=clock, **kwargs)
        trackers.append(tracker)
        return tracker

    yield factory

    if recorder.gate is not None:
        recorder.gate.set()
    for tracker in trackers:
        if tracker.is_tracking:
            await tracker.stop_tracking()


@pytest.fixture
def db() -> AsyncMock:
    """Request-scoped session stand-in; configure ``db.execute.return_value`` per test."""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def redis() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def client(db: AsyncMock, redis: AsyncMock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with storage dependencies overridden; lifespan does not run."""
    app = create_app()

    async def override_session() -> AsyncGenerator[AsyncMock, None]:
        yield db

    async def override_redis() -> AsyncGenerator[AsyncMock, None]:
        yield redis

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_redis_dep] = override_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
