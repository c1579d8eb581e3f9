"""Tests for the activity-gated study session tracker."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

from studyhub.tracking.schemas import SkipReason, TrackStatus
from studyhub.tracking.tracker import TrackerState


def _active(tracker: Any, clock: Any, minutes: float) -> None:
    """Advance the clock minute by minute with the user interacting."""
    whole = int(minutes)
    for _ in range(whole):
        clock.advance(minutes=1)
        tracker.record_activity("mousemove")
    if minutes > whole:
        clock.advance(minutes=minutes - whole)
        tracker.record_activity("scroll")


class TestStart:
    async def test_requires_user(self, make_tracker: Any, recorder: Any) -> None:
        tracker = make_tracker(user_id=None)
        result = tracker.start_tracking()
        assert result.status == TrackStatus.SKIPPED
        assert result.reason == SkipReason.NO_USER
        assert tracker.state == TrackerState.IDLE
        assert (await tracker.stop_tracking()).reason == SkipReason.NOT_TRACKING
        assert recorder.writes == 0

    async def test_requires_course(self, make_tracker: Any) -> None:
        result = make_tracker(course_id=None).start_tracking()
        assert result.reason == SkipReason.NO_COURSE

    async def test_double_start_skipped(self, make_tracker: Any) -> None:
        tracker = make_tracker()
        assert tracker.start_tracking().is_ok
        assert tracker.start_tracking().reason == SkipReason.ALREADY_TRACKING
        assert tracker.state == TrackerState.ACTIVE


class TestAccrual:
    async def test_hidden_time_not_counted(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker(lesson_id="L3")
        tracker.start_tracking()
        started = clock.now

        _active(tracker, clock, 3)
        tracker.set_visibility(hidden=True)
        clock.advance(minutes=10)
        tracker.set_visibility(hidden=False)
        _active(tracker, clock, 2)

        result = await tracker.stop_tracking()

        assert result.is_ok
        assert result.duration_minutes == 5
        assert len(recorder.created) == 1
        assert recorder.updates == []
        record = recorder.created[0]
        assert record["duration_minutes"] == 5
        assert record["course_id"] == "C1"
        assert record["lesson_id"] == "L3"
        assert record["started_at"] == started
        assert record["ended_at"] == clock.now
        assert record["metadata"]["auto_tracked"] is True
        assert tracker.state == TrackerState.IDLE

    async def test_accrual_never_decreases(self, make_tracker: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        observed = [tracker.accumulated_minutes]

        steps = [
            lambda: _active(tracker, clock, 2),
            lambda: tracker.set_visibility(hidden=True),
            lambda: clock.advance(minutes=7),
            lambda: tracker.set_visibility(hidden=True),
            lambda: tracker.set_visibility(hidden=False),
            lambda: tracker.set_visibility(hidden=False),
            lambda: _active(tracker, clock, 1.5),
            lambda: clock.advance(minutes=4),
        ]
        for step in steps:
            step()
            observed.append(tracker.accumulated_minutes)
        await tracker.tick()
        observed.append(tracker.accumulated_minutes)

        assert observed == sorted(observed)
        assert observed[-1] == 7

    async def test_autosave_totals_are_cumulative(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()

        _active(tracker, clock, 3)
        first = await tracker.tick()
        _active(tracker, clock, 2)
        second = await tracker.tick()
        _active(tracker, clock, 1)
        final = await tracker.stop_tracking()

        assert first.duration_minutes == 3
        assert second.duration_minutes == 5
        assert final.duration_minutes == 6
        assert len(recorder.created) == 1
        assert [u["duration_minutes"] for u in recorder.updates] == [5, 6]
        assert {u["session_id"] for u in recorder.updates} == {first.session_id}


class TestAutoSave:
    async def test_idle_tick_does_not_persist(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        clock.advance(minutes=3)

        result = await tracker.tick()

        assert result.reason == SkipReason.IDLE
        assert recorder.writes == 0

    async def test_idle_time_still_counts_toward_later_saves(
        self, make_tracker: Any, recorder: Any, clock: Any
    ) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        clock.advance(minutes=3)
        await tracker.tick()
        tracker.record_activity("keypress")

        assert (await tracker.tick()).duration_minutes == 3

    async def test_paused_tick_skipped(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 2)
        tracker.pause_tracking()
        assert (await tracker.tick()).reason == SkipReason.PAUSED
        assert recorder.writes == 0

    async def test_short_tick_persists_nothing(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 0.5)

        assert (await tracker.tick()).reason == SkipReason.BELOW_MINIMUM
        assert recorder.writes == 0

    async def test_short_session_still_recorded_on_stop(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        clock.advance(seconds=30)

        result = await tracker.stop_tracking()

        assert result.is_ok
        assert recorder.created[0]["duration_minutes"] == 0

    async def test_final_save_runs_while_paused(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 4)
        tracker.set_visibility(hidden=True)
        clock.advance(minutes=5)

        result = await tracker.stop_tracking()

        assert result.duration_minutes == 4
        assert recorder.created[0]["ended_at"] == clock.now

    async def test_timer_drives_saves(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker(autosave_interval=timedelta(milliseconds=10))
        tracker.start_tracking()
        _active(tracker, clock, 2)

        await asyncio.sleep(0.05)

        assert len(recorder.created) == 1
        assert recorder.created[0]["duration_minutes"] == 2
        await tracker.stop_tracking()
        writes = recorder.writes
        await asyncio.sleep(0.03)
        assert recorder.writes == writes


class TestFailures:
    async def test_failed_save_keeps_time_pending(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 3)
        recorder.fail_next = 1

        failed = await tracker.tick()
        assert failed.status == TrackStatus.ERROR
        assert failed.error == "backend unavailable"
        assert tracker.session_id is None
        assert tracker.accumulated_minutes == 3

        _active(tracker, clock, 1)
        retried = await tracker.tick()

        assert retried.is_ok
        assert recorder.created[0]["duration_minutes"] == 4

    async def test_failed_final_save_still_clears_state(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 2)
        recorder.fail_next = 1

        result = await tracker.stop_tracking()

        assert result.status == TrackStatus.ERROR
        assert tracker.state == TrackerState.IDLE
        assert tracker.accumulated_minutes == 0


class TestConcurrency:
    async def test_pause_during_save_neither_lost_nor_doubled(
        self, make_tracker: Any, recorder: Any, clock: Any
    ) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 3)
        recorder.gate = asyncio.Event()

        save = asyncio.create_task(tracker.tick())
        await recorder.entered.wait()

        clock.advance(minutes=1)
        tracker.set_visibility(hidden=True)
        assert (await tracker.tick()).reason == SkipReason.PAUSED

        recorder.gate.set()
        result = await save

        assert result.duration_minutes == 3
        assert tracker.accumulated_minutes == 4

        final = await tracker.stop_tracking()
        assert final.duration_minutes == 4
        assert recorder.updates[-1]["duration_minutes"] == 4

    async def test_tick_skipped_while_save_in_flight(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 3)
        recorder.gate = asyncio.Event()

        save = asyncio.create_task(tracker.tick())
        await recorder.entered.wait()
        assert (await tracker.tick()).reason == SkipReason.SAVE_IN_FLIGHT

        recorder.gate.set()
        await save
        assert len(recorder.created) == 1

    async def test_stop_waits_for_in_flight_save(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 3)
        recorder.gate = asyncio.Event()

        save = asyncio.create_task(tracker.tick())
        await recorder.entered.wait()
        stop = asyncio.create_task(tracker.stop_tracking())
        await asyncio.sleep(0)
        assert not stop.done()

        recorder.gate.set()
        await save
        final = await stop

        # One record: the final save updates the one the auto-save created
        assert len(recorder.created) == 1
        assert final.session_id == "session-1"

    async def test_overlapping_stops_write_one_record(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 3)
        recorder.gate = asyncio.Event()

        first = asyncio.create_task(tracker.stop_tracking())
        await recorder.entered.wait()
        second = asyncio.create_task(tracker.stop_tracking())
        await asyncio.sleep(0)
        assert not second.done()

        recorder.gate.set()
        results = await asyncio.gather(first, second)

        assert len(recorder.created) == 1
        assert recorder.updates == []
        assert [r.duration_minutes for r in results] == [3, 3]
        assert [r.session_id for r in results] == ["session-1", "session-1"]
        assert tracker.state == TrackerState.IDLE
        assert (await tracker.stop_tracking()).reason == SkipReason.NOT_TRACKING

    async def test_save_queued_behind_stop_is_skipped(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 3)
        recorder.gate = asyncio.Event()

        stop = asyncio.create_task(tracker.stop_tracking())
        await recorder.entered.wait()
        late = asyncio.create_task(tracker.save_session())
        await asyncio.sleep(0)

        recorder.gate.set()
        await stop
        assert (await late).reason == SkipReason.NOT_TRACKING
        assert len(recorder.created) == 1


class TestVisibilityAndActivity:
    async def test_pause_and_resume_are_idempotent(self, make_tracker: Any, clock: Any) -> None:
        tracker = make_tracker()
        assert tracker.pause_tracking().reason == SkipReason.NOT_TRACKING
        tracker.start_tracking()
        assert tracker.resume_tracking().reason == SkipReason.ALREADY_ACTIVE
        assert tracker.pause_tracking().is_ok
        assert tracker.pause_tracking().reason == SkipReason.PAUSED
        assert tracker.state == TrackerState.PAUSED

    async def test_only_interaction_events_count(self, make_tracker: Any, clock: Any) -> None:
        tracker = make_tracker()
        assert tracker.record_activity("mousemove") is False
        tracker.start_tracking()
        clock.advance(minutes=3)
        assert tracker.record_activity("resize") is False
        assert not tracker.is_active_session()
        assert tracker.record_activity("touchstart") is True
        assert tracker.is_active_session()

    async def test_long_hidden_period_finalizes_and_resume_restarts(
        self, make_tracker: Any, recorder: Any, clock: Any
    ) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        _active(tracker, clock, 3)
        tracker.set_visibility(hidden=True)
        clock.advance(minutes=45)

        expired = await tracker.expire_hidden()
        assert expired.duration_minutes == 3
        assert tracker.state == TrackerState.IDLE

        assert tracker.set_visibility(hidden=False).is_ok
        assert tracker.session_id is None
        _active(tracker, clock, 2)
        await tracker.stop_tracking()

        assert [r["duration_minutes"] for r in recorder.created] == [3, 2]

    async def test_hidden_timer_fires(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker(hidden_finalize_after=timedelta(milliseconds=10))
        tracker.start_tracking()
        _active(tracker, clock, 2)
        tracker.set_visibility(hidden=True)

        await asyncio.sleep(0.05)

        assert tracker.state == TrackerState.IDLE
        assert recorder.created[0]["duration_minutes"] == 2

    async def test_resume_cancels_hidden_timer(self, make_tracker: Any, recorder: Any, clock: Any) -> None:
        tracker = make_tracker(hidden_finalize_after=timedelta(milliseconds=20))
        tracker.start_tracking()
        tracker.set_visibility(hidden=True)
        tracker.set_visibility(hidden=False)

        await asyncio.sleep(0.05)

        assert tracker.state == TrackerState.ACTIVE
        assert recorder.writes == 0

    async def test_explicit_stop_does_not_arm_restart(self, make_tracker: Any, clock: Any) -> None:
        tracker = make_tracker()
        tracker.start_tracking()
        await tracker.stop_tracking()
        assert tracker.resume_tracking().reason == SkipReason.NOT_TRACKING
