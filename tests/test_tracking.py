# tests/test_tracking.py

from __future__ import annotations

import asyncio

import pytest

from taskmirror.core.engine import Engine, EngineConfig
from taskmirror.core.errors import PermissionDenied, RemoteOperationFailed, StoreErrorKind
from taskmirror.core.ports import CollectionSnapshot, DocRecord
from taskmirror.sync.tracking import TrackerState

from .conftest import STATS, TASKS
from .fakes import START_MS, YieldingRemote, seed_tasks, settle, task_doc


async def _started(engine, remote, **docs):
    seed_tasks(remote, TASKS, docs or {"t1": task_doc("one", order=0), "t2": task_doc("two", order=1)})
    await engine.start()
    await settle()
    return engine


@pytest.mark.asyncio
async def test_starting_another_task_stops_the_first(engine, remote, clock) -> None:
    await _started(engine, remote)

    assert await engine.start_tracking("t1")
    clock.advance(5_000)
    assert await engine.start_tracking("t2")
    await settle()

    t1 = engine.mirror.get_by_id("t1")
    assert not t1.is_tracking
    assert t1.elapsed_time == 5_000
    assert engine.tracking_task_id == "t2"
    assert [t.id for t in engine.mirror.tracking_tasks()] == ["t2"]
    assert remote.peek(f"{TASKS}/t1")["elapsedTime"] == 5_000
    assert remote.peek(f"{TASKS}/t2")["isTracking"] is True


@pytest.mark.asyncio
async def test_stop_credits_exactly_the_clock_delta(engine, remote, clock) -> None:
    await _started(engine, remote)

    await engine.start_tracking("t1")
    clock.advance(12_345)
    assert await engine.stop_tracking("t1")

    assert engine.mirror.get_by_id("t1").elapsed_time == 12_345
    assert engine.mirror.stats.total_focus_time == 12_345
    assert remote.peek(STATS)["totalFocusTime"] == 12_345
    assert engine.tracker.state == TrackerState.IDLE


@pytest.mark.asyncio
async def test_idling_time_is_flushed_when_tracking_starts(engine, remote, fallback, clock) -> None:
    await _started(engine, remote)

    clock.advance(40_000)
    await engine.start_tracking("t1")

    assert remote.peek(STATS)["totalIdlingTime"] == 40_000
    assert engine.tracker.pending_idling_ms == 0
    assert "pendingIdlingTime_u1" not in fallback.data


@pytest.mark.asyncio
async def test_pending_idling_from_last_session_is_restored(engine, remote, fallback) -> None:
    remote.import_documents({STATS: {"totalFocusTime": 0, "totalIdlingTime": 1_000}})
    fallback.set("pendingIdlingTime_u1", "7000")

    await _started(engine, remote)

    assert engine.mirror.stats.total_idling_time == 8_000
    assert remote.peek(STATS)["totalIdlingTime"] == 8_000
    assert "pendingIdlingTime_u1" not in fallback.data


@pytest.mark.asyncio
async def test_completed_tasks_cannot_be_tracked(engine, remote) -> None:
    await _started(engine, remote, done=task_doc("done", completed=True))

    assert await engine.start_tracking("done") is False
    assert engine.tracking_task_id is None


@pytest.mark.asyncio
async def test_failed_start_rolls_back(engine, remote) -> None:
    await _started(engine, remote)
    remote.fail_with(StoreErrorKind.OTHER, ops={"update"})

    with pytest.raises(RemoteOperationFailed):
        await engine.start_tracking("t1")

    assert not engine.mirror.get_by_id("t1").is_tracking
    assert engine.tracking_task_id is None
    assert engine.tracker.state == TrackerState.IDLE


@pytest.mark.asyncio
async def test_completing_a_tracked_task_stops_tracking_first(engine, remote, clock) -> None:
    await _started(engine, remote)

    await engine.start_tracking("t1")
    clock.advance(2_000)
    assert await engine.toggle_complete("t1")

    t1 = engine.mirror.get_by_id("t1")
    assert t1.completed
    assert not t1.is_tracking
    assert t1.elapsed_time == 2_000


@pytest.mark.asyncio
async def test_toggle_tracking_flips_state(engine, remote, clock) -> None:
    await _started(engine, remote)

    await engine.toggle_tracking("t2")
    assert engine.tracking_task_id == "t2"
    clock.advance(1_000)
    await engine.toggle_tracking("t2")
    assert engine.tracking_task_id is None
    assert engine.mirror.get_by_id("t2").elapsed_time == 1_000


@pytest.mark.asyncio
async def test_stale_snapshot_cannot_undo_a_local_stop(engine, remote, clock) -> None:
    await _started(engine, remote)
    await engine.start_tracking("t1")
    await settle()
    clock.advance(5_000)
    await engine.stop_tracking("t1")

    # Delivered before the echo of the stop write.
    stale = CollectionSnapshot(
        docs=[
            DocRecord("t1", task_doc("one", order=0, isTracking=True, trackingStartTime=START_MS)),
            DocRecord("t2", task_doc("two", order=1)),
        ]
    )
    engine.reconciler.handle_snapshot(stale)

    t1 = engine.mirror.get_by_id("t1")
    assert t1.elapsed_time == 5_000
    assert not t1.is_tracking
    assert engine.tracking_task_id is None

    await settle()
    assert engine.mirror.get_by_id("t1").elapsed_time == 5_000


@pytest.mark.asyncio
async def test_reset_stats_zeroes_totals(engine, remote, clock) -> None:
    await _started(engine, remote)
    await engine.start_tracking("t1")
    clock.advance(3_000)
    await engine.stop_tracking()

    clock.advance(10)
    await engine.reset_stats()

    stats = engine.mirror.stats
    assert stats.total_focus_time == 0
    assert stats.total_idling_time == 0
    assert stats.last_reset_time == clock.now
    assert remote.peek(STATS)["totalFocusTime"] == 0
    assert remote.peek(STATS)["lastResetTime"] == clock.now


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_task_tracking(fallback, config, clock) -> None:
    remote = YieldingRemote()
    seed_tasks(
        remote,
        TASKS,
        {"t0": task_doc("zero", order=0), "t1": task_doc("one", order=1), "t2": task_doc("two", order=2)},
    )
    eng = Engine(remote, fallback, config, clock=clock)
    try:
        await eng.start()
        await settle()
        await eng.start_tracking("t0")
        clock.advance(1_000)

        results = await asyncio.gather(eng.start_tracking("t1"), eng.start_tracking("t2"))
        await settle(10)

        assert results == [True, True]
        remote_tracking = [i for i in ("t0", "t1", "t2") if remote.peek(f"{TASKS}/{i}")["isTracking"]]
        assert remote_tracking == ["t2"]
        assert [t.id for t in eng.mirror.tracking_tasks()] == ["t2"]
        assert eng.tracking_task_id == "t2"
        assert remote.peek(f"{TASKS}/t0")["elapsedTime"] == 1_000
    finally:
        await eng.stop()
        await eng.breaker.stop()


@pytest.mark.asyncio
async def test_complete_and_start_do_not_interleave(fallback, config, clock) -> None:
    remote = YieldingRemote()
    seed_tasks(remote, TASKS, {"t1": task_doc("one", order=0), "t2": task_doc("two", order=1)})
    eng = Engine(remote, fallback, config, clock=clock)
    try:
        await eng.start()
        await settle()
        await eng.start_tracking("t1")

        await asyncio.gather(eng.toggle_complete("t1"), eng.start_tracking("t1"))
        await settle(10)

        t1 = remote.peek(f"{TASKS}/t1")
        assert t1["completed"] is True
        assert t1["isTracking"] is False
        assert eng.tracking_task_id is None
    finally:
        await eng.stop()
        await eng.breaker.stop()


@pytest.mark.asyncio
async def test_stop_stands_when_only_the_focus_total_write_fails(engine, remote, fallback, listener, clock) -> None:
    await _started(engine, remote)
    await engine.start_tracking("t1")
    clock.advance(10_000)
    remote.fail_with(StoreErrorKind.PERMISSION_DENIED, ops={"set"}, times=1)

    assert await engine.stop_tracking("t1")
    await settle()

    t1 = engine.mirror.get_by_id("t1")
    assert not t1.is_tracking
    assert t1.elapsed_time == 10_000
    assert engine.mirror.stats.total_focus_time == 10_000
    assert engine.tracker.state == TrackerState.IDLE
    assert remote.peek(f"{TASKS}/t1")["elapsedTime"] == 10_000
    assert remote.peek(STATS)["totalFocusTime"] == 0
    assert fallback.get("totalFocusTime_u1") == "10000"
    assert isinstance(listener.errors[-1], PermissionDenied)
    assert engine.tracker.focus_unsynced

    # The next stats write carries the focus total.
    assert await engine.tracker.flush_idling()
    assert remote.peek(STATS)["totalFocusTime"] == 10_000
    assert not engine.tracker.focus_unsynced


@pytest.mark.asyncio
async def test_failed_task_write_on_stop_keeps_tracking(engine, remote, clock) -> None:
    await _started(engine, remote)
    await engine.start_tracking("t1")
    clock.advance(4_000)
    remote.fail_with(StoreErrorKind.PERMISSION_DENIED, ops={"update"}, times=1)

    with pytest.raises(PermissionDenied):
        await engine.stop_tracking("t1")

    t1 = engine.mirror.get_by_id("t1")
    assert t1.is_tracking
    assert t1.elapsed_time == 0
    assert engine.mirror.stats.total_focus_time == 0
    assert engine.tracking_task_id == "t1"
    assert remote.peek(STATS)["totalFocusTime"] == 0


@pytest.mark.asyncio
async def test_idling_tick_persists_and_flushes_the_accumulator(remote, fallback, clock) -> None:
    config = EngineConfig(
        user_id="u1",
        quiet_period_seconds=0.01,
        idle_save_interval_seconds=0.01,
        idle_min_flush_seconds=30.0,
        probe_interval_seconds=3600.0,
    )
    eng = Engine(remote, fallback, config, clock=clock)
    try:
        await eng.start()
        await settle()

        # Below the minimum: ticks fire but nothing is accrued.
        clock.advance(10_000)
        await asyncio.sleep(0.1)
        assert eng.tracker.pending_idling_ms == 0
        assert eng.mirror.stats.total_idling_time == 0
        assert remote.peek(STATS)["totalIdlingTime"] == 0

        # Remote rejects the flush: the tick still lands the accumulator locally.
        remote.fail_with(StoreErrorKind.OTHER, ops={"set"})
        clock.advance(30_000)
        await asyncio.sleep(0.1)
        assert fallback.get("pendingIdlingTime_u1") == "40000"
        assert fallback.get("totalIdlingTime_u1") == "40000"
        assert remote.peek(STATS)["totalIdlingTime"] == 0

        remote.clear_failure()
        clock.advance(35_000)
        await asyncio.sleep(0.1)
        assert remote.peek(STATS)["totalIdlingTime"] == 75_000
        assert eng.tracker.pending_idling_ms == 0
        assert "pendingIdlingTime_u1" not in fallback.data
    finally:
        await eng.stop()
        await eng.breaker.stop()
