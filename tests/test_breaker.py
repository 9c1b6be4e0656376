# tests/test_breaker.py

from __future__ import annotations

import asyncio
import json

import pytest

from taskmirror.core.engine import Engine
from taskmirror.core.errors import QuotaExceeded, StoreErrorKind
from taskmirror.storage.fallback_store import MemoryFallbackStore
from taskmirror.storage.memory_remote import InMemoryRemoteStore
from taskmirror.sync.breaker import BreakerState, QuotaCircuitBreaker

from .conftest import TASKS
from .fakes import FakeClock, seed_tasks, settle, task_doc


async def _started(engine, remote):
    seed_tasks(remote, TASKS, {"t1": task_doc("one", order=0), "t2": task_doc("two", order=1)})
    await engine.start()
    await settle()
    return engine


@pytest.mark.asyncio
async def test_quota_on_a_write_opens_breaker_and_keeps_the_edit(engine, remote, fallback, listener) -> None:
    await _started(engine, remote)
    remote.fail_with(StoreErrorKind.QUOTA_EXCEEDED)

    assert await engine.toggle_complete("t1")

    assert engine.breaker.is_open
    assert engine.mirror.get_by_id("t1").completed
    assert not engine.reconciler.active
    assert fallback.get("quotaExceeded_u1") == "1"
    saved = {rec["id"]: rec for rec in json.loads(fallback.get("tasks_u1"))}
    assert saved["t1"]["completed"] is True
    assert engine.deferred.get(f"{TASKS}/t1").fields == {"completed": True}
    assert [type(e) for e in listener.errors] == [QuotaExceeded]


@pytest.mark.asyncio
async def test_no_remote_traffic_while_open(engine, remote, clock, listener) -> None:
    await _started(engine, remote)
    remote.fail_with(StoreErrorKind.QUOTA_EXCEEDED)
    await engine.toggle_complete("t2")
    writes_before = len(remote.write_log)
    reads_before = remote.read_count

    new_id = await engine.add_task("offline task", "2030-05-05T09:00")
    engine.update_description("t1", "edited offline")
    await asyncio.sleep(0.05)
    await engine.coalescer.drain()
    await engine.reorder("t2", "t1")
    await engine.start_tracking("t1")
    clock.advance(1_000)
    await engine.stop_tracking("t1")
    await engine.save_remark("note")

    assert new_id.startswith("local-")
    assert engine.mirror.get_by_id("t1").description == "edited offline"
    assert len(remote.write_log) == writes_before
    assert remote.read_count == reads_before
    # Reported once per session, not once per failure.
    assert len([e for e in listener.errors if isinstance(e, QuotaExceeded)]) == 1
    assert engine.snapshot().offline


@pytest.mark.asyncio
async def test_successful_canary_closes_and_replays(engine, remote, fallback) -> None:
    await _started(engine, remote)
    remote.fail_with(StoreErrorKind.QUOTA_EXCEEDED)
    await engine.toggle_complete("t1")
    local_id = await engine.add_task("made offline", "2030-05-05T09:00")

    assert await engine.breaker.probe_now() is False

    remote.clear_failure()
    assert await engine.breaker.probe_now() is True
    await settle()

    assert engine.breaker.state == BreakerState.CLOSED
    assert remote.peek(f"{TASKS}/t1")["completed"] is True
    assert remote.peek(f"{TASKS}/{local_id}")["description"] == "made offline"
    assert remote.peek(engine.config.canary_path) is None
    assert "quotaExceeded_u1" not in fallback.data
    assert len(engine.deferred) == 0
    assert engine.reconciler.active
    assert engine.mirror.get_by_id(local_id) is not None


@pytest.mark.asyncio
async def test_listener_quota_error_trips_breaker(engine, remote) -> None:
    await _started(engine, remote)

    remote.break_listeners(StoreErrorKind.QUOTA_EXCEEDED)
    await settle()

    assert engine.breaker.is_open
    assert not engine.reconciler.active
    assert len(engine.mirror) == 2


@pytest.mark.asyncio
async def test_startup_with_persisted_flag_uses_local_data(remote, fallback, config, clock) -> None:
    fallback.set("quotaExceeded_u1", "1")
    fallback.set(
        "tasks_u1",
        json.dumps([{"id": "t9", **task_doc("from last session", order=0, elapsedTime=4_000)}]),
    )
    fallback.set("totalFocusTime_u1", "4000")
    remote.fail_with(StoreErrorKind.QUOTA_EXCEEDED)

    eng = Engine(remote, fallback, config, clock=clock)
    try:
        await eng.start()

        assert eng.breaker.is_open
        assert eng.mirror.get_by_id("t9").elapsed_time == 4_000
        assert eng.mirror.stats.total_focus_time == 4_000
        assert remote.write_log == []
    finally:
        await eng.stop()


@pytest.mark.asyncio
async def test_trip_is_idempotent() -> None:
    breaker = QuotaCircuitBreaker(InMemoryRemoteStore(), clock=FakeClock(), probe_interval_seconds=3600)
    opened = []
    breaker.on_open(lambda: opened.append(1))

    breaker.trip("first")
    breaker.trip("second")

    assert breaker.trip_count == 1
    assert opened == [1]
    await breaker.stop()


@pytest.mark.asyncio
async def test_call_refuses_while_open_without_touching_store() -> None:
    remote = InMemoryRemoteStore()
    breaker = QuotaCircuitBreaker(remote, clock=FakeClock(), probe_interval_seconds=3600)
    breaker.trip()

    with pytest.raises(QuotaExceeded):
        await breaker.call(lambda: remote.get_doc("a/b"))

    assert remote.read_count == 0
    await breaker.stop()


@pytest.mark.asyncio
async def test_fallback_keys_never_collide_between_users(remote, clock) -> None:
    from taskmirror.core.engine import EngineConfig

    shared = MemoryFallbackStore()
    seed_tasks(remote, "users/a/tasks", {"x": task_doc("a's task")})
    seed_tasks(remote, "users/b/tasks", {"y": task_doc("b's task")})
    a = Engine(remote, shared, EngineConfig(user_id="a", probe_interval_seconds=3600), clock=clock)
    b = Engine(remote, shared, EngineConfig(user_id="b", probe_interval_seconds=3600), clock=clock)
    await a.start()
    await b.start()
    await settle()

    await a.stop()
    await b.stop()

    assert [r["id"] for r in json.loads(shared.get("tasks_a"))] == ["x"]
    assert [r["id"] for r in json.loads(shared.get("tasks_b"))] == ["y"]
