# tests/conftest.py

from __future__ import annotations

import pytest
import pytest_asyncio

from taskmirror.core.engine import Engine, EngineConfig
from taskmirror.storage.fallback_store import MemoryFallbackStore
from taskmirror.storage.memory_remote import InMemoryRemoteStore

from .fakes import FakeClock, RecordingListener

TASKS = "users/u1/tasks"
STATS = "users/u1/stats/userStats"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture()
def fallback() -> MemoryFallbackStore:
    return MemoryFallbackStore()


@pytest.fixture()
def config() -> EngineConfig:
    """
    Short debounce so coalescing tests stay fast; timers that would otherwise
    fire mid-test (idling flush, recovery probe) are pushed far out and driven
    explicitly instead.
    """
    return EngineConfig(
        user_id="u1",
        multi_user=True,
        quiet_period_seconds=0.01,
        idle_save_interval_seconds=3600.0,
        idle_min_flush_seconds=30.0,
        probe_interval_seconds=3600.0,
    )


@pytest.fixture()
def listener() -> RecordingListener:
    return RecordingListener()


@pytest_asyncio.fixture()
async def engine(remote, fallback, config, clock, listener):
    """Engine wired to in-memory fakes. Not started: tests seed first."""
    eng = Engine(remote, fallback, config, clock=clock)
    eng.add_listener(listener)
    yield eng
    await eng.stop()
    await eng.breaker.stop()
