# src/taskmirror/sync/tracking.py

"""
Time-tracking state machine.

Idle:             no task tracked; the idling clock accrues into totalIdlingTime
                  and the pending idling accumulator.
Tracking(task):   exactly one task accrues wall-clock time; on stop the delta
                  goes to the task's elapsedTime and to totalFocusTime.

Transitions run one at a time under a single lock, and switching tasks is always
stop-then-start inside it. A transition whose task write fails for a non-quota
reason is rolled back and the error re-raised. Once a stop's task write has
landed the stop stands: a failed focus-total write only leaves the total marked
unsynced, to be carried by the next stats write, and is reported through
``on_error``. Quota failures never reach this module (the engine redirects those
writes to the fallback store).
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from ..core.errors import TaskMirrorError
from ..core.models import Task
from ..core.ports import Clock, FallbackStore
from ..storage.fallback_store import fallback_key
from .mirror import LocalMirror

logger = logging.getLogger(__name__)

# Task writes use attribute names; stats writes use remote field names.
TaskWriter = Callable[[str, dict[str, Any]], Awaitable[bool]]
StatsWriter = Callable[[dict[str, Any]], Awaitable[bool]]


class TrackerState(StrEnum):
    IDLE = "idle"
    TRACKING = "tracking"


class TimeTracker:
    def __init__(
            self,
            mirror: LocalMirror,
            *,
            clock: Clock,
            write_task: TaskWriter,
            write_stats: StatsWriter,
            fallback: FallbackStore,
            user_id: str | None,
            idle_save_interval_seconds: float = 900.0,
            idle_min_flush_ms: int = 30_000,
            on_error: Callable[[TaskMirrorError], None] | None = None,
    ) -> None:
        self._mirror = mirror
        self._clock = clock
        self._write_task = write_task
        self._write_stats = write_stats
        self._fallback = fallback
        self._user_id = user_id
        self._on_error = on_error
        self.idle_save_interval_seconds = max(0.001, float(idle_save_interval_seconds))
        self.idle_min_flush_ms = max(0, int(idle_min_flush_ms))

        self.state = TrackerState.IDLE
        self.current_task_id: str | None = None
        self.tracking_start_time: int | None = None
        self.idling_start_time: int | None = None
        self.pending_idling_ms = 0
        self.remote_flush_enabled = True
        self.focus_unsynced = False

        # Elapsed values committed locally but possibly not yet echoed by the remote.
        self._floors: dict[str, int] = {}
        self._start_in_flight: str | None = None
        self._stop_in_flight: set[str] = set()
        self._tick_task: asyncio.Task[None] | None = None
        self.lock = asyncio.Lock()

    # ---- fallback keys ----

    def _key(self, name: str) -> str:
        return fallback_key(name, self._user_id)

    def _save_accumulator(self) -> None:
        stats = self._mirror.stats
        self._fallback.set(self._key("totalIdlingTime"), str(stats.total_idling_time))
        self._fallback.set(self._key("pendingIdlingTime"), str(self.pending_idling_ms))

    def restore_pending(self, pending_ms: int) -> None:
        """Fold idling time left over from a previous session into the aggregate."""
        if pending_ms <= 0:
            return
        stats = self._mirror.stats
        self._mirror.set_stats(dataclasses.replace(stats, total_idling_time=stats.total_idling_time + pending_ms))
        self.pending_idling_ms += pending_ms
        self._save_accumulator()
        logger.info("Restored %d ms of pending idling time", pending_ms)

    # ---- idling clock ----

    def start_idling_clock(self) -> None:
        self.idling_start_time = self._clock()

    def _accrue_idling(self) -> int:
        if self.idling_start_time is None:
            return 0
        now = self._clock()
        elapsed = max(0, now - self.idling_start_time)
        self.idling_start_time = now
        if elapsed:
            stats = self._mirror.stats
            self._mirror.set_stats(dataclasses.replace(stats, total_idling_time=stats.total_idling_time + elapsed))
            self.pending_idling_ms += elapsed
        self._save_accumulator()
        return elapsed

    def stop_idling_clock(self) -> int:
        elapsed = self._accrue_idling()
        self.idling_start_time = None
        return elapsed

    def current_idling_ms(self) -> int:
        if self.idling_start_time is None:
            return 0
        return max(0, self._clock() - self.idling_start_time)

    async def flush_idling(self) -> bool:
        """
        Durably commit the pending accumulator.

        Returns True when the remote store has it; the accumulator stays
        pending (and in the fallback store) otherwise.
        """
        if self.pending_idling_ms <= 0 and not self.focus_unsynced:
            return True
        self._save_accumulator()
        if not self.remote_flush_enabled:
            return False

        stats = self._mirror.stats
        fields: dict[str, Any] = {"totalIdlingTime": stats.total_idling_time}
        if self.focus_unsynced:
            fields["totalFocusTime"] = stats.total_focus_time
        flushed = self.pending_idling_ms
        if not await self._write_stats(fields):
            return False
        self.focus_unsynced = False
        self.pending_idling_ms = max(0, self.pending_idling_ms - flushed)
        if self.pending_idling_ms == 0:
            self._fallback.remove(self._key("pendingIdlingTime"))
        return True

    async def _flush_idling_logged(self) -> None:
        try:
            await self.flush_idling()
        except TaskMirrorError as e:
            logger.warning("Idling flush failed: %s", e)

    def suspend_remote_flush(self) -> None:
        self.remote_flush_enabled = False
        self._save_accumulator()

    async def resume_remote_flush(self) -> None:
        self.remote_flush_enabled = True
        await self._flush_idling_logged()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.idle_save_interval_seconds)
            try:
                async with self.lock:
                    if self.state != TrackerState.IDLE or self.idling_start_time is None:
                        continue
                    if self._clock() - self.idling_start_time < self.idle_min_flush_ms:
                        continue
                    self._accrue_idling()
                    await self.flush_idling()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Idling tick failed")

    def start(self) -> None:
        if self.state == TrackerState.IDLE and self.idling_start_time is None:
            self.start_idling_clock()
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.get_running_loop().create_task(self._tick_loop())

    async def close(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.state == TrackerState.IDLE:
            self._accrue_idling()

    # ---- transitions ----

    def _to_idle(self) -> None:
        self.state = TrackerState.IDLE
        self.current_task_id = None
        self.tracking_start_time = None
        if self.idling_start_time is None:
            self.start_idling_clock()

    async def start_tracking(self, task_id: str) -> bool:
        async with self.lock:
            return await self._start(task_id)

    async def stop_tracking(self, task_id: str | None = None) -> bool:
        async with self.lock:
            return await self._stop(task_id)

    async def stop_held(self, task_id: str | None = None) -> bool:
        """Stop while the caller already holds ``lock``."""
        if not self.lock.locked():
            raise RuntimeError("stop_held() requires the tracker lock")
        return await self._stop(task_id)

    async def toggle(self, task_id: str) -> bool:
        async with self.lock:
            task = self._mirror.get_by_id(task_id)
            if task is None:
                return False
            if task.is_tracking:
                return await self._stop(task.id)
            return await self._start(task.id)

    async def _start(self, task_id: str) -> bool:
        task = self._mirror.get_by_id(task_id)
        if task is None or task.completed:
            return False
        if self.current_task_id == task.id and task.is_tracking:
            return True

        if self.current_task_id is not None:
            await self._stop(self.current_task_id)
            task = self._mirror.get_by_id(task_id)
            if task is None:
                return False

        self.stop_idling_clock()
        await self._flush_idling_logged()

        task = self._mirror.get_by_id(task_id)
        if task is None:
            self._to_idle()
            return False

        now = self._clock()
        before = task
        self._mirror.apply_patch(task.id, {"is_tracking": True, "tracking_start_time": now})
        self.state = TrackerState.TRACKING
        self.current_task_id = task.id
        self.tracking_start_time = now
        self._start_in_flight = task.id
        logger.info("Tracking started task=%s", task.id)

        try:
            await self._write_task(task.id, {"is_tracking": True, "tracking_start_time": now})
        except TaskMirrorError:
            self._mirror.apply_patch(
                task.id,
                {"is_tracking": before.is_tracking, "tracking_start_time": before.tracking_start_time},
            )
            self._to_idle()
            raise
        finally:
            self._start_in_flight = None
        return True

    async def _stop(self, task_id: str | None) -> bool:
        tid = str(task_id) if task_id is not None else self.current_task_id
        if tid is None:
            return False

        task = self._mirror.get_by_id(tid)
        if task is None or not task.is_tracking:
            if self.current_task_id == tid:
                self._to_idle()
            return False

        now = self._clock()
        start = task.tracking_start_time
        if start is None and self.current_task_id == tid:
            start = self.tracking_start_time
        elapsed = max(0, now - (start if start is not None else now))

        new_elapsed = task.elapsed_time + elapsed
        self._mirror.apply_patch(
            tid, {"is_tracking": False, "elapsed_time": new_elapsed, "tracking_start_time": None}
        )
        stats = self._mirror.stats
        new_focus = stats.total_focus_time + elapsed
        self._mirror.set_stats(dataclasses.replace(stats, total_focus_time=new_focus))

        self._floors[tid] = new_elapsed
        self._stop_in_flight.add(tid)
        was_current = self.current_task_id == tid
        if was_current:
            self.state = TrackerState.IDLE
            self.current_task_id = None
            self.tracking_start_time = None
        self.start_idling_clock()
        logger.info("Tracking stopped task=%s elapsed_ms=%d", tid, elapsed)

        try:
            await self._write_task(
                tid, {"is_tracking": False, "elapsed_time": new_elapsed, "tracking_start_time": None}
            )
        except TaskMirrorError:
            if self._mirror.get_by_id(tid) is not None:
                self._mirror.apply_patch(
                    tid,
                    {"is_tracking": True, "elapsed_time": task.elapsed_time, "tracking_start_time": start},
                )
            cur = self._mirror.stats
            self._mirror.set_stats(dataclasses.replace(cur, total_focus_time=max(0, cur.total_focus_time - elapsed)))
            self._floors.pop(tid, None)
            if was_current or self.current_task_id is None:
                self.state = TrackerState.TRACKING
                self.current_task_id = tid
                self.tracking_start_time = start
                self.idling_start_time = None
            raise
        finally:
            self._stop_in_flight.discard(tid)

        try:
            await self._write_stats({"totalFocusTime": new_focus})
        except TaskMirrorError as e:
            self.focus_unsynced = True
            self._fallback.set(self._key("totalFocusTime"), str(self._mirror.stats.total_focus_time))
            logger.warning("Focus total not synced after stopping task=%s; will retry: %s", tid, e)
            if self._on_error is not None:
                self._on_error(e)
            return True
        self.focus_unsynced = False
        return True

    async def reset_stats(self) -> None:
        async with self.lock:
            await self._reset_stats()

    async def _reset_stats(self) -> None:
        now = self._clock()
        prev_stats = self._mirror.stats
        prev_pending = self.pending_idling_ms
        prev_idle_start = self.idling_start_time

        new_stats = dataclasses.replace(prev_stats, total_focus_time=0, total_idling_time=0, last_reset_time=now)
        self._mirror.set_stats(new_stats)
        self.pending_idling_ms = 0
        if self.state == TrackerState.IDLE:
            self.idling_start_time = now
        self._fallback.set(self._key("totalFocusTime"), "0")
        self._fallback.set(self._key("lastResetTime"), str(now))
        self._save_accumulator()

        try:
            await self._write_stats(new_stats.to_remote())
        except TaskMirrorError:
            self._mirror.set_stats(prev_stats)
            self.pending_idling_ms = prev_pending
            self.idling_start_time = prev_idle_start
            self._fallback.set(self._key("totalFocusTime"), str(prev_stats.total_focus_time))
            self._save_accumulator()
            raise
        self.focus_unsynced = False

    # ---- remote reconciliation hooks ----

    def overlay(self, tasks: list[Task]) -> list[Task]:
        """
        Protect locally authoritative tracking fields from stale snapshots.

        - elapsedTime never drops below what this client committed
        - a start/stop whose write is still in flight keeps its local flags
        - at most one task stays flagged as tracking
        """
        out: list[Task] = []
        for t in tasks:
            floor = self._floors.get(t.id)
            if floor is not None:
                if t.elapsed_time >= floor and t.id not in self._stop_in_flight:
                    self._floors.pop(t.id, None)
                elif t.elapsed_time < floor:
                    # Snapshot predates the local stop.
                    if self.current_task_id == t.id:
                        t = dataclasses.replace(
                            t, elapsed_time=floor, is_tracking=True, tracking_start_time=self.tracking_start_time
                        )
                    else:
                        t = dataclasses.replace(t, elapsed_time=floor, is_tracking=False, tracking_start_time=None)
            if t.id in self._stop_in_flight and t.is_tracking:
                t = dataclasses.replace(t, is_tracking=False, tracking_start_time=None)
            if t.id == self._start_in_flight and not t.is_tracking:
                t = dataclasses.replace(t, is_tracking=True, tracking_start_time=self.tracking_start_time)
            out.append(t)

        tracking = [t for t in out if t.is_tracking]
        if len(tracking) > 1:
            keep = next((t for t in tracking if t.id == self.current_task_id), None)
            if keep is None:
                keep = max(tracking, key=lambda t: t.tracking_start_time or 0)
            logger.warning("Snapshot flags %d tracking tasks; keeping %s", len(tracking), keep.id)
            out = [
                dataclasses.replace(t, is_tracking=False, tracking_start_time=None)
                if t.is_tracking and t.id != keep.id
                else t
                for t in out
            ]
        return out

    def adopt_remote(self, tracking: Task | None) -> None:
        """Align the state machine with the tracking task seen in a snapshot."""
        if tracking is not None and tracking.tracking_start_time is not None:
            if self.current_task_id != tracking.id:
                if self.state == TrackerState.IDLE:
                    self.stop_idling_clock()
                logger.info("Adopting remote tracking task=%s", tracking.id)
            self.state = TrackerState.TRACKING
            self.current_task_id = tracking.id
            self.tracking_start_time = tracking.tracking_start_time
        elif tracking is None and self.current_task_id is not None and self._start_in_flight is None:
            logger.info("Task %s stopped elsewhere; clearing local tracking", self.current_task_id)
            self._to_idle()
