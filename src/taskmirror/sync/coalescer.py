# src/taskmirror/sync/coalescer.py

"""
Debounced write coalescer.

schedule_write(key, fields):
- patches the mirror immediately (zero-latency UI),
- cancels the timer pending under the same key,
- arms a new timer; only when it fires is the payload handed to the sink.

Keys are independent: each has its own timer and its own lock, so one key's
write never waits on another's, and two writes under one key never overlap.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple

from ..core.errors import TaskMirrorError, classify_error
from .mirror import LocalMirror

logger = logging.getLogger(__name__)


class WriteKey(NamedTuple):
    entity_id: str
    group: str


# Returns True when the write reached the remote store, False when it was
# redirected to the fallback store. Raises TaskMirrorError on failure.
WriteSink = Callable[[WriteKey, dict[str, Any]], Awaitable[bool]]
FailureHook = Callable[[WriteKey, TaskMirrorError], None]


class WriteCoalescer:
    def __init__(
            self,
            mirror: LocalMirror,
            sink: WriteSink,
            *,
            quiet_seconds: float = 2.0,
            on_failure: FailureHook | None = None,
    ) -> None:
        self._mirror = mirror
        self._sink = sink
        self.quiet_seconds = max(0.0, float(quiet_seconds))
        self._on_failure = on_failure

        self._timers: dict[WriteKey, asyncio.Task[None]] = {}
        self._pending: dict[WriteKey, dict[str, Any]] = {}
        self._confirmed: dict[WriteKey, dict[str, Any]] = {}
        self._locks: dict[WriteKey, asyncio.Lock] = {}
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def pending_keys(self) -> list[WriteKey]:
        return list(self._pending)

    def schedule_write(self, key: WriteKey, fields: dict[str, Any]) -> bool:
        """Returns False (no-op) if the task is no longer in the mirror."""
        current = self._mirror.get_by_id(key.entity_id)
        if current is None:
            logger.debug("schedule_write: %s missing, ignoring", key.entity_id)
            return False

        baseline = self._confirmed.setdefault(key, {})
        for name in fields:
            baseline.setdefault(name, getattr(current, name))

        self._pending[key] = dict(fields)
        self._mirror.apply_patch(key.entity_id, fields)

        old = self._timers.pop(key, None)
        if old is not None:
            old.cancel()

        timer = asyncio.get_running_loop().create_task(self._fire(key))
        self._timers[key] = timer
        self._inflight.add(timer)
        timer.add_done_callback(self._inflight.discard)
        return True

    def discard_entity(self, entity_id: str) -> None:
        """Drop every pending (not yet started) write for an entity."""
        for key in [k for k in self._pending if k.entity_id == entity_id]:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._pending.pop(key, None)
            self._confirmed.pop(key, None)

    async def _fire(self, key: WriteKey) -> None:
        await asyncio.sleep(self.quiet_seconds)
        # Past this point the write can't be cancelled by a newer edit.
        if self._timers.get(key) is asyncio.current_task():
            self._timers.pop(key, None)
        fields = self._pending.pop(key, None)
        if fields is None:
            return
        await self._write(key, fields)

    async def _write(self, key: WriteKey, fields: dict[str, Any]) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                await self._sink(key, fields)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                err = classify_error(e)
                logger.warning("Coalesced write %s/%s failed: %s", key.entity_id, key.group, err)
                self._revert(key, fields)
                if self._on_failure is not None:
                    self._on_failure(key, err)
                return

            if key in self._pending:
                # A newer edit is already queued; what we just wrote is its baseline.
                self._confirmed[key] = dict(fields)
            else:
                self._confirmed.pop(key, None)

    def _revert(self, key: WriteKey, fields: dict[str, Any]) -> None:
        if key in self._pending:
            # Newer edit queued; it will be written (or reverted) on its own.
            return
        baseline = self._confirmed.pop(key, {})
        current = self._mirror.get_by_id(key.entity_id)
        if current is None or not baseline:
            return
        if all(getattr(current, n) == v for n, v in fields.items()):
            self._mirror.apply_patch(key.entity_id, baseline)

    async def flush(self) -> None:
        """Write every pending payload now (shutdown path)."""
        keys = list(self._pending)
        for key in keys:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
        writes = []
        for key in keys:
            fields = self._pending.pop(key, None)
            if fields is not None:
                writes.append(self._write(key, fields))
        if writes:
            await asyncio.gather(*writes)

    async def drain(self) -> None:
        """Wait until every armed timer has fired and its write finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        for t in list(self._inflight):
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t
