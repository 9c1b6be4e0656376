# src/taskmirror/sync/breaker.py

"""
Quota circuit breaker.

Closed: remote operations pass through.
Open:   the engine redirects every write to the fallback store and the live
        subscription is torn down. A background probe issues one canary write
        per interval; the first success closes the breaker again.

Only quota-class failures trip the breaker. Tripping while already open is a
no-op, so hooks run once per outage.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TypeVar

from ..core.errors import QuotaExceeded, TaskMirrorError, classify_error
from ..core.ports import Clock, RemoteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

OpenHook = Callable[[], None]
CloseHook = Callable[[], Awaitable[None]]


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"


class QuotaCircuitBreaker:
    def __init__(
            self,
            remote: RemoteStore,
            *,
            clock: Clock,
            canary_path: str = "test/write-permission",
            probe_interval_seconds: float = 60.0,
    ) -> None:
        self._remote = remote
        self._clock = clock
        self.canary_path = canary_path
        self.probe_interval_seconds = max(0.001, float(probe_interval_seconds))

        self.state = BreakerState.CLOSED
        self.opened_at: int | None = None
        self.trip_count = 0

        self._on_open: list[OpenHook] = []
        self._on_close: list[CloseHook] = []
        self._probe_task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    def on_open(self, hook: OpenHook) -> None:
        self._on_open.append(hook)

    def on_close(self, hook: CloseHook) -> None:
        self._on_close.append(hook)

    # ---- guarded calls ----

    def observe(self, exc: BaseException) -> TaskMirrorError:
        """Classify a failure seen anywhere at the remote boundary; trip on quota."""
        err = classify_error(exc)
        if isinstance(err, QuotaExceeded):
            self.trip(str(err))
        return err

    async def call(self, op: Callable[[], Awaitable[T]]) -> T:
        """
        Run one remote operation.

        Raises QuotaExceeded without touching the store when open; otherwise
        any failure is classified (tripping on quota) and re-raised.
        """
        if self.is_open:
            raise QuotaExceeded("circuit open")
        try:
            return await op()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise self.observe(e) from e

    # ---- transitions ----

    def trip(self, reason: str = "") -> None:
        if self.is_open:
            return

        self.state = BreakerState.OPEN
        self.opened_at = self._clock()
        self.trip_count += 1
        logger.warning("Quota breaker OPEN (%s); redirecting writes to fallback store", reason or "quota")

        for hook in list(self._on_open):
            try:
                hook()
            except Exception:
                logger.exception("Breaker open hook failed")

        self.start_probing()

    def force_open(self) -> None:
        """Start in the open state (quota already known exhausted at startup)."""
        self.trip("restored from previous session")

    async def _close(self) -> None:
        if not self.is_open:
            return
        self.state = BreakerState.CLOSED
        self.opened_at = None
        task, self._probe_task = self._probe_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info("Quota breaker CLOSED; remote operations resumed")

        for hook in list(self._on_close):
            try:
                await hook()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Breaker close hook failed")

    # ---- recovery probe ----

    def start_probing(self) -> None:
        if self._probe_task is not None and not self._probe_task.done():
            return
        self._probe_task = asyncio.get_running_loop().create_task(self._probe_loop())

    async def probe_now(self) -> bool:
        """One canary write. Closes the breaker on success."""
        try:
            await self._remote.set_doc(
                self.canary_path,
                {"timestamp": self._clock(), "test": True},
                merge=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = classify_error(e)
            if isinstance(err, QuotaExceeded):
                logger.info("Canary write still rejected for quota")
            else:
                logger.warning("Canary write failed (%s): %s", type(err).__name__, err)
            return False

        logger.info("Canary write succeeded")
        with contextlib.suppress(Exception):
            await self._remote.delete_doc(self.canary_path)
        await self._close()
        return True

    async def _probe_loop(self) -> None:
        while self.is_open:
            await asyncio.sleep(self.probe_interval_seconds)
            if not self.is_open:
                return
            try:
                if await self.probe_now():
                    return
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Breaker probe crashed; will retry")

    async def stop(self) -> None:
        task, self._probe_task = self._probe_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
