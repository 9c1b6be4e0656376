# src/taskmirror/core/engine.py

"""
Engine: the single context object owning the mirror, timers and breaker.

Mutations enter here, patch the mirror optimistically and are then written
through the quota breaker. While the breaker is open every write lands in the
fallback store (and the deferred-write journal) instead.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..core.errors import NotInitialized, QuotaExceeded, TaskMirrorError
from ..core.models import Stats, Task, remote_fields
from ..core.ports import Clock, FallbackStore, MirrorListener, RemoteStore
from ..storage.fallback_store import fallback_key
from ..sync.breaker import QuotaCircuitBreaker
from ..sync.coalescer import WriteCoalescer, WriteKey
from ..sync.deferred import DeferredOp, DeferredWrites
from ..sync.mirror import LocalMirror, MirrorSnapshot
from ..sync.reconciler import RemoteReconciler
from ..sync.reorder import OrderChange, plan_reorder
from ..sync.tracking import TimeTracker

logger = logging.getLogger(__name__)

CONNECTION_TEST_PATH = "test/connection-test"


def system_clock() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    user_id: str | None = None
    # False reproduces the legacy single-user layout (top-level collections).
    multi_user: bool = True
    quiet_period_seconds: float = 2.0
    idle_save_interval_seconds: float = 900.0
    idle_min_flush_seconds: float = 30.0
    probe_interval_seconds: float = 60.0
    canary_path: str = "test/write-permission"

    @classmethod
    def from_settings(cls, settings: Any) -> EngineConfig:
        return cls(
            user_id=getattr(settings, "user_id", None) or None,
            multi_user=bool(getattr(settings, "multi_user", True)),
            quiet_period_seconds=float(getattr(settings, "quiet_period_seconds", 2.0)),
            idle_save_interval_seconds=float(getattr(settings, "idle_save_interval_seconds", 900.0)),
            idle_min_flush_seconds=float(getattr(settings, "idle_min_flush_seconds", 30.0)),
            probe_interval_seconds=float(getattr(settings, "probe_interval_seconds", 60.0)),
            canary_path=str(getattr(settings, "canary_path", "test/write-permission")),
        )

    def _root(self) -> str:
        if not self.multi_user:
            return ""
        if not self.user_id:
            raise ValueError("multi-user mode needs a user_id")
        return f"users/{self.user_id}/"

    @property
    def tasks_collection(self) -> str:
        return f"{self._root()}tasks"

    @property
    def stats_doc(self) -> str:
        return f"{self._root()}stats/userStats"

    @property
    def remark_doc(self) -> str:
        return f"{self._root()}remark/userRemark"

    def task_doc(self, task_id: str) -> str:
        return f"{self.tasks_collection}/{task_id}"


@dataclass(frozen=True, slots=True)
class ConnectionReport:
    read_ok: bool
    write_ok: bool
    quota_exceeded: bool
    error: str | None = None


def normalize_deadline(raw: str) -> str:
    """Validate a local (naive) date-time and return it as YYYY-MM-DDTHH:MM."""
    s = (raw or "").strip()
    if not s:
        raise ValueError("deadline is required")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise ValueError(f"invalid deadline: {raw!r}") from None
    if dt.tzinfo is not None:
        raise ValueError("deadline must be a local date-time without timezone")
    return dt.strftime("%Y-%m-%dT%H:%M")


class Engine:
    def __init__(
            self,
            remote: RemoteStore,
            fallback: FallbackStore,
            config: EngineConfig | None = None,
            *,
            clock: Clock | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        # Fail fast on an unusable path layout.
        self.config.tasks_collection

        self.remote = remote
        self.fallback = fallback
        self.clock: Clock = clock or system_clock
        self.user_id = self.config.user_id

        self.mirror = LocalMirror()
        self.breaker = QuotaCircuitBreaker(
            remote,
            clock=self.clock,
            canary_path=self.config.canary_path,
            probe_interval_seconds=self.config.probe_interval_seconds,
        )
        self.deferred = DeferredWrites(fallback, self._key("pendingWrites"))
        self.tracker = TimeTracker(
            self.mirror,
            clock=self.clock,
            write_task=self._write_task_fields,
            write_stats=self._write_stats,
            fallback=fallback,
            user_id=self.user_id,
            idle_save_interval_seconds=self.config.idle_save_interval_seconds,
            idle_min_flush_ms=int(self.config.idle_min_flush_seconds * 1000),
            on_error=self._report,
        )
        self.coalescer = WriteCoalescer(
            self.mirror,
            self._write_coalesced,
            quiet_seconds=self.config.quiet_period_seconds,
            on_failure=lambda _key, err: self._report(err),
        )
        self.reconciler = RemoteReconciler(
            remote,
            self.mirror,
            self.tracker,
            self.breaker,
            collection_path=self.config.tasks_collection,
            on_error=self._report,
        )

        self.breaker.on_open(self._on_breaker_open)
        self.breaker.on_close(self._on_breaker_close)
        self.mirror.add_listener(self._notify)

        self.initialized = False
        self._mirror_loaded = False
        self._quota_reported = False
        self._listeners: list[MirrorListener] = []

    # ---- listeners ----

    def add_listener(self, listener: MirrorListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def snapshot(self) -> MirrorSnapshot:
        return MirrorSnapshot(
            tasks=tuple(self.mirror.get_all()),
            stats=self.mirror.stats,
            tracking_task_id=self.tracker.current_task_id,
            remark=self.mirror.remark,
            offline=self.breaker.is_open,
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener.on_mirror_changed(snap)
            except Exception:
                logger.exception("Mirror listener crashed")

    def _report(self, err: BaseException) -> None:
        if isinstance(err, QuotaExceeded):
            # Once per session, not once per failure.
            if self._quota_reported:
                return
            self._quota_reported = True
        for listener in list(self._listeners):
            try:
                listener.on_error(err)
            except Exception:
                logger.exception("Error listener crashed")

    # ---- fallback snapshot ----

    def _key(self, name: str) -> str:
        return fallback_key(name, self.user_id)

    def save_local_snapshot(self) -> None:
        """Write tasks, stats and remark to the fallback store."""
        tasks = [{"id": t.id, **t.to_remote()} for t in self.mirror.get_all()]
        stats = self.mirror.stats
        fb = self.fallback
        fb.set(self._key("tasks"), json.dumps(tasks, ensure_ascii=False, default=str))
        fb.set(self._key("totalFocusTime"), str(stats.total_focus_time))
        fb.set(self._key("totalIdlingTime"), str(stats.total_idling_time))
        fb.set(self._key("pendingIdlingTime"), str(self.tracker.pending_idling_ms))
        if stats.last_reset_time is not None:
            fb.set(self._key("lastResetTime"), str(stats.last_reset_time))
        else:
            fb.remove(self._key("lastResetTime"))
        fb.set(self._key("remark"), self.mirror.remark)
        logger.debug("Saved local snapshot: %d tasks", len(tasks))

    def _has_local_state(self) -> bool:
        return self._mirror_loaded or self.reconciler.snapshots_applied > 0

    def _fallback_int(self, name: str) -> int:
        raw = self.fallback.get(self._key(name))
        try:
            return max(0, int(raw)) if raw else 0
        except ValueError:
            return 0

    def _fallback_stats(self) -> Stats:
        last_reset = self._fallback_int("lastResetTime")
        return Stats(
            total_focus_time=self._fallback_int("totalFocusTime"),
            total_idling_time=self._fallback_int("totalIdlingTime"),
            last_reset_time=last_reset or None,
        )

    def load_local_snapshot(self) -> None:
        """Rebuild the mirror from the fallback store (pure local operation)."""
        tasks: list[Task] = []
        raw = self.fallback.get(self._key("tasks"))
        if raw:
            try:
                records = json.loads(raw)
            except ValueError:
                logger.warning("Unreadable local task snapshot; starting empty")
                records = []
            for rec in records if isinstance(records, list) else []:
                if not isinstance(rec, dict):
                    continue
                data = dict(rec)
                doc_id = str(data.pop("id", "") or "")
                try:
                    tasks.append(Task.from_remote(doc_id, data))
                except ValueError as e:
                    logger.warning("Skipping local task record: %s", e)

        self.mirror.replace_all(self.tracker.overlay(tasks))
        self.mirror.set_stats(self._fallback_stats())
        self.mirror.set_remark(self.fallback.get(self._key("remark")) or "")
        self.tracker.pending_idling_ms = self._fallback_int("pendingIdlingTime")
        self.tracker.adopt_remote(next((t for t in self.mirror.get_all() if t.is_tracking), None))
        self._mirror_loaded = True
        logger.info("Loaded local snapshot: %d tasks", len(tasks))

    # ---- breaker hooks ----

    def _on_breaker_open(self) -> None:
        self.reconciler.stop()
        self.tracker.suspend_remote_flush()
        self.fallback.set(self._key("quotaExceeded"), "1")
        if self._has_local_state():
            self.save_local_snapshot()
        else:
            self.load_local_snapshot()
        self._notify()
        self._report(QuotaExceeded("remote store quota exceeded; running on local storage"))

    async def _on_breaker_close(self) -> None:
        self.fallback.remove(self._key("quotaExceeded"))
        try:
            await self.deferred.replay(self.remote)
        except QuotaExceeded as e:
            self.breaker.observe(e)
            return
        await self.tracker.resume_remote_flush()
        if not self.initialized:
            return
        self.reconciler.start()
        self._notify()

    # ---- write paths ----

    def _defer(self, path: str, op: DeferredOp, fields: dict[str, Any], *, created_offline: bool = False) -> None:
        if op == DeferredOp.DELETE:
            self.deferred.record_delete(path)
        elif op == DeferredOp.SET:
            self.deferred.record_set(path, fields, created_offline=created_offline)
        else:
            self.deferred.record_update(path, fields)
        self.save_local_snapshot()

    async def _remote_write(self, path: str, op: DeferredOp, fields: dict[str, Any]) -> bool:
        """True when the write reached the remote store, False when it was redirected."""
        if self.breaker.is_open:
            self._defer(path, op, fields)
            return False
        try:
            if op == DeferredOp.DELETE:
                await self.breaker.call(lambda: self.remote.delete_doc(path))
            elif op == DeferredOp.SET:
                await self.breaker.call(lambda: self.remote.set_doc(path, fields, merge=True))
            else:
                await self.breaker.call(lambda: self.remote.update_doc(path, fields))
        except QuotaExceeded:
            self._defer(path, op, fields)
            return False
        return True

    async def _write_task_fields(self, task_id: str, fields: dict[str, Any]) -> bool:
        return await self._remote_write(self.config.task_doc(task_id), DeferredOp.UPDATE, remote_fields(fields))

    async def _write_stats(self, fields: dict[str, Any]) -> bool:
        return await self._remote_write(self.config.stats_doc, DeferredOp.SET, fields)

    async def _write_coalesced(self, key: WriteKey, fields: dict[str, Any]) -> bool:
        if self.mirror.get_by_id(key.entity_id) is None:
            # Deleted while the timer was armed.
            return True
        return await self._write_task_fields(key.entity_id, fields)

    # ---- lifecycle ----

    async def start(self) -> None:
        if self.initialized:
            return
        self.deferred.load()

        if self.fallback.get(self._key("quotaExceeded")):
            logger.warning("Quota was exhausted in a previous session; starting from local storage")
            self.load_local_snapshot()
            self.breaker.force_open()
            self.tracker.start()
            self.initialized = True
            await self.breaker.probe_now()
            return

        await self._load_stats()
        await self._load_remark()
        self.tracker.start()
        self.initialized = True
        if not self.breaker.is_open:
            self.reconciler.start()
        logger.info("Engine started user=%s tasks=%s", self.user_id or "-", self.config.tasks_collection)

    async def stop(self) -> None:
        if not self.initialized:
            return
        await self.coalescer.close()
        await self.tracker.close()
        self.reconciler.stop()
        await self.breaker.stop()
        if self._has_local_state():
            self.save_local_snapshot()
        self.initialized = False
        logger.info("Engine stopped")

    async def _load_stats(self) -> None:
        path = self.config.stats_doc
        try:
            data = await self.breaker.call(lambda: self.remote.get_doc(path))
        except QuotaExceeded:
            logger.warning("Quota exceeded during stats load")
            return
        except TaskMirrorError as e:
            logger.error("Error loading stats: %s", e)
            self.mirror.set_stats(self._fallback_stats())
            self._report(e)
            return

        if data is None:
            stats = Stats()
            try:
                await self._write_stats(stats.to_remote())
            except TaskMirrorError as e:
                logger.error("Failed to create stats document: %s", e)
        else:
            stats = Stats.from_remote(data)
        self.mirror.set_stats(stats)

        pending = self._fallback_int("pendingIdlingTime")
        if pending > 0 and not self.breaker.is_open:
            self.tracker.restore_pending(pending)
            try:
                await self.tracker.flush_idling()
            except TaskMirrorError as e:
                logger.warning("Could not flush restored idling time: %s", e)

    async def _load_remark(self) -> None:
        if self.breaker.is_open:
            return
        path = self.config.remark_doc
        try:
            data = await self.breaker.call(lambda: self.remote.get_doc(path))
        except TaskMirrorError as e:
            logger.warning("Error loading remark: %s", e)
            self.mirror.set_remark(self.fallback.get(self._key("remark")) or "")
            return
        content = data.get("content") if isinstance(data, dict) else None
        self.mirror.set_remark(str(content) if content else "")

    def _require_init(self) -> None:
        if not self.initialized:
            raise NotInitialized("engine is not started")

    # ---- mutation API ----

    @property
    def tracking_task_id(self) -> str | None:
        return self.tracker.current_task_id

    async def add_task(
            self,
            description: str,
            deadline: str,
            *,
            checklist: list[dict[str, Any]] | None = None,
            link: str | None = None,
    ) -> str:
        self._require_init()
        text = (description or "").strip()
        if not text:
            raise ValueError("description is required")

        orders = [t.order for t in self.mirror.get_all() if t.order is not None]
        task = Task(
            id="",
            description=text,
            deadline=normalize_deadline(deadline),
            order=max(orders, default=-1) + 1,
            created_at=self.clock(),
            checklist=tuple(dict(x) for x in checklist) if checklist else None,
            link=link or None,
        )
        data = task.to_remote()

        if not self.breaker.is_open:
            collection = self.config.tasks_collection
            try:
                task_id = await self.breaker.call(lambda: self.remote.add_doc(collection, data))
            except QuotaExceeded:
                pass
            else:
                if self.mirror.get_by_id(task_id) is None:
                    self.mirror.insert(Task.from_remote(task_id, data))
                logger.info("Task added id=%s", task_id)
                return task_id

        task_id = f"local-{uuid.uuid4().hex[:16]}"
        self.mirror.insert(Task.from_remote(task_id, data))
        self._defer_created(task_id, data)
        logger.info("Task added offline id=%s", task_id)
        return task_id

    def _defer_created(self, task_id: str, data: dict[str, Any]) -> None:
        self.deferred.record_set(self.config.task_doc(task_id), data, created_offline=True)
        self.save_local_snapshot()

    async def delete_task(self, task_id: str) -> bool:
        self._require_init()
        async with self.tracker.lock:
            task = self.mirror.get_by_id(task_id)
            if task is None:
                return False
            if task.is_tracking:
                await self.tracker.stop_held(task.id)

            self.coalescer.discard_entity(task.id)
            removed = self.mirror.remove(task.id)
            try:
                await self._remote_write(self.config.task_doc(task.id), DeferredOp.DELETE, {})
            except TaskMirrorError:
                if removed is not None and self.mirror.get_by_id(task.id) is None:
                    self.mirror.insert(removed)
                raise
        logger.info("Task deleted id=%s", task.id)
        return True

    async def toggle_complete(self, task_id: str) -> bool:
        self._require_init()
        async with self.tracker.lock:
            task = self.mirror.get_by_id(task_id)
            if task is None:
                return False
            if task.is_tracking:
                await self.tracker.stop_held(task.id)

            completed = not task.completed
            if self.mirror.apply_patch(task.id, {"completed": completed}) is None:
                return False
            try:
                await self._write_task_fields(task.id, {"completed": completed})
            except TaskMirrorError:
                self.mirror.apply_patch(task.id, {"completed": task.completed})
                raise
        return True

    async def start_tracking(self, task_id: str) -> bool:
        self._require_init()
        return await self.tracker.start_tracking(task_id)

    async def stop_tracking(self, task_id: str | None = None) -> bool:
        self._require_init()
        return await self.tracker.stop_tracking(task_id)

    async def toggle_tracking(self, task_id: str) -> bool:
        self._require_init()
        return await self.tracker.toggle(task_id)

    def update_description(self, task_id: str, description: str) -> bool:
        self._require_init()
        text = (description or "").strip()
        if not text:
            return False
        return self.coalescer.schedule_write(WriteKey(str(task_id), "description"), {"description": text})

    def update_deadline(self, task_id: str, deadline: str) -> bool:
        self._require_init()
        value = normalize_deadline(deadline)
        return self.coalescer.schedule_write(WriteKey(str(task_id), "deadline"), {"deadline": value})

    async def reorder(self, dragged_id: str, target_id: str) -> list[OrderChange]:
        self._require_init()
        changes = plan_reorder(self.mirror.get_all(), dragged_id, target_id)
        for ch in changes:
            self.mirror.apply_patch(ch.task_id, {"order": ch.new_order})

        written: set[str] = set()
        try:
            for ch in changes:
                if self.mirror.get_by_id(ch.task_id) is None:
                    continue
                await self._write_task_fields(ch.task_id, {"order": ch.new_order})
                written.add(ch.task_id)
        except TaskMirrorError:
            for ch in changes:
                cur = self.mirror.get_by_id(ch.task_id)
                if ch.task_id not in written and cur is not None and cur.order == ch.new_order:
                    self.mirror.apply_patch(ch.task_id, {"order": ch.old_order})
            raise
        logger.info("Reordered %s onto %s: %d writes", dragged_id, target_id, len(changes))
        return changes

    async def reset_stats(self) -> None:
        self._require_init()
        await self.tracker.reset_stats()

    async def toggle_checklist_item(self, task_id: str, index: int) -> bool:
        self._require_init()
        task = self.mirror.get_by_id(task_id)
        if task is None or not task.checklist or not 0 <= index < len(task.checklist):
            return False

        items = [dict(x) if isinstance(x, dict) else {"prompt": str(x)} for x in task.checklist]
        items[index]["completed"] = not bool(items[index].get("completed", False))
        checklist = tuple(items)

        self.mirror.apply_patch(task.id, {"checklist": checklist})
        try:
            await self._write_task_fields(task.id, {"checklist": checklist})
        except TaskMirrorError:
            if self.mirror.get_by_id(task.id) is not None:
                self.mirror.apply_patch(task.id, {"checklist": task.checklist})
            raise
        return True

    async def save_remark(self, content: str) -> bool:
        """Local first; the remote copy is best-effort. Returns True if it reached the remote store."""
        self._require_init()
        text = (content or "").strip()
        self.fallback.set(self._key("remark"), text)
        self.mirror.set_remark(text)
        try:
            return await self._remote_write(
                self.config.remark_doc, DeferredOp.SET, {"content": text, "updatedAt": self.clock()}
            )
        except TaskMirrorError as e:
            logger.warning("Remark saved locally, remote sync failed: %s", e)
            self._report(e)
            return False

    async def test_connection(self) -> ConnectionReport:
        """Read probe + write probe against a scratch document."""
        if self.breaker.is_open:
            recovered = await self.breaker.probe_now()
            return ConnectionReport(read_ok=False, write_ok=recovered, quota_exceeded=not recovered)

        read_ok = write_ok = quota = False
        error: str | None = None
        try:
            await self.breaker.call(lambda: self.remote.get_doc(CONNECTION_TEST_PATH))
            read_ok = True
        except QuotaExceeded:
            quota = True
        except TaskMirrorError as e:
            error = f"{type(e).__name__}: {e}"

        if not quota:
            try:
                await self.breaker.call(
                    lambda: self.remote.set_doc(
                        CONNECTION_TEST_PATH, {"timestamp": self.clock(), "test": True}, merge=True
                    )
                )
                write_ok = True
            except QuotaExceeded:
                quota = True
            except TaskMirrorError as e:
                error = error or f"{type(e).__name__}: {e}"
            if write_ok:
                with contextlib.suppress(Exception):
                    await self.remote.delete_doc(CONNECTION_TEST_PATH)

        return ConnectionReport(read_ok=read_ok, write_ok=write_ok, quota_exceeded=quota, error=error)
