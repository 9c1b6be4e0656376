# src/taskmirror/sync/mirror.py

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..core.models import Stats, Task, task_sort_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MirrorSnapshot:
    """Read-only view handed to renderers."""

    tasks: tuple[Task, ...]
    stats: Stats
    tracking_task_id: str | None = None
    remark: str = ""
    offline: bool = False

    def task(self, task_id: str) -> Task | None:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None


class LocalMirror:
    """
    In-memory tasks + aggregate stats; single source of truth for rendering.

    Task objects are frozen, so callers holding a snapshot can't mutate the
    mirror behind the engine's back. Never performs I/O.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._seq: dict[str, int] = {}
        self._next_seq = 0
        self.stats = Stats()
        self.remark = ""
        self._listeners: list[Callable[[], None]] = []

    # ---- change notification ----

    def add_listener(self, cb: Callable[[], None]) -> None:
        self._listeners.append(cb)

    def _changed(self) -> None:
        for cb in list(self._listeners):
            try:
                cb()
            except Exception:
                logger.exception("Mirror listener failed")

    # ---- reads ----

    def get_all(self) -> list[Task]:
        return sorted(self._tasks.values(), key=lambda t: task_sort_key(t, self._seq.get(t.id, 0)))

    def get_by_id(self, task_id: str) -> Task | None:
        return self._tasks.get(str(task_id))

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def tracking_tasks(self) -> list[Task]:
        return [t for t in self.get_all() if t.is_tracking]

    # ---- writes ----

    def replace_all(self, tasks: Iterable[Task]) -> None:
        """Atomic swap of the whole task list (reconciler only)."""
        new_tasks: dict[str, Task] = {}
        new_seq: dict[str, int] = {}
        for t in tasks:
            new_tasks[t.id] = t
            if t.id in self._seq:
                new_seq[t.id] = self._seq[t.id]
            else:
                new_seq[t.id] = self._next_seq
                self._next_seq += 1
        self._tasks = new_tasks
        self._seq = new_seq
        self._changed()

    def apply_patch(self, task_id: str, fields: dict[str, Any]) -> Task | None:
        """Replace some fields of one task. Returns the new task, or None if it's gone."""
        current = self._tasks.get(str(task_id))
        if current is None:
            return None
        updated = dataclasses.replace(current, **fields)
        self._tasks[current.id] = updated
        self._changed()
        return updated

    def insert(self, task: Task) -> None:
        self._tasks[task.id] = task
        if task.id not in self._seq:
            self._seq[task.id] = self._next_seq
            self._next_seq += 1
        self._changed()

    def remove(self, task_id: str) -> Task | None:
        removed = self._tasks.pop(str(task_id), None)
        self._seq.pop(str(task_id), None)
        if removed is not None:
            self._changed()
        return removed

    def set_stats(self, stats: Stats) -> None:
        self.stats = stats
        self._changed()

    def set_remark(self, text: str) -> None:
        self.remark = text
        self._changed()
