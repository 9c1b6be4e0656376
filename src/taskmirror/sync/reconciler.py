# src/taskmirror/sync/reconciler.py

from __future__ import annotations

import logging
from collections.abc import Callable

from ..core.errors import QuotaExceeded, TaskMirrorError
from ..core.models import Task, sort_tasks
from ..core.ports import CollectionSnapshot, RemoteStore, Unsubscribe
from .breaker import QuotaCircuitBreaker
from .mirror import LocalMirror
from .tracking import TimeTracker

logger = logging.getLogger(__name__)


class RemoteReconciler:
    """
    Keeps the mirror in step with the remote task collection.

    Each snapshot is parsed record by record (a bad record is skipped, never
    the whole snapshot), passed through the tracker's overlay, sorted, and then
    swapped into the mirror in one step. Transient errors are left to the
    subscription channel to redeliver; quota errors trip the breaker, which
    tears this subscription down.
    """

    def __init__(
            self,
            remote: RemoteStore,
            mirror: LocalMirror,
            tracker: TimeTracker,
            breaker: QuotaCircuitBreaker,
            *,
            collection_path: str,
            on_error: Callable[[TaskMirrorError], None] | None = None,
    ) -> None:
        self._remote = remote
        self._mirror = mirror
        self._tracker = tracker
        self._breaker = breaker
        self.collection_path = collection_path
        self._on_error = on_error
        self._unsubscribe: Unsubscribe | None = None
        self.snapshots_applied = 0
        self.records_skipped = 0

    @property
    def active(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        if self._breaker.is_open:
            logger.warning("Skipping task listener: quota breaker is open")
            return
        self._unsubscribe = self._remote.subscribe_collection(
            self.collection_path, self.handle_snapshot, self.handle_error
        )
        logger.info("Listening to %s", self.collection_path)

    def stop(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is None:
            return
        try:
            unsubscribe()
        except Exception:
            logger.warning("Error stopping tasks listener", exc_info=True)
        logger.info("Stopped listening to %s", self.collection_path)

    def build_tasks(self, snapshot: CollectionSnapshot) -> list[Task]:
        tasks: list[Task] = []
        for record in snapshot.docs:
            try:
                tasks.append(Task.from_remote(record.id, record.data))
            except (ValueError, TypeError) as e:
                self.records_skipped += 1
                logger.warning("Skipping malformed task record %s: %s", record.id, e)
        return sort_tasks(self._tracker.overlay(tasks))

    def handle_snapshot(self, snapshot: CollectionSnapshot) -> None:
        if self._unsubscribe is None:
            # Late delivery after teardown.
            return
        try:
            tasks = self.build_tasks(snapshot)
        except Exception:
            logger.exception("Failed to reconcile snapshot; keeping current mirror")
            return

        tracking = next((t for t in tasks if t.is_tracking), None)
        self._tracker.adopt_remote(tracking)
        self._mirror.replace_all(tasks)
        self.snapshots_applied += 1
        logger.debug("Applied snapshot: %d tasks (%d changes)", len(tasks), len(snapshot.changes))

    def handle_error(self, exc: BaseException) -> None:
        err = self._breaker.observe(exc)
        if isinstance(err, QuotaExceeded):
            logger.error("Tasks listener hit quota; breaker tripped")
            # The store already dropped the listener; the breaker hook calls stop().
        else:
            # Redelivery is the channel's job; keep the handle so stop() still detaches.
            logger.error("Tasks listener error: %s", err)
        if self._on_error is not None:
            self._on_error(err)
