# src/taskmirror/storage/memory_remote.py

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..core.errors import StoreError, StoreErrorKind
from ..core.ports import ChangeKind, CollectionSnapshot, DocChange, DocRecord, Document, Unsubscribe

logger = logging.getLogger(__name__)


def split_path(path: str) -> tuple[str, str]:
    """"users/u1/tasks/t1" -> ("users/u1/tasks", "t1")."""
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2 or len(parts) % 2:
        raise ValueError(f"not a document path: {path!r}")
    return "/".join(parts[:-1]), parts[-1]


@dataclass(slots=True)
class _Failure:
    kind: StoreErrorKind
    remaining: int | None
    ops: frozenset[str] | None


@dataclass(slots=True)
class _Subscription:
    sid: int
    target: str
    is_collection: bool
    on_snapshot: Callable[[Any], None]
    on_error: Callable[[BaseException], None]
    active: bool = True
    last_seen: dict[str, Document] = field(default_factory=dict)


class InMemoryRemoteStore:
    """
    In-process document store used for offline demo runs and tests.

    Snapshots are pushed asynchronously (loop.call_soon), never from inside the
    write call, so subscribers observe the same ordering a networked store gives.

    Failure injection:
    - fail_with(kind, times=None, ops=None) makes matching operations raise StoreError
    - break_listeners(kind) pushes an error to every live subscription and drops it
    """

    def __init__(self) -> None:
        self._docs: dict[str, Document] = {}
        self._subs: dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._failure: _Failure | None = None
        self.write_log: list[tuple[str, str, Document | None]] = []
        self.read_count = 0

    # ---- failure injection ----

    def fail_with(
            self,
            kind: StoreErrorKind | str,
            *,
            times: int | None = None,
            ops: set[str] | None = None,
    ) -> None:
        k = kind if isinstance(kind, StoreErrorKind) else StoreErrorKind.from_code(kind)
        self._failure = _Failure(kind=k, remaining=times, ops=frozenset(ops) if ops else None)
        logger.info("Remote failure injection: kind=%s times=%s ops=%s", k.value, times, ops)

    def clear_failure(self) -> None:
        self._failure = None

    def break_listeners(self, kind: StoreErrorKind | str = StoreErrorKind.QUOTA_EXCEEDED) -> None:
        k = kind if isinstance(kind, StoreErrorKind) else StoreErrorKind.from_code(kind)
        for sub in list(self._subs.values()):
            self._subs.pop(sub.sid, None)
            sub.active = False
            self._loop().call_soon(sub.on_error, StoreError(k, f"listener failed: {k.value}"))

    def _check(self, op: str) -> None:
        f = self._failure
        if f is None or (f.ops is not None and op not in f.ops):
            return
        if f.remaining is not None:
            f.remaining -= 1
            if f.remaining <= 0:
                self._failure = None
        raise StoreError(f.kind, f"{op} rejected: {f.kind.value}")

    # ---- introspection ----

    def peek(self, path: str) -> Document | None:
        doc = self._docs.get(path.strip("/"))
        return copy.deepcopy(doc) if doc is not None else None

    def writes_to(self, path: str) -> list[tuple[str, str, Document | None]]:
        p = path.strip("/")
        return [w for w in self.write_log if w[1] == p]

    @property
    def live_subscriptions(self) -> int:
        return len(self._subs)

    def export_documents(self) -> dict[str, Document]:
        return copy.deepcopy(self._docs)

    def import_documents(self, docs: dict[str, Document]) -> None:
        """Seed the store (no pushes, no write log)."""
        for path, data in docs.items():
            if isinstance(path, str) and isinstance(data, dict):
                self._docs[path.strip("/")] = copy.deepcopy(data)

    # ---- RemoteStore ----

    async def get_doc(self, path: str) -> Document | None:
        self._check("get")
        self.read_count += 1
        return self.peek(path)

    async def set_doc(self, path: str, data: Document, *, merge: bool = False) -> None:
        self._check("set")
        p = path.strip("/")
        split_path(p)
        payload = copy.deepcopy(data)
        if merge and p in self._docs:
            self._docs[p].update(payload)
        else:
            self._docs[p] = payload
        self.write_log.append(("set", p, copy.deepcopy(data)))
        self._schedule_push(p)

    async def add_doc(self, collection: str, data: Document) -> str:
        self._check("add")
        doc_id = uuid.uuid4().hex[:20]
        p = f"{collection.strip('/')}/{doc_id}"
        self._docs[p] = copy.deepcopy(data)
        self.write_log.append(("add", p, copy.deepcopy(data)))
        self._schedule_push(p)
        return doc_id

    async def update_doc(self, path: str, fields: Document) -> None:
        self._check("update")
        p = path.strip("/")
        if p not in self._docs:
            raise StoreError(StoreErrorKind.OTHER, f"no document to update: {p}")
        self._docs[p].update(copy.deepcopy(fields))
        self.write_log.append(("update", p, copy.deepcopy(fields)))
        self._schedule_push(p)

    async def delete_doc(self, path: str) -> None:
        self._check("delete")
        p = path.strip("/")
        self._docs.pop(p, None)
        self.write_log.append(("delete", p, None))
        self._schedule_push(p)

    def subscribe_collection(
            self,
            collection: str,
            on_snapshot: Callable[[CollectionSnapshot], None],
            on_error: Callable[[BaseException], None],
    ) -> Unsubscribe:
        return self._subscribe(collection.strip("/"), True, on_snapshot, on_error)

    def subscribe_doc(
            self,
            path: str,
            on_snapshot: Callable[[Document | None], None],
            on_error: Callable[[BaseException], None],
    ) -> Unsubscribe:
        return self._subscribe(path.strip("/"), False, on_snapshot, on_error)

    # ---- internals ----

    @staticmethod
    def _loop() -> asyncio.AbstractEventLoop:
        return asyncio.get_running_loop()

    def _subscribe(
            self,
            target: str,
            is_collection: bool,
            on_snapshot: Callable[[Any], None],
            on_error: Callable[[BaseException], None],
    ) -> Unsubscribe:
        sid = next(self._ids)
        sub = _Subscription(sid, target, is_collection, on_snapshot, on_error)
        loop = self._loop()
        try:
            self._check("listen")
        except StoreError as e:
            sub.active = False
            loop.call_soon(on_error, e)
            return lambda: None

        self._subs[sid] = sub
        loop.call_soon(self._deliver, sid)

        def unsubscribe() -> None:
            s = self._subs.pop(sid, None)
            if s is not None:
                s.active = False

        return unsubscribe

    def _schedule_push(self, doc_path: str) -> None:
        parent, _ = split_path(doc_path)
        loop = self._loop()
        for sub in self._subs.values():
            if (sub.is_collection and sub.target == parent) or (not sub.is_collection and sub.target == doc_path):
                loop.call_soon(self._deliver, sub.sid)

    def _collection_docs(self, collection: str) -> dict[str, Document]:
        out: dict[str, Document] = {}
        for path, doc in self._docs.items():
            parent, doc_id = split_path(path)
            if parent == collection:
                out[doc_id] = copy.deepcopy(doc)
        return out

    def _deliver(self, sid: int) -> None:
        sub = self._subs.get(sid)
        if sub is None or not sub.active:
            return

        if not sub.is_collection:
            sub.on_snapshot(self.peek(sub.target))
            return

        current = self._collection_docs(sub.target)
        changes: list[DocChange] = []
        for doc_id, doc in current.items():
            if doc_id not in sub.last_seen:
                changes.append(DocChange(ChangeKind.ADDED, DocRecord(doc_id, doc)))
            elif sub.last_seen[doc_id] != doc:
                changes.append(DocChange(ChangeKind.MODIFIED, DocRecord(doc_id, doc)))
        for doc_id, doc in sub.last_seen.items():
            if doc_id not in current:
                changes.append(DocChange(ChangeKind.REMOVED, DocRecord(doc_id, doc)))
        sub.last_seen = current

        snapshot = CollectionSnapshot(
            docs=[DocRecord(doc_id, copy.deepcopy(doc)) for doc_id, doc in current.items()],
            changes=changes,
        )
        sub.on_snapshot(snapshot)
