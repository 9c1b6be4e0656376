# src/taskmirror/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps the remote document store and the local fallback store swappable
and makes testing easier.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Protocol

Document = dict[str, Any]
Unsubscribe = Callable[[], None]
# Epoch milliseconds.
Clock = Callable[[], int]


class ChangeKind(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class DocRecord:
    id: str
    data: Any


@dataclass(frozen=True, slots=True)
class DocChange:
    kind: ChangeKind
    record: DocRecord


@dataclass(frozen=True, slots=True)
class CollectionSnapshot:
    """Full state of a collection after a push, plus what changed since the last one."""

    docs: list[DocRecord]
    changes: list[DocChange] = field(default_factory=list)


class RemoteStore(Protocol):
    """
    Key-value document collection with document-level subscriptions.

    Paths are slash-separated ("users/<uid>/tasks/<id>"). Every operation may
    raise StoreError carrying a classified kind.
    """

    def get_doc(self, path: str) -> Awaitable[Document | None]: ...

    def set_doc(self, path: str, data: Document, *, merge: bool = False) -> Awaitable[None]: ...

    def add_doc(self, collection: str, data: Document) -> Awaitable[str]: ...

    def update_doc(self, path: str, fields: Document) -> Awaitable[None]: ...

    def delete_doc(self, path: str) -> Awaitable[None]: ...

    def subscribe_collection(
            self,
            collection: str,
            on_snapshot: Callable[[CollectionSnapshot], None],
            on_error: Callable[[BaseException], None],
    ) -> Unsubscribe: ...

    def subscribe_doc(
            self,
            path: str,
            on_snapshot: Callable[[Document | None], None],
            on_error: Callable[[BaseException], None],
    ) -> Unsubscribe: ...


class FallbackStore(Protocol):
    """Durable local string store; keys are already scoped per identity."""

    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def remove(self, key: str) -> None: ...


class MirrorListener(Protocol):
    """Renderer-side port: receives read-only snapshots and failure reports."""

    def on_mirror_changed(self, snapshot: Any) -> None: ...
    def on_error(self, error: BaseException) -> None: ...
