# src/taskmirror/sync/deferred.py

"""
Writes redirected to the fallback store while the breaker is open.

One entry per document path, last write wins:
- updates merge their fields into whatever is already pending
- a delete supersedes pending fields (and cancels a document created offline)
- a set after a delete recreates the document

Replay happens after a successful canary write and only issues idempotent
overwrites, so replaying twice is harmless.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..core.errors import QuotaExceeded, classify_error
from ..core.ports import FallbackStore, RemoteStore

logger = logging.getLogger(__name__)


class DeferredOp(StrEnum):
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(slots=True)
class DeferredWrite:
    path: str
    op: DeferredOp
    fields: dict[str, Any] = field(default_factory=dict)
    created_offline: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "op": self.op.value,
            "fields": self.fields,
            "created_offline": self.created_offline,
        }

    @classmethod
    def from_json(cls, raw: Any) -> DeferredWrite | None:
        if not isinstance(raw, dict) or not raw.get("path"):
            return None
        try:
            op = DeferredOp(raw.get("op"))
        except ValueError:
            return None
        fields = raw.get("fields")
        return cls(
            path=str(raw["path"]),
            op=op,
            fields=dict(fields) if isinstance(fields, dict) else {},
            created_offline=bool(raw.get("created_offline", False)),
        )


class DeferredWrites:
    def __init__(self, store: FallbackStore, key: str) -> None:
        self._store = store
        self._key = key
        self._pending: dict[str, DeferredWrite] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, path: str) -> DeferredWrite | None:
        return self._pending.get(path)

    def items(self) -> list[DeferredWrite]:
        return list(self._pending.values())

    # ---- persistence ----

    def load(self) -> None:
        raw = self._store.get(self._key)
        self._pending = {}
        if not raw:
            return
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable deferred writes under %s", self._key)
            return
        for item in data if isinstance(data, list) else []:
            w = DeferredWrite.from_json(item)
            if w is not None:
                self._pending[w.path] = w
        logger.info("Loaded %d deferred writes", len(self._pending))

    def _save(self) -> None:
        if not self._pending:
            self._store.remove(self._key)
            return
        self._store.set(
            self._key,
            json.dumps([w.to_json() for w in self._pending.values()], ensure_ascii=False, default=str),
        )

    # ---- recording ----

    def record_update(self, path: str, fields: dict[str, Any]) -> None:
        cur = self._pending.get(path)
        if cur is None:
            self._pending[path] = DeferredWrite(path, DeferredOp.UPDATE, dict(fields))
        elif cur.op == DeferredOp.DELETE:
            logger.debug("Ignoring deferred update of deleted doc %s", path)
            return
        else:
            cur.fields.update(fields)
        self._save()

    def record_set(self, path: str, data: dict[str, Any], *, created_offline: bool = False) -> None:
        cur = self._pending.get(path)
        if cur is None or cur.op == DeferredOp.DELETE:
            self._pending[path] = DeferredWrite(path, DeferredOp.SET, dict(data), created_offline)
        else:
            cur.op = DeferredOp.SET
            cur.fields.update(data)
            cur.created_offline = cur.created_offline or created_offline
        self._save()

    def record_delete(self, path: str) -> None:
        cur = self._pending.get(path)
        if cur is not None and cur.created_offline:
            # Never reached the remote store; nothing to delete there.
            del self._pending[path]
        else:
            self._pending[path] = DeferredWrite(path, DeferredOp.DELETE)
        self._save()

    def clear(self) -> None:
        self._pending = {}
        self._save()

    # ---- replay ----

    async def replay(self, remote: RemoteStore) -> int:
        """
        Push pending writes to the remote store in recording order.

        Stops and raises QuotaExceeded if the store is still exhausted (the
        remaining entries stay pending). Other per-document failures are
        logged and the entry dropped: the remote copy wins.
        """
        done = 0
        for w in list(self._pending.values()):
            try:
                if w.op == DeferredOp.DELETE:
                    await remote.delete_doc(w.path)
                elif w.op == DeferredOp.SET:
                    await remote.set_doc(w.path, w.fields, merge=True)
                else:
                    await remote.update_doc(w.path, w.fields)
            except Exception as e:
                err = classify_error(e)
                if isinstance(err, QuotaExceeded):
                    self._save()
                    raise err
                logger.warning("Dropping deferred %s of %s: %s", w.op.value, w.path, err)
            else:
                done += 1
            self._pending.pop(w.path, None)
        self._save()
        if done:
            logger.info("Replayed %d deferred writes", done)
        return done
