# tests/test_deferred.py

from __future__ import annotations

import pytest

from taskmirror.core.errors import QuotaExceeded, StoreErrorKind
from taskmirror.storage.fallback_store import MemoryFallbackStore
from taskmirror.storage.memory_remote import InMemoryRemoteStore
from taskmirror.sync.deferred import DeferredOp, DeferredWrites

KEY = "pendingWrites_u1"


def test_updates_merge_per_document() -> None:
    store = MemoryFallbackStore()
    dw = DeferredWrites(store, KEY)

    dw.record_update("tasks/t1", {"description": "a"})
    dw.record_update("tasks/t1", {"description": "b", "completed": True})

    assert len(dw) == 1
    assert dw.get("tasks/t1").fields == {"description": "b", "completed": True}

    reloaded = DeferredWrites(store, KEY)
    reloaded.load()
    assert reloaded.get("tasks/t1").fields == {"description": "b", "completed": True}


def test_delete_of_offline_created_doc_cancels_it() -> None:
    store = MemoryFallbackStore()
    dw = DeferredWrites(store, KEY)

    dw.record_set("tasks/local-1", {"description": "x"}, created_offline=True)
    dw.record_update("tasks/local-1", {"order": 3})
    dw.record_delete("tasks/local-1")

    assert len(dw) == 0
    assert KEY not in store.data


def test_update_after_delete_is_ignored() -> None:
    dw = DeferredWrites(MemoryFallbackStore(), KEY)

    dw.record_delete("tasks/t1")
    dw.record_update("tasks/t1", {"completed": True})

    assert dw.get("tasks/t1").op == DeferredOp.DELETE


@pytest.mark.asyncio
async def test_replay_applies_writes_and_clears_journal() -> None:
    remote = InMemoryRemoteStore()
    remote.import_documents({"tasks/t1": {"description": "a"}, "tasks/t2": {"description": "gone"}})
    store = MemoryFallbackStore()
    dw = DeferredWrites(store, KEY)
    dw.record_update("tasks/t1", {"description": "b"})
    dw.record_delete("tasks/t2")
    dw.record_set("stats/userStats", {"totalFocusTime": 10})

    done = await dw.replay(remote)

    assert done == 3
    assert remote.peek("tasks/t1") == {"description": "b"}
    assert remote.peek("tasks/t2") is None
    assert remote.peek("stats/userStats") == {"totalFocusTime": 10}
    assert len(dw) == 0
    assert KEY not in store.data


@pytest.mark.asyncio
async def test_replay_stops_on_quota_and_keeps_the_rest() -> None:
    remote = InMemoryRemoteStore()
    remote.import_documents({"tasks/t1": {"description": "a"}})
    dw = DeferredWrites(MemoryFallbackStore(), KEY)
    dw.record_set("stats/userStats", {"totalFocusTime": 10})
    dw.record_update("tasks/t1", {"description": "b"})
    remote.fail_with(StoreErrorKind.QUOTA_EXCEEDED, ops={"update"})

    with pytest.raises(QuotaExceeded):
        await dw.replay(remote)

    assert remote.peek("stats/userStats") == {"totalFocusTime": 10}
    assert [w.path for w in dw.items()] == ["tasks/t1"]


@pytest.mark.asyncio
async def test_replay_drops_updates_the_remote_rejects() -> None:
    remote = InMemoryRemoteStore()
    dw = DeferredWrites(MemoryFallbackStore(), KEY)
    dw.record_update("tasks/deleted-elsewhere", {"completed": True})

    assert await dw.replay(remote) == 0
    assert len(dw) == 0
