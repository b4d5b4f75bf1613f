from datetime import datetime

import pytest

from roll.store.base import SERVER_TIMESTAMP, array_remove, array_union, where
from roll.store.exceptions import DocumentNotFound, TransactionAborted
from roll.store.memory import MemoryDocumentStore


@pytest.mark.asyncio
async def test_set_get_update_delete(store):
    await store.set("users", "u1", {"displayName": "Ada", "friends": []})
    snapshot = await store.get("users", "u1")
    assert snapshot.exists
    assert snapshot.get("displayName") == "Ada"

    await store.update("users", "u1", {"friends": array_union("u2", "u3", "u2")})
    await store.update("users", "u1", {"friends": array_remove("u3")})
    assert (await store.get("users", "u1")).get("friends") == ["u2"]

    await store.delete("users", "u1")
    assert not (await store.get("users", "u1")).exists


@pytest.mark.asyncio
async def test_update_missing_document_fails(store):
    with pytest.raises(DocumentNotFound):
        await store.update("users", "ghost", {"displayName": "x"})


@pytest.mark.asyncio
async def test_server_timestamp_and_merge(store):
    doc_id = await store.add("posts", {"poster": "u1", "timestamp": SERVER_TIMESTAMP})
    stamped = (await store.get("posts", doc_id)).get("timestamp")
    assert isinstance(stamped, datetime)
    assert stamped.tzinfo is not None

    await store.set("posts", doc_id, {"picture": "http://p"}, merge=True)
    merged = (await store.get("posts", doc_id)).to_dict()
    assert merged == {"poster": "u1", "timestamp": stamped, "picture": "http://p"}


@pytest.mark.asyncio
async def test_query_filters_order_and_limit(store):
    await store.set("posts", "a", {"poster": "u1", "n": 3, "tags": ["x"]})
    await store.set("posts", "b", {"poster": "u2", "n": 1, "tags": ["y"]})
    await store.set("posts", "c", {"poster": "u1", "n": 2, "tags": ["x", "y"]})
    await store.set("posts", "d", {"poster": "u1"})

    rows = await store.query("posts", [where("poster", "==", "u1")], order_by="n")
    assert [row.id for row in rows] == ["c", "a"]

    rows = await store.query("posts", [where("tags", "array-contains", "y")], order_by="n", descending=True)
    assert [row.id for row in rows] == ["c", "b"]

    rows = await store.query("posts", [where("n", ">=", 2)], limit=1)
    assert len(rows) == 1

    rows = await store.query("posts", [where("poster", "in", ["u2"])])
    assert [row.id for row in rows] == ["b"]


def test_unknown_operator_rejected():
    with pytest.raises(ValueError):
        where("n", "~", 1)


@pytest.mark.asyncio
async def test_batch_is_all_or_nothing(store):
    await store.set("users", "u1", {"friends": []})
    batch = store.batch()
    batch.update("users", "u1", {"friends": array_union("u2")})
    batch.update("users", "missing", {"friends": array_union("u1")})
    with pytest.raises(DocumentNotFound):
        await batch.commit()
    assert (await store.get("users", "u1")).get("friends") == []


@pytest.mark.asyncio
async def test_transaction_retries_after_concurrent_write(store):
    await store.set("counters", "c", {"value": 0})
    attempts = []

    async def _increment(txn):
        snapshot = await txn.get("counters", "c")
        attempts.append(snapshot.get("value"))
        if len(attempts) == 1:
            # Another writer lands between our read and our commit
            await store.update("counters", "c", {"value": 10})
        txn.update("counters", "c", {"value": snapshot.get("value") + 1})
        return snapshot.get("value") + 1

    result = await store.run_transaction(_increment)
    assert attempts == [0, 10]
    assert result == 11
    assert (await store.get("counters", "c")).get("value") == 11


@pytest.mark.asyncio
async def test_transaction_gives_up_after_max_attempts(store):
    await store.set("counters", "c", {"value": 0})

    async def _always_conflicts(txn):
        snapshot = await txn.get("counters", "c")
        await store.update("counters", "c", {"value": snapshot.get("value") + 100})
        txn.update("counters", "c", {"value": -1})

    with pytest.raises(TransactionAborted):
        await store.run_transaction(_always_conflicts, max_attempts=3)
    assert (await store.get("counters", "c")).get("value") == 300


@pytest.mark.asyncio
async def test_transaction_error_discards_writes(store):
    await store.set("users", "u1", {"friends": []})

    async def _fails(txn):
        await txn.get("users", "u1")
        txn.update("users", "u1", {"friends": array_union("u2")})
        raise RuntimeError("precondition")

    with pytest.raises(RuntimeError):
        await store.run_transaction(_fails)
    assert (await store.get("users", "u1")).get("friends") == []


@pytest.mark.asyncio
async def test_document_watch_delivers_initial_and_changes(store):
    await store.set("users", "u1", {"displayName": "Ada"})
    seen = []

    async def _on_change(snapshot):
        seen.append(snapshot.get("displayName") if snapshot.exists else None)

    watch = store.watch_document("users", "u1", _on_change)
    await store.drain()
    await store.update("users", "u1", {"displayName": "Grace"})
    await store.drain()
    await store.delete("users", "u1")
    await store.drain()
    watch.cancel()
    await store.set("users", "u1", {"displayName": "Late"})
    await store.drain()

    assert seen == ["Ada", "Grace", None]


@pytest.mark.asyncio
async def test_query_watch_coalesces_bursts(store):
    seen = []

    async def _on_rows(rows):
        seen.append(sorted(row.id for row in rows))

    watch = store.watch_query("users", [where("active", "==", True)], _on_rows)
    for idx in range(5):
        await store.set("users", f"u{idx}", {"active": True})
    await store.drain()
    watch.cancel()

    assert seen[-1] == ["u0", "u1", "u2", "u3", "u4"]
    assert len(seen) <= 6


@pytest.mark.asyncio
async def test_watch_callback_error_keeps_watch_alive(store):
    calls = []

    async def _flaky(snapshot):
        calls.append(snapshot.exists)
        if len(calls) == 1:
            raise RuntimeError("render failed")

    watch = store.watch_document("users", "u1", _flaky)
    await store.drain()
    assert isinstance(watch.last_error, RuntimeError)
    await store.set("users", "u1", {"displayName": "Ada"})
    await store.drain()
    assert calls == [False, True]
    assert watch.last_error is None
    watch.cancel()


@pytest.mark.asyncio
async def test_close_cancels_all_watches():
    backend = MemoryDocumentStore()

    async def _noop(_):
        return None

    backend.watch_document("users", "u1", _noop)
    backend.watch_query("users", [], _noop)
    assert backend.active_watches == 2
    await backend.close()
    assert backend.active_watches == 0
