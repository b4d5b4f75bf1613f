import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from roll.store.base import SERVER_TIMESTAMP, array_union, where
from roll.store.exceptions import DocumentNotFound
from roll.store.redis_store import RedisDocumentStore, decode_document, encode_document


@pytest_asyncio.fixture
async def redis_store(fake_redis):
    backend = RedisDocumentStore(fake_redis, prefix="t")
    try:
        yield backend
    finally:
        await backend.close()


def test_codec_preserves_nested_timestamps():
    taken = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    data = {"cameraRoll": [{"URL": "http://x", "timestamp": taken}], "n": 1}
    assert decode_document(encode_document(data)) == data
    assert decode_document(None) is None


@pytest.mark.asyncio
async def test_crud_and_key_layout(redis_store, fake_redis):
    await redis_store.set("users", "u1", {"displayName": "Ada", "friends": []})
    assert await fake_redis.exists("t:doc:users:u1")
    assert await fake_redis.zrange("t:idx:users", 0, -1) == ["u1"]

    await redis_store.update("users", "u1", {"friends": array_union("u2")})
    assert (await redis_store.get("users", "u1")).get("friends") == ["u2"]

    await redis_store.delete("users", "u1")
    assert not (await redis_store.get("users", "u1")).exists
    assert await fake_redis.zrange("t:idx:users", 0, -1) == []


@pytest.mark.asyncio
async def test_update_missing_document_fails(redis_store):
    with pytest.raises(DocumentNotFound):
        await redis_store.update("users", "ghost", {"displayName": "x"})


@pytest.mark.asyncio
async def test_query_with_filters_and_order(redis_store):
    doc_id = await redis_store.add("posts", {"poster": "u1", "timestamp": SERVER_TIMESTAMP})
    await redis_store.set("posts", "old", {"poster": "u1", "timestamp": datetime(2020, 1, 1, tzinfo=timezone.utc)})
    await redis_store.set("posts", "other", {"poster": "u2", "timestamp": datetime(2021, 1, 1, tzinfo=timezone.utc)})

    rows = await redis_store.query("posts", [where("poster", "==", "u1")], order_by="timestamp", descending=True)
    assert [row.id for row in rows] == [doc_id, "old"]
    assert isinstance(rows[0].get("timestamp"), datetime)


@pytest.mark.asyncio
async def test_transaction_applies_all_writes(redis_store):
    await redis_store.set("users", "a", {"friends": []})
    await redis_store.set("users", "b", {"friends": []})

    async def _befriend(txn):
        await txn.get("users", "a")
        await txn.get("users", "b")
        txn.update("users", "a", {"friends": array_union("b")})
        txn.update("users", "b", {"friends": array_union("a")})
        return True

    assert await redis_store.run_transaction(_befriend) is True
    assert (await redis_store.get("users", "a")).get("friends") == ["b"]
    assert (await redis_store.get("users", "b")).get("friends") == ["a"]


@pytest.mark.asyncio
async def test_transaction_retries_on_watch_conflict(redis_store):
    await redis_store.set("counters", "c", {"value": 0})
    attempts = []

    async def _increment(txn):
        snapshot = await txn.get("counters", "c")
        attempts.append(snapshot.get("value"))
        if len(attempts) == 1:
            await redis_store.update("counters", "c", {"value": 10})
        txn.update("counters", "c", {"value": snapshot.get("value") + 1})

    await redis_store.run_transaction(_increment)
    assert attempts == [0, 10]
    assert (await redis_store.get("counters", "c")).get("value") == 11


async def _settle(backend, condition):
    # Pub/sub delivery is asynchronous, so poll until the watches catch up
    for _ in range(100):
        await backend.drain()
        if condition():
            return
        await asyncio.sleep(0.02)
    raise AssertionError("change feed did not deliver in time")


@pytest.mark.asyncio
async def test_change_feed_redelivers_after_commit_and_stops_on_close(redis_store):
    await redis_store.set("users", "u1", {"displayName": "Ada", "active": True})
    names = []
    active_ids = []

    async def _on_user(snapshot):
        names.append(snapshot.get("displayName") if snapshot.exists else None)

    async def _on_active(rows):
        active_ids.append(sorted(row.id for row in rows))

    redis_store.watch_document("users", "u1", _on_user)
    redis_store.watch_query("users", [where("active", "==", True)], _on_active)
    await _settle(redis_store, lambda: names and active_ids)
    assert names[-1] == "Ada"
    assert active_ids[-1] == ["u1"]
    assert redis_store.active_watches == 2

    await redis_store.update("users", "u1", {"displayName": "Grace"})
    await redis_store.set("users", "u2", {"displayName": "Linus", "active": True})
    await _settle(redis_store, lambda: names[-1] == "Grace" and active_ids[-1] == ["u1", "u2"])

    listener = redis_store._listener
    assert listener is not None and not listener.done()
    await redis_store.close()
    assert redis_store.active_watches == 0
    assert listener.done()
    assert redis_store._listener is None

    delivered = len(names)
    await redis_store.update("users", "u1", {"displayName": "Late"})
    await asyncio.sleep(0.05)
    assert len(names) == delivered
