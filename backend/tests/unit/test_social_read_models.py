import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from roll.domain.social.models import FRIEND_REQUESTS, Decision
from roll.domain.social.read_models import LiveView, ReadModel


@pytest.mark.asyncio
async def test_read_model_pushes_in_order_and_unsubscribes():
    model = ReadModel("numbers", [])
    seen = []

    async def _collect(value):
        seen.append(value)

    unsubscribe = model.subscribe(_collect)
    await model.publish([1])
    await model.publish([1, 2])
    unsubscribe()
    await model.publish([1, 2, 3])

    assert seen == [[1], [1, 2]]
    assert model.value == [1, 2, 3]
    assert model.version == 3


@pytest.mark.asyncio
async def test_read_model_survives_failing_subscriber():
    model = ReadModel("flaky", 0)
    seen = []

    async def _boom(value):
        raise RuntimeError("subscriber bug")

    async def _collect(value):
        seen.append(value)

    model.subscribe(_boom)
    model.subscribe(_collect)
    await model.publish(7)
    assert seen == [7]


@pytest.mark.asyncio
async def test_read_model_updates_iterator():
    model = ReadModel("stream", "a")
    await model.publish("b")
    updates = model.updates()
    assert await updates.__anext__() == "b"
    next_value = asyncio.ensure_future(updates.__anext__())
    await asyncio.sleep(0)
    await model.publish("c")
    assert await next_value == "c"
    await updates.aclose()


@pytest.mark.asyncio
async def test_candidates_callback_receives_filtered_rows(store, manager, trio):
    alice, bob, carol = trio
    deliveries = []

    async def _on_rows(rows):
        deliveries.append(sorted(row.id for row in rows))

    view = await manager.list_candidates(alice, _on_rows)
    await store.drain()
    assert deliveries[-1] == [bob, carol]
    assert view.active

    await manager.block(carol, alice)
    await store.drain()
    assert deliveries[-1] == [bob]

    view.cancel()
    assert not view.active
    assert store.active_watches == 0


@pytest.mark.asyncio
async def test_candidates_search_is_case_insensitive(store, manager, seed_user):
    await seed_user("viewer", "Viewer")
    await seed_user("u1", "Sam Rivers")
    await seed_user("u2", "Samantha Lee")
    await seed_user("u3", "Jordan")

    view = await manager.list_candidates("viewer", search_text="SAM")
    await store.drain()
    assert {row.id for row in view.value} == {"u1", "u2"}

    await view.set_search_text("  lee ")
    assert {row.id for row in view.value} == {"u2"}
    await view.set_search_text(None)
    assert {row.id for row in view.value} == {"u1", "u2", "u3"}
    view.cancel()


@pytest.mark.asyncio
async def test_candidates_drop_new_friend_after_accept(store, manager, trio):
    alice, bob, carol = trio
    view = await manager.list_candidates(alice)
    request = await manager.send_friend_request(alice, bob)
    await manager.respond_to_request(request.id, Decision.ACCEPT, alice, bob)
    await store.drain()
    assert {row.id for row in view.value} == {carol}
    view.cancel()


@pytest.mark.asyncio
async def test_friends_view_hydrates_and_drops_missing(store, manager, seed_user):
    await seed_user("viewer", friends=["f1", "f2", "gone"])
    await seed_user("f1", "Friend One", friends=["viewer"])
    await seed_user("f2", "Friend Two", friends=["viewer"])

    view = await manager.friends("viewer")
    await store.drain()
    assert [(row.id, row.display_name) for row in view.value] == [
        ("f1", "Friend One"),
        ("f2", "Friend Two"),
    ]

    await manager.unfriend("viewer", "f1")
    await store.drain()
    assert [row.id for row in view.value] == ["f2"]
    view.cancel()


@pytest.mark.asyncio
async def test_incoming_requests_newest_first_with_sender_details(store, manager, trio):
    alice, bob, carol = trio
    now = datetime.now(timezone.utc)
    await store.add(FRIEND_REQUESTS, {"from": alice, "to": carol, "status": "pending", "timestamp": now - timedelta(minutes=5)})
    await store.add(FRIEND_REQUESTS, {"from": bob, "to": carol, "status": "pending", "timestamp": now})
    await store.add(FRIEND_REQUESTS, {"from": bob, "to": alice, "status": "pending", "timestamp": now})

    view = await manager.incoming_requests(carol)
    await store.drain()
    assert [(row.from_user_id, row.display_name) for row in view.value] == [
        (bob, "Bob"),
        (alice, "Alice"),
    ]

    first = view.value[0]
    await manager.respond_to_request(first.id, Decision.DECLINE, bob, carol)
    await store.drain()
    assert [row.from_user_id for row in view.value] == [alice]
    view.cancel()


@pytest.mark.asyncio
async def test_manager_close_cancels_candidate_views(store, manager, trio):
    alice, _, _ = trio
    await manager.list_candidates(alice)
    await store.drain()
    assert store.active_watches == 3
    manager.close()
    assert store.active_watches == 0


@pytest.mark.asyncio
async def test_manager_close_cancels_every_view(store, manager, trio):
    alice, bob, _ = trio
    candidates = await manager.list_candidates(alice)
    friends = await manager.friends(alice)
    incoming = await manager.incoming_requests(bob)
    await store.drain()
    assert store.active_watches == 5

    manager.close()
    assert store.active_watches == 0
    assert not any(view.active for view in (candidates, friends, incoming))


@pytest.mark.asyncio
async def test_cancelled_view_is_forgotten_by_manager(store, manager, trio):
    alice, _, _ = trio
    friends = await manager.friends(alice)
    await store.drain()
    friends.cancel()
    assert friends not in manager._views
    manager.close()
    assert store.active_watches == 0


def test_live_view_requires_watches(store):
    with pytest.raises(TypeError):
        LiveView(store, "viewer", "bare", [])
