"""Tests for the in-process store."""

import asyncio

import pytest

from umfab.errors import TransportError
from umfab.store import MemoryStore


@pytest.mark.asyncio
async def test_hash_operations(store):
    await store.hset("h", {"a": "1", "b": "2"})
    assert await store.hget("h", "a") == "1"
    assert await store.hgetall("h") == {"a": "1", "b": "2"}
    assert await store.hdel("h", "a", "missing") == 1
    assert await store.hgetall("h") == {"b": "2"}
    assert await store.hdel("h", "b") == 1
    assert not await store.exists("h")


@pytest.mark.asyncio
async def test_key_expires_after_ttl(store, clock):
    await store.set("k", "v", ttl=3)
    clock.advance(2.9)
    assert await store.get("k") == "v"
    clock.advance(0.2)
    assert await store.get("k") is None
    assert not await store.exists("k")


@pytest.mark.asyncio
async def test_expire_refreshes_deadline(store, clock):
    await store.set("k", "v", ttl=3)
    clock.advance(2)
    assert await store.expire("k", 3)
    clock.advance(2)
    assert await store.exists("k")
    assert not await store.expire("missing", 3)


@pytest.mark.asyncio
async def test_set_without_ttl_clears_expiry(store, clock):
    await store.set("k", "v", ttl=1)
    await store.set("k", "w")
    clock.advance(10)
    assert await store.get("k") == "w"


@pytest.mark.asyncio
async def test_batch_applies_all_commands(store):
    await (
        store.batch()
        .hset("h", {"a": "1"})
        .hsetnx("h", "a", "ignored")
        .hsetnx("h", "b", "2")
        .set("k", "v")
        .execute()
    )
    assert await store.hgetall("h") == {"a": "1", "b": "2"}
    assert await store.get("k") == "v"

    await store.batch().hdel("h", "a").delete("k").execute()
    assert await store.hgetall("h") == {"b": "2"}
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_batch_is_not_applied_until_execute(store):
    batch = store.batch().set("k", "v")
    assert await store.get("k") is None
    await batch.execute()
    assert await store.get("k") == "v"


@pytest.mark.asyncio
async def test_publish_fans_out_and_counts_receivers(store):
    first = await store.subscribe("c1", "c2")
    second = await store.subscribe("c1")

    assert await store.publish("c1", "hello") == 2
    assert await store.publish("c2", "world") == 1
    assert await store.publish("nobody", "x") == 0

    received = []
    iterator = first.__aiter__()
    received.append(await asyncio.wait_for(iterator.__anext__(), 1))
    received.append(await asyncio.wait_for(iterator.__anext__(), 1))
    assert received == [("c1", "hello"), ("c2", "world")]

    await second.close()
    assert await store.publish("c1", "again") == 1


@pytest.mark.asyncio
async def test_closing_subscription_ends_iteration(store):
    subscription = await store.subscribe("c")
    await store.publish("c", "one")
    await subscription.close()

    items = [item async for item in subscription]
    assert items == [("c", "one")]
    assert await store.publish("c", "two") == 0


@pytest.mark.asyncio
async def test_closed_store_raises_transport_error():
    store = MemoryStore()
    subscription = await store.subscribe("c")
    await store.close()

    with pytest.raises(TransportError):
        await store.get("k")
    with pytest.raises(TransportError):
        await store.batch().set("k", "v").execute()
    assert [item async for item in subscription] == []
