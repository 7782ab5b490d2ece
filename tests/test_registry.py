"""Tests for service registration, presence and discovery."""

import asyncio
import json
import os
from unittest.mock import patch

import fakeredis.aioredis
import pytest

from umfab.errors import RegistrationError, ServiceNotFoundError
from umfab.registry import (
    PresenceRecord,
    RegistryKeys,
    ServiceDescriptor,
    ServiceDiscovery,
    ServiceEntry,
    ServiceRegistry,
)
from umfab.store import RedisStore


def _descriptor(**overrides) -> ServiceDescriptor:
    values = dict(
        service_name="test-service",
        service_type="test",
        host="127.0.0.1",
        port=5000,
        description="Raison d'etre",
    )
    values.update(overrides)
    return ServiceDescriptor(**values)


@pytest.fixture
def registry(store) -> ServiceRegistry:
    return ServiceRegistry(store, namespace="test", presence_ttl=3)


@pytest.fixture
def discovery(store) -> ServiceDiscovery:
    return ServiceDiscovery(store, namespace="test")


def test_key_layout():
    keys = RegistryKeys("hydra")
    assert keys.nodes == "hydra:service:nodes"
    assert keys.service("orders") == "hydra:service:orders:service"
    assert keys.presence("orders", "abc") == "hydra:service:orders:abc:presence"
    assert keys.service_channel("orders") == "hydra:service:orders:channel"
    assert keys.instance_channel("abc") == "hydra:instance:abc:channel"


def test_presence_record_round_trip():
    record = PresenceRecord(
        instance_id="abc", service_name="orders", host="h", port=1,
        process_id=42, updated_on="2026-01-01T00:00:00.000Z", uptime=1.5,
    )
    assert PresenceRecord.from_json(record.to_json()) == record


@pytest.mark.asyncio
async def test_find_before_register_fails(discovery):
    with pytest.raises(ServiceNotFoundError) as excinfo:
        await discovery.find_service("no-such-service")
    assert str(excinfo.value) == "Can't find no-such-service service"


@pytest.mark.asyncio
async def test_register_then_find(registry, discovery):
    descriptor = _descriptor()
    assert await registry.register(descriptor) == descriptor

    entry = await discovery.find_service("test-service")
    assert entry == ServiceEntry(
        service_name="test-service",
        service_type="test",
        description="Raison d'etre",
        version="0.0.0",
    )


@pytest.mark.asyncio
async def test_register_writes_store_layout(registry, store):
    descriptor = _descriptor()
    await registry.register(descriptor)

    keys = registry.keys
    assert (await store.hgetall(keys.service("test-service")))["service_type"] == "test"
    raw = await store.hget(keys.nodes, descriptor.instance_id)
    assert json.loads(raw)["process_id"] == os.getpid()
    assert await store.get(keys.presence("test-service", descriptor.instance_id)) == descriptor.instance_id


@pytest.mark.asyncio
async def test_presence_shape(registry, discovery):
    await registry.register(_descriptor())

    presence = await discovery.get_service_presence("test-service")
    assert len(presence) == 1
    record = presence[0]
    assert record.instance_id == _descriptor().instance_id
    assert record.updated_on.endswith("Z")
    assert record.process_id > 0


@pytest.mark.asyncio
async def test_reregistration_is_idempotent(registry, discovery):
    await registry.register(_descriptor())
    await registry.register(_descriptor())

    presence = await discovery.get_service_presence("test-service")
    assert len(presence) == 1


@pytest.mark.asyncio
async def test_conflicting_registration_is_rejected(registry, store):
    await registry.register(_descriptor())

    with pytest.raises(RegistrationError, match="service_type"):
        await registry.register(_descriptor(service_type="other", port=5001))
    entry = await store.hgetall(registry.keys.service("test-service"))
    assert entry["service_type"] == "test"


@pytest.mark.asyncio
async def test_second_instance_keeps_service_entry(registry, discovery):
    await registry.register(_descriptor(version="1.0.0"))
    await registry.register(_descriptor(port=5001, version="1.1.0"))

    entry = await discovery.find_service("test-service")
    assert entry.version == "1.0.0"
    assert len(await discovery.get_service_presence("test-service")) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"service_name": ""}, "service_name"),
        ({"service_type": ""}, "service_type"),
        ({"host": ""}, "host"),
        ({"port": 0}, "port"),
        ({"port": "5000"}, "port"),
    ],
)
async def test_incomplete_descriptor_is_rejected(registry, overrides, field):
    with pytest.raises(RegistrationError, match=field):
        await registry.register(_descriptor(**overrides))


@pytest.mark.asyncio
async def test_register_none_is_rejected(registry):
    with pytest.raises(RegistrationError):
        await registry.register(None)


@pytest.mark.asyncio
async def test_get_services_lists_live_services(registry, discovery):
    await registry.register(_descriptor())
    await registry.register(_descriptor(service_name="billing", service_type="api", port=6000))

    services = await discovery.get_services()
    assert [s.service_name for s in services] == ["billing", "test-service"]
    assert await discovery.count_instances() == {"billing": 1, "test-service": 1}


@pytest.mark.asyncio
async def test_deregister_removes_presence(registry, discovery, store):
    descriptor = _descriptor()
    await registry.register(descriptor)

    assert await registry.deregister(descriptor.instance_id)
    assert await discovery.get_service_presence("test-service") == []
    with pytest.raises(ServiceNotFoundError):
        await discovery.find_service("test-service")
    assert await discovery.get_services() == []
    # the service entry is kept as "known but down"
    assert await store.hgetall(registry.keys.service("test-service"))


@pytest.mark.asyncio
async def test_deregister_unknown_instance(registry):
    assert not await registry.deregister("0" * 32)


@pytest.mark.asyncio
async def test_expired_presence_is_not_live(registry, discovery, clock):
    await registry.register(_descriptor())
    clock.advance(3.5)

    assert await discovery.get_service_presence("test-service") == []
    with pytest.raises(ServiceNotFoundError):
        await discovery.find_service("test-service")


@pytest.mark.asyncio
async def test_refresh_keeps_presence_alive(registry, discovery, clock):
    descriptor = _descriptor()
    await registry.register(descriptor)
    for _ in range(3):
        clock.advance(2)
        await registry.refresh_presence(descriptor)

    assert len(await discovery.get_service_presence("test-service")) == 1


@pytest.mark.asyncio
async def test_prune_stale_drops_expired_records(registry, store, clock):
    dead = _descriptor(port=5001)
    await registry.register(dead)
    clock.advance(5)
    live = _descriptor()
    await registry.register(live)

    nodes = await store.hgetall(registry.keys.nodes)
    assert list(nodes) == [live.instance_id]
    assert await registry.prune_stale() == []


@pytest.mark.asyncio
async def test_malformed_presence_record_is_ignored(registry, discovery, store):
    await registry.register(_descriptor())
    await store.hset(registry.keys.nodes, {"broken": "not json"})

    presence = await discovery.get_service_presence("test-service")
    assert [r.instance_id for r in presence] == [_descriptor().instance_id]


@pytest.mark.asyncio
async def test_entry_written_after_conflict_check_rolls_back(registry, discovery, store):
    await registry.register(_descriptor())
    real_hgetall = store.hgetall
    calls = []

    async def hgetall_missing_first_read(key):
        calls.append(key)
        if len(calls) == 1:
            return {}
        return await real_hgetall(key)

    other = _descriptor(service_type="other", port=5001)
    with patch.object(store, "hgetall", hgetall_missing_first_read):
        with pytest.raises(RegistrationError, match="service_type"):
            await registry.register(other)

    assert await store.hget(registry.keys.nodes, other.instance_id) is None
    assert not await store.exists(registry.keys.presence("test-service", other.instance_id))
    presence = await discovery.get_service_presence("test-service")
    assert [r.instance_id for r in presence] == [_descriptor().instance_id]


@pytest.mark.asyncio
async def test_concurrent_conflicting_registrations_over_redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    redis_store = RedisStore(client)
    registry = ServiceRegistry(redis_store, namespace="test")
    a = _descriptor(service_type="type-a", description="A")
    b = _descriptor(service_type="type-b", description="B", port=5001)

    results = await asyncio.gather(registry.register(a), registry.register(b), return_exceptions=True)

    failed = [r for r in results if isinstance(r, RegistrationError)]
    assert len(failed) == 1
    winner = a if results[0] == a else b
    entry = await redis_store.hgetall(registry.keys.service("test-service"))
    assert entry["service_type"] == winner.service_type
    nodes = await redis_store.hgetall(registry.keys.nodes)
    assert list(nodes) == [winner.instance_id]
    await client.aclose()
