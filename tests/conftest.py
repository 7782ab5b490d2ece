"""Shared fixtures for umfab tests."""

from __future__ import annotations

import pytest

from umfab.config import FabricConfig, RedisConfig
from umfab.fabric import Fabric
from umfab.store import MemoryStore


class FakeClock:
    """Manually advanced clock for key expiry."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides) -> FabricConfig:
    values = dict(
        service_name="test-service",
        service_description="Raison d'etre",
        service_type="test",
        service_ip="127.0.0.1",
        service_port=5000,
        redis=RedisConfig(url="127.0.0.1", port=6379, db=0),
    )
    values.update(overrides)
    return FabricConfig(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def valid_config() -> FabricConfig:
    return make_config()


@pytest.fixture
async def fabric_factory(store):
    """Create initialised fabrics sharing one store; all are shut down afterwards."""
    created: list[Fabric] = []

    async def factory(**overrides) -> Fabric:
        fabric = Fabric(make_config(**overrides), store=store)
        await fabric.init()
        created.append(fabric)
        return fabric

    yield factory

    for fabric in created:
        await fabric.shutdown()
