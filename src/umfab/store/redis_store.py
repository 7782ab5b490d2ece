"""Redis implementation of the store capabilities."""

import contextlib
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import TransportError
from .base import Batch, Store, StoreSubscription

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _transport_errors():
    try:
        yield
    except RedisError as exc:
        raise TransportError(str(exc)) from exc


def _ttl_ms(ttl: Optional[float]) -> Optional[int]:
    return None if ttl is None else max(1, int(ttl * 1000))


class RedisBatch(Batch):
    """Commands queued on a ``MULTI``/``EXEC`` pipeline."""

    def __init__(self, client: redis.Redis):
        self._pipe = client.pipeline(transaction=True)

    def hset(self, key, mapping):
        self._pipe.hset(key, mapping=mapping)
        return self

    def hsetnx(self, key, field, value):
        self._pipe.hsetnx(key, field, value)
        return self

    def hdel(self, key, *fields):
        self._pipe.hdel(key, *fields)
        return self

    def set(self, key, value, ttl=None):
        self._pipe.set(key, value, px=_ttl_ms(ttl))
        return self

    def delete(self, *keys):
        self._pipe.delete(*keys)
        return self

    async def execute(self) -> None:
        with _transport_errors():
            await self._pipe.execute()


class RedisSubscription(StoreSubscription):

    def __init__(self, pubsub):
        self._pubsub = pubsub
        self._closed = False

    async def __aiter__(self):
        with _transport_errors():
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                yield message["channel"], message["data"]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with _transport_errors():
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()


class RedisStore(Store):
    """Store backed by a single ``redis.asyncio`` client.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_config(cls, config) -> 'RedisStore':
        """Create a store from a :class:`~umfab.config.RedisConfig`."""
        client = redis.Redis(
            host=config.url,
            port=config.port,
            db=config.db,
            password=config.password,
            decode_responses=True,
        )
        logger.debug("Redis store for %s:%s db=%s", config.url, config.port, config.db)
        return cls(client)

    def batch(self) -> RedisBatch:
        return RedisBatch(self._client)

    async def hset(self, key, mapping):
        with _transport_errors():
            await self._client.hset(key, mapping=mapping)

    async def hget(self, key, field):
        with _transport_errors():
            return await self._client.hget(key, field)

    async def hgetall(self, key):
        with _transport_errors():
            return await self._client.hgetall(key)

    async def hdel(self, key, *fields):
        with _transport_errors():
            return await self._client.hdel(key, *fields)

    async def set(self, key, value, ttl=None):
        with _transport_errors():
            await self._client.set(key, value, px=_ttl_ms(ttl))

    async def get(self, key):
        with _transport_errors():
            return await self._client.get(key)

    async def exists(self, key):
        with _transport_errors():
            return bool(await self._client.exists(key))

    async def expire(self, key, ttl):
        with _transport_errors():
            return bool(await self._client.pexpire(key, _ttl_ms(ttl)))

    async def delete(self, *keys):
        with _transport_errors():
            return await self._client.delete(*keys)

    async def publish(self, channel, data):
        with _transport_errors():
            return await self._client.publish(channel, data)

    async def subscribe(self, *channels):
        pubsub = self._client.pubsub()
        with _transport_errors():
            await pubsub.subscribe(*channels)
        return RedisSubscription(pubsub)

    async def close(self):
        with _transport_errors():
            await self._client.aclose()
