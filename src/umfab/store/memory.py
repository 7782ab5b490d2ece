"""In-process store with the same capabilities as the Redis adapter.

Every operation completes without yielding to the event loop, so a batch is
applied atomically with respect to other tasks. Several fabrics sharing one
``MemoryStore`` behave like instances sharing one Redis server.
"""

import asyncio
import time
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

from ..errors import TransportError
from .base import Batch, Store, StoreSubscription

_CLOSED = object()


class MemoryBatch(Batch):

    def __init__(self, store: 'MemoryStore'):
        self._store = store
        self._commands: List[Callable[[], object]] = []

    def hset(self, key, mapping):
        self._commands.append(lambda: self._store._hset(key, mapping))
        return self

    def hsetnx(self, key, field, value):
        self._commands.append(lambda: self._store._hsetnx(key, field, value))
        return self

    def hdel(self, key, *fields):
        self._commands.append(lambda: self._store._hdel(key, fields))
        return self

    def set(self, key, value, ttl=None):
        self._commands.append(lambda: self._store._set(key, value, ttl))
        return self

    def delete(self, *keys):
        self._commands.append(lambda: self._store._delete(keys))
        return self

    async def execute(self) -> None:
        self._store._check_open()
        for command in self._commands:
            command()
        self._commands.clear()


class MemorySubscription(StoreSubscription):

    def __init__(self, store: 'MemoryStore', channels: Tuple[str, ...]):
        self._store = store
        self.channels = channels
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _deliver(self, channel: str, data: str) -> None:
        self._queue.put_nowait((channel, data))

    async def __aiter__(self) -> AsyncIterator[Tuple[str, str]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)


class MemoryStore(Store):
    """Dict-backed store with key expiry and channel fan-out.

    *clock* returns seconds and drives key expiry; tests can pass a fake one.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._strings: Dict[str, str] = {}
        self._deadlines: Dict[str, float] = {}
        self._channels: Dict[str, Set[MemorySubscription]] = {}
        self._closed = False

    # -- internal, synchronous primitives ---------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise TransportError("store is closed")

    def _purge(self, key: str) -> None:
        deadline = self._deadlines.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._deadlines.pop(key, None)
            self._strings.pop(key, None)
            self._hashes.pop(key, None)

    def _hset(self, key, mapping):
        self._purge(key)
        self._hashes.setdefault(key, {}).update(mapping)

    def _hsetnx(self, key, field, value):
        self._purge(key)
        fields = self._hashes.setdefault(key, {})
        if field in fields:
            return False
        fields[field] = value
        return True

    def _hdel(self, key, fields):
        self._purge(key)
        hash_ = self._hashes.get(key)
        if hash_ is None:
            return 0
        removed = 0
        for field in fields:
            if hash_.pop(field, None) is not None:
                removed += 1
        if not hash_:
            del self._hashes[key]
        return removed

    def _set(self, key, value, ttl):
        self._strings[key] = value
        if ttl is None:
            self._deadlines.pop(key, None)
        else:
            self._deadlines[key] = self._clock() + ttl

    def _delete(self, keys):
        removed = 0
        for key in keys:
            self._purge(key)
            found = self._strings.pop(key, None) is not None
            found = (self._hashes.pop(key, None) is not None) or found
            self._deadlines.pop(key, None)
            removed += found
        return removed

    def _unsubscribe(self, subscription: MemorySubscription) -> None:
        for channel in subscription.channels:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._channels[channel]

    # -- Store API ---------------------------------------------------------

    def batch(self) -> MemoryBatch:
        return MemoryBatch(self)

    async def hset(self, key, mapping):
        self._check_open()
        self._hset(key, mapping)

    async def hget(self, key, field):
        self._check_open()
        self._purge(key)
        return self._hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        self._check_open()
        self._purge(key)
        return dict(self._hashes.get(key, {}))

    async def hdel(self, key, *fields):
        self._check_open()
        return self._hdel(key, fields)

    async def set(self, key, value, ttl=None):
        self._check_open()
        self._set(key, value, ttl)

    async def get(self, key):
        self._check_open()
        self._purge(key)
        return self._strings.get(key)

    async def exists(self, key):
        self._check_open()
        self._purge(key)
        return key in self._strings or key in self._hashes

    async def expire(self, key, ttl):
        if not await self.exists(key):
            return False
        self._deadlines[key] = self._clock() + ttl
        return True

    async def delete(self, *keys):
        self._check_open()
        return self._delete(keys)

    async def publish(self, channel, data):
        self._check_open()
        subscribers = list(self._channels.get(channel, ()))
        for subscription in subscribers:
            subscription._deliver(channel, data)
        return len(subscribers)

    async def subscribe(self, *channels):
        self._check_open()
        subscription = MemorySubscription(self, channels)
        for channel in channels:
            self._channels.setdefault(channel, set()).add(subscription)
        return subscription

    async def close(self):
        if self._closed:
            return
        for subscribers in list(self._channels.values()):
            for subscription in list(subscribers):
                await subscription.close()
        self._closed = True
