"""Capabilities the fabric needs from its shared store."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Optional, Tuple


class Batch(ABC):
    """A group of writes applied all-or-nothing by ``execute()``.

    Write methods queue a command and return the batch so calls can be chained.
    """

    @abstractmethod
    def hset(self, key: str, mapping: Dict[str, str]) -> 'Batch': ...

    @abstractmethod
    def hsetnx(self, key: str, field: str, value: str) -> 'Batch': ...

    @abstractmethod
    def hdel(self, key: str, *fields: str) -> 'Batch': ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[float] = None) -> 'Batch': ...

    @abstractmethod
    def delete(self, *keys: str) -> 'Batch': ...

    @abstractmethod
    async def execute(self) -> None: ...


class StoreSubscription(ABC):
    """Live subscription to one or more channels.

    Iterating yields ``(channel, data)`` for every publish received after the
    subscription was opened, in the order the store delivered them.
    """

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[Tuple[str, str]]: ...

    @abstractmethod
    async def close(self) -> None: ...


class Store(ABC):
    """Hash, expiring-key and pub/sub operations over one logical store.

    Implementations hold no caches and never retry; failures are raised as
    :class:`~umfab.errors.TransportError`.
    """

    @abstractmethod
    def batch(self) -> Batch: ...

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, str]) -> None: ...

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]: ...

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]: ...

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> int: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def publish(self, channel: str, data: str) -> int:
        """Publish *data* and return the number of subscribers that got it."""

    @abstractmethod
    async def subscribe(self, *channels: str) -> StoreSubscription: ...

    @abstractmethod
    async def close(self) -> None: ...
