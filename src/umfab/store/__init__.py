"""
Shared store adapters

This package provides:
1. Store — the hash, expiring-key and pub/sub capabilities the fabric uses
2. RedisStore — the production adapter over redis.asyncio
3. MemoryStore — an in-process adapter with the same behaviour
"""

from .base import Batch, Store, StoreSubscription
from .memory import MemoryStore
from .redis_store import RedisStore

__all__ = [
    'Batch',
    'MemoryStore',
    'RedisStore',
    'Store',
    'StoreSubscription',
]
