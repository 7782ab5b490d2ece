"""
Service Registry and Presence Tracking

This module provides:
- ServiceDescriptor / ServiceEntry / PresenceRecord: registry records
- RegistryKeys: the store key and channel layout for one namespace
- ServiceRegistry: registers and deregisters instances and refreshes presence
"""

import json
import logging
import os
import time
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any

from ..errors import RegistrationError
from ..identity import derive_instance_id
from ..store import Store
from ..utils import iso_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceDescriptor:
    """Static identity of one running service instance."""
    service_name: str
    service_type: str
    host: str
    port: int
    description: str = ""
    version: str = "0.0.0"

    @property
    def instance_id(self) -> str:
        return derive_instance_id(self)


@dataclass
class ServiceEntry:
    """Per-service metadata, shared by every instance of the service."""
    service_name: str
    service_type: str
    description: str = ""
    version: str = "0.0.0"

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceEntry':
        return cls(
            service_name=data.get('service_name', ''),
            service_type=data.get('service_type', ''),
            description=data.get('description', ''),
            version=data.get('version', '0.0.0'),
        )

    @classmethod
    def from_descriptor(cls, descriptor: ServiceDescriptor) -> 'ServiceEntry':
        return cls(
            service_name=descriptor.service_name,
            service_type=descriptor.service_type,
            description=descriptor.description,
            version=descriptor.version,
        )


@dataclass
class PresenceRecord:
    """Liveness information for one instance."""
    instance_id: str
    service_name: str
    host: str
    port: int
    process_id: int
    updated_on: str
    uptime: Optional[float] = None
    load_average: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PresenceRecord':
        data = dict(data)
        data['port'] = int(data['port'])
        data['process_id'] = int(data['process_id'])
        return cls(**data)

    @classmethod
    def from_json(cls, raw: str) -> 'PresenceRecord':
        return cls.from_dict(json.loads(raw))


class RegistryKeys:
    """Store keys and pub/sub channels under one namespace."""

    def __init__(self, namespace: str = "umfab"):
        self.namespace = namespace

    @property
    def nodes(self) -> str:
        return f"{self.namespace}:service:nodes"

    def service(self, service_name: str) -> str:
        return f"{self.namespace}:service:{service_name}:service"

    def presence(self, service_name: str, instance_id: str) -> str:
        return f"{self.namespace}:service:{service_name}:{instance_id}:presence"

    def service_channel(self, service_name: str) -> str:
        return f"{self.namespace}:service:{service_name}:channel"

    def instance_channel(self, instance_id: str) -> str:
        return f"{self.namespace}:instance:{instance_id}:channel"


async def read_presence_records(store: Store, keys: RegistryKeys) -> Dict[str, PresenceRecord]:
    """Decode every entry of the nodes hash, skipping ones that fail to parse."""
    records = {}
    for instance_id, raw in (await store.hgetall(keys.nodes)).items():
        try:
            records[instance_id] = PresenceRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring malformed presence record %s: %s", instance_id, exc)
    return records


def _load_average() -> Optional[float]:
    try:
        return os.getloadavg()[0]
    except (AttributeError, OSError):
        return None


def _validate(descriptor: Optional[ServiceDescriptor]) -> None:
    if descriptor is None:
        raise RegistrationError("no service descriptor to register")
    missing = [
        name for name in ("service_name", "service_type", "host")
        if not getattr(descriptor, name)
    ]
    port = descriptor.port
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        missing.append("port")
    if missing:
        raise RegistrationError(
            f"service descriptor is missing or has invalid: {', '.join(missing)}"
        )


def _check_conflict(existing: ServiceEntry, wanted: ServiceEntry) -> None:
    for name in ("service_type", "description"):
        have, want = getattr(existing, name), getattr(wanted, name)
        if have and have != want:
            raise RegistrationError(
                f"service {wanted.service_name} is already registered with "
                f"{name}={have!r}, refusing {want!r}"
            )


class ServiceRegistry:
    """Writes service metadata and presence records to the store.

    Presence is a key with a TTL of *presence_ttl* seconds; an instance that
    stops refreshing it disappears from discovery once the key expires.
    """

    def __init__(self, store: Store, namespace: str = "umfab", presence_ttl: float = 3.0):
        self.store = store
        self.keys = RegistryKeys(namespace)
        self.presence_ttl = presence_ttl
        self._registered_at: Dict[str, float] = {}

    def _presence(self, descriptor: ServiceDescriptor, instance_id: str) -> PresenceRecord:
        started = self._registered_at.setdefault(instance_id, time.monotonic())
        return PresenceRecord(
            instance_id=instance_id,
            service_name=descriptor.service_name,
            host=descriptor.host,
            port=descriptor.port,
            process_id=os.getpid(),
            updated_on=iso_timestamp(),
            uptime=round(time.monotonic() - started, 3),
            load_average=_load_average(),
        )

    async def register(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        """Register *descriptor* and write its initial presence.

        Registering the same descriptor again reuses its instance id. The
        service entry is only created if absent; a conflicting entry raises
        :class:`RegistrationError`, also when it was written by a concurrent
        registration, in which case this instance's presence is removed again.
        """
        _validate(descriptor)
        instance_id = derive_instance_id(descriptor)
        entry = ServiceEntry.from_descriptor(descriptor)
        service_key = self.keys.service(descriptor.service_name)

        existing = await self.store.hgetall(service_key)
        if existing:
            _check_conflict(ServiceEntry.from_dict(existing), entry)

        await self.prune_stale()

        record = self._presence(descriptor, instance_id)
        batch = self.store.batch()
        for field, value in entry.to_dict().items():
            batch.hsetnx(service_key, field, value)
        batch.hset(self.keys.nodes, {instance_id: record.to_json()})
        batch.set(
            self.keys.presence(descriptor.service_name, instance_id),
            instance_id,
            ttl=self.presence_ttl,
        )
        await batch.execute()

        # a concurrent registration may have created the entry between the
        # read above and the batch; the stored entry decides who stays
        stored = ServiceEntry.from_dict(await self.store.hgetall(service_key))
        try:
            _check_conflict(stored, entry)
        except RegistrationError:
            await (
                self.store.batch()
                .hdel(self.keys.nodes, instance_id)
                .delete(self.keys.presence(descriptor.service_name, instance_id))
                .execute()
            )
            self._registered_at.pop(instance_id, None)
            raise
        logger.info(
            "Registered %s (%s) at %s:%s",
            descriptor.service_name, instance_id, descriptor.host, descriptor.port,
        )
        return descriptor

    async def refresh_presence(self, descriptor: ServiceDescriptor) -> PresenceRecord:
        """Rewrite the presence record and reset its expiry."""
        instance_id = derive_instance_id(descriptor)
        record = self._presence(descriptor, instance_id)
        await (
            self.store.batch()
            .hset(self.keys.nodes, {instance_id: record.to_json()})
            .set(
                self.keys.presence(descriptor.service_name, instance_id),
                instance_id,
                ttl=self.presence_ttl,
            )
            .execute()
        )
        return record

    async def deregister(self, instance_id: str) -> bool:
        """Remove an instance's presence. Returns False if it was not registered."""
        raw = await self.store.hget(self.keys.nodes, instance_id)
        if raw is None:
            return False
        record = PresenceRecord.from_json(raw)
        await (
            self.store.batch()
            .hdel(self.keys.nodes, instance_id)
            .delete(self.keys.presence(record.service_name, instance_id))
            .execute()
        )
        self._registered_at.pop(instance_id, None)
        logger.info("Deregistered %s (%s)", record.service_name, instance_id)
        return True

    async def prune_stale(self) -> List[str]:
        """Drop presence records whose presence key has expired."""
        stale = []
        records = await read_presence_records(self.store, self.keys)
        for instance_id, record in records.items():
            if not await self.store.exists(self.keys.presence(record.service_name, instance_id)):
                stale.append(instance_id)
        if stale:
            await self.store.hdel(self.keys.nodes, *stale)
            logger.info("Pruned %d stale instance(s)", len(stale))
        return stale
