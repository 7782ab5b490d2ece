"""Read-only queries over registry state."""

from typing import Dict, List

from ..errors import ServiceNotFoundError
from ..store import Store
from .service_registry import (
    PresenceRecord,
    RegistryKeys,
    ServiceEntry,
    read_presence_records,
)


class ServiceDiscovery:
    """Looks up services that currently have at least one live instance."""

    def __init__(self, store: Store, namespace: str = "umfab"):
        self.store = store
        self.keys = RegistryKeys(namespace)

    async def _live_records(self) -> List[PresenceRecord]:
        live = []
        records = await read_presence_records(self.store, self.keys)
        for instance_id, record in records.items():
            if await self.store.exists(self.keys.presence(record.service_name, instance_id)):
                live.append(record)
        return live

    async def find_service(self, service_name: str) -> ServiceEntry:
        """Return the entry for *service_name*.

        Raises ServiceNotFoundError when the service was never registered or
        has no live instance.
        """
        data = await self.store.hgetall(self.keys.service(service_name))
        if not data:
            raise ServiceNotFoundError(service_name)
        if not await self.get_service_presence(service_name):
            raise ServiceNotFoundError(service_name)
        return ServiceEntry.from_dict(data)

    async def get_services(self) -> List[ServiceEntry]:
        """One entry per live service, sorted by name."""
        names = sorted({record.service_name for record in await self._live_records()})
        services = []
        for name in names:
            data = await self.store.hgetall(self.keys.service(name))
            if data:
                services.append(ServiceEntry.from_dict(data))
        return services

    async def get_service_presence(self, service_name: str) -> List[PresenceRecord]:
        """Live instances of *service_name*, most recently refreshed first."""
        records = [
            record for record in await self._live_records()
            if record.service_name == service_name
        ]
        records.sort(key=lambda r: r.updated_on, reverse=True)
        return records

    async def count_instances(self) -> Dict[str, int]:
        """Number of live instances per service name."""
        counts: Dict[str, int] = {}
        for record in await self._live_records():
            counts[record.service_name] = counts.get(record.service_name, 0) + 1
        return counts
