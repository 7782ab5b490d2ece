"""
Service Registry

This package provides:
1. ServiceRegistry — writes service metadata and TTL'd presence to the store
2. ServiceDiscovery — read-only queries over live services and instances
3. ServiceDescriptor, ServiceEntry, PresenceRecord — the registry records
"""

from .discovery import ServiceDiscovery
from .service_registry import (
    PresenceRecord,
    RegistryKeys,
    ServiceDescriptor,
    ServiceEntry,
    ServiceRegistry,
)

__all__ = [
    'PresenceRecord',
    'RegistryKeys',
    'ServiceDescriptor',
    'ServiceDiscovery',
    'ServiceEntry',
    'ServiceRegistry',
]
