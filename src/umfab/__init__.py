"""umfab: service registry, presence and UMF messaging over Redis."""

from .config import FabricConfig, RedisConfig, load_config
from .errors import (
    ConfigurationError,
    FabricError,
    InvalidAddressError,
    MessageFormatError,
    RegistrationError,
    ServiceNotFoundError,
    TransportError,
    UnreachableInstanceError,
)
from .fabric import Fabric
from .identity import derive_instance_id
from .registry import PresenceRecord, ServiceDescriptor, ServiceEntry
from .umf import UMFMessage, create_message, parse_address

__version__ = '0.1.0'
__all__ = [
    'ConfigurationError',
    'Fabric',
    'FabricConfig',
    'FabricError',
    'InvalidAddressError',
    'MessageFormatError',
    'PresenceRecord',
    'RedisConfig',
    'RegistrationError',
    'ServiceDescriptor',
    'ServiceEntry',
    'ServiceNotFoundError',
    'TransportError',
    'UMFMessage',
    'UnreachableInstanceError',
    'create_message',
    'derive_instance_id',
    'load_config',
    'parse_address',
]
