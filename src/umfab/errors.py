"""Exception types raised by the fabric."""


class FabricError(Exception):
    """Base class for all fabric errors."""


class ConfigurationError(FabricError):
    """Configuration is malformed or cannot describe a registrable service."""


class RegistrationError(FabricError):
    """A registration was invalid or conflicts with an existing service."""


class ServiceNotFoundError(FabricError):
    """No live instance of the requested service exists."""

    def __init__(self, service_name: str):
        self.service_name = service_name
        super().__init__(f"Can't find {service_name} service")


class InvalidAddressError(FabricError):
    """A UMF ``to`` address does not follow ``[instance@]service[:path]``."""


class MessageFormatError(FabricError):
    """A UMF message could not be built or decoded."""


class TransportError(FabricError):
    """The store was unreachable or an operation on it failed."""


class UnreachableInstanceError(TransportError):
    """A direct message reached no subscriber."""
