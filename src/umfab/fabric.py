"""Fabric: one service instance's view of the registry and message bus."""

import inspect
import logging
from typing import AsyncIterator, Callable, List, Optional

from .config import FabricConfig, validate_config
from .errors import FabricError, RegistrationError
from .heartbeat import Heartbeat, LivenessStatus
from .messaging import MessageHandler, MessageRouter, SendResult, Subscription
from .registry import (
    PresenceRecord,
    ServiceDescriptor,
    ServiceDiscovery,
    ServiceEntry,
    ServiceRegistry,
)
from .store import RedisStore, Store
from .umf import UMFMessage, create_message

logger = logging.getLogger(__name__)


class Fabric:
    """Registry, discovery, heartbeat and messaging bound to one store.

    Construct one per service instance; nothing is shared between Fabric
    objects except through the store::

        async with Fabric(config) as fabric:
            await fabric.register_service()
            fabric.on_message(handle)
            await fabric.send_message(fabric.create_message({"to": "orders:/", "body": {}}))

    If *store* is given it is used as-is and not closed on shutdown; otherwise
    :meth:`init` opens a :class:`RedisStore` from ``config.redis``.
    """

    def __init__(self, config: Optional[FabricConfig] = None, store: Optional[Store] = None):
        self.config = validate_config(config or FabricConfig())
        self.descriptor: Optional[ServiceDescriptor] = self.config.descriptor()
        self._store = store
        self._owns_store = store is None
        self.registry: Optional[ServiceRegistry] = None
        self.discovery: Optional[ServiceDiscovery] = None
        self.router: Optional[MessageRouter] = None
        self._heartbeat: Optional[Heartbeat] = None
        self._subscription: Optional[Subscription] = None
        self._pending_handlers: List[MessageHandler] = []
        self._degraded_handlers: List[Callable[[str, int], object]] = []
        self._registered = False
        self._initialized = False

    async def __aenter__(self) -> 'Fabric':
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    @property
    def service_name(self) -> Optional[str]:
        return self.descriptor.service_name if self.descriptor else None

    @property
    def instance_id(self) -> Optional[str]:
        return self.descriptor.instance_id if self.descriptor else None

    @property
    def liveness(self) -> LivenessStatus:
        if self._heartbeat is None:
            return LivenessStatus.STOPPED
        return self._heartbeat.status

    @property
    def store(self) -> Store:
        self._require_init()
        return self._store

    def _require_init(self) -> None:
        if not self._initialized:
            raise FabricError("Fabric.init() has not been called")

    async def init(self) -> 'Fabric':
        if self._initialized:
            return self
        if self._store is None:
            self._store = RedisStore.from_config(self.config.redis)
        namespace = self.config.namespace
        self.registry = ServiceRegistry(self._store, namespace, self.config.presence_ttl)
        self.discovery = ServiceDiscovery(self._store, namespace)
        self.router = MessageRouter(self._store, namespace)
        self._initialized = True
        return self

    # -- registry ----------------------------------------------------------

    async def register_service(self) -> ServiceDescriptor:
        """Register this instance, start its heartbeat and inbound subscription."""
        self._require_init()
        if self.descriptor is None:
            raise RegistrationError("configuration has no service_name to register")
        descriptor = await self.registry.register(self.descriptor)
        if self._heartbeat is None:
            self._heartbeat = Heartbeat(
                self.registry,
                descriptor,
                interval=self.config.heartbeat_interval,
                failure_threshold=self.config.failure_threshold,
                on_degraded=self._notify_degraded,
            )
        self._heartbeat.start()
        if self._subscription is None:
            self._subscription = await self.router.subscribe(
                descriptor.service_name, descriptor.instance_id,
            )
            for handler in self._pending_handlers:
                self._subscription.add_handler(handler)
            self._pending_handlers.clear()
        self._registered = True
        return descriptor

    async def deregister_service(self) -> bool:
        self._require_init()
        if self.descriptor is None:
            return False
        if self._heartbeat is not None:
            await self._heartbeat.stop()
        self._registered = False
        return await self.registry.deregister(self.descriptor.instance_id)

    # -- discovery ---------------------------------------------------------

    async def find_service(self, service_name: str) -> ServiceEntry:
        self._require_init()
        return await self.discovery.find_service(service_name)

    async def get_services(self) -> List[ServiceEntry]:
        self._require_init()
        return await self.discovery.get_services()

    async def get_service_presence(self, service_name: str) -> List[PresenceRecord]:
        self._require_init()
        return await self.discovery.get_service_presence(service_name)

    # -- messaging ---------------------------------------------------------

    def create_message(self, fields: Optional[dict] = None) -> UMFMessage:
        return create_message(fields)

    async def send_message(self, message: UMFMessage) -> SendResult:
        self._require_init()
        return await self.router.send_message(message)

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Call *handler* for every inbound message; returns a remover.

        Handlers added before :meth:`register_service` start receiving once
        the instance is registered.
        """
        if self._subscription is not None:
            return self._subscription.add_handler(handler)
        self._pending_handlers.append(handler)

        def remove() -> None:
            if handler in self._pending_handlers:
                self._pending_handlers.remove(handler)
            elif self._subscription is not None:
                self._subscription.remove_handler(handler)

        return remove

    async def messages(self) -> AsyncIterator[UMFMessage]:
        """Iterate inbound messages. Requires a registered instance."""
        if self._subscription is None:
            raise FabricError("register_service() must be called before reading messages")
        async for message in self._subscription.messages():
            yield message

    def on_degraded(self, handler: Callable[[str, int], object]) -> None:
        """Call ``handler(instance_id, failures)`` when the heartbeat degrades."""
        self._degraded_handlers.append(handler)

    async def _notify_degraded(self, instance_id: str, failures: int) -> None:
        for handler in list(self._degraded_handlers):
            try:
                result = handler(instance_id, failures)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Liveness handler failed for %s", instance_id)

    # -- lifecycle ---------------------------------------------------------

    async def shutdown(self, deregister: bool = True) -> None:
        """Stop the heartbeat, unsubscribe, optionally deregister, release the store.

        Every step is attempted; failures are logged and do not stop the
        remaining steps. Safe to call more than once.
        """
        if self._heartbeat is not None:
            try:
                await self._heartbeat.stop()
            except Exception:
                logger.warning("Failed to stop heartbeat", exc_info=True)
        self._heartbeat = None

        if self._subscription is not None:
            try:
                await self._subscription.close()
            except Exception:
                logger.warning("Failed to close inbound subscription", exc_info=True)
        self._subscription = None

        if deregister and self._registered:
            try:
                await self.deregister_service()
            except Exception:
                logger.warning("Failed to deregister %s", self.instance_id, exc_info=True)
        self._registered = False

        if self._owns_store and self._store is not None:
            try:
                await self._store.close()
            except Exception:
                logger.warning("Failed to close store", exc_info=True)
            self._store = None
        self._initialized = False
