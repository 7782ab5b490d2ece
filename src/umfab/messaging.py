"""Routing of UMF messages over the store's pub/sub channels."""

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Set

from .errors import MessageFormatError, TransportError, UnreachableInstanceError
from .registry import RegistryKeys
from .store import Store, StoreSubscription
from .umf import UMFMessage, create_message, deserialize, parse_address, serialize

logger = logging.getLogger(__name__)

MessageHandler = Callable[[UMFMessage], object]

_END = object()


@dataclass
class SendResult:
    mid: str
    channel: str
    receivers: int


class Subscription:
    """Inbound messages for one instance.

    Listens on the instance's private channel and its service channel. Each
    message is passed to every handler added with :meth:`add_handler` and to
    every open :meth:`messages` iterator.
    """

    def __init__(self, subscription: StoreSubscription, channels: List[str]):
        self.channels = channels
        self._subscription = subscription
        self._handlers: List[MessageHandler] = []
        self._queues: Set[asyncio.Queue] = set()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name=f"umf-inbound-{self.channels[0]}")

    def add_handler(self, handler: MessageHandler) -> Callable[[], None]:
        """Register *handler* and return a callable that removes it."""
        self._handlers.append(handler)
        return lambda: self.remove_handler(handler)

    def remove_handler(self, handler: MessageHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def messages(self) -> AsyncIterator[UMFMessage]:
        """Yield messages received from now on until the subscription closes."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        try:
            while not self._closed:
                item = await queue.get()
                if item is _END:
                    return
                yield item
        finally:
            self._queues.discard(queue)

    async def _dispatch(self, message: UMFMessage) -> None:
        for queue in list(self._queues):
            queue.put_nowait(message)
        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Message handler failed for %s", message.mid)

    async def _pump(self) -> None:
        try:
            async for channel, data in self._subscription:
                try:
                    message = deserialize(data)
                except MessageFormatError as exc:
                    logger.warning("Dropping undecodable message on %s: %s", channel, exc)
                    continue
                logger.debug("Received %s on %s", message.mid, channel)
                await self._dispatch(message)
        except TransportError as exc:
            logger.error("Inbound subscription on %s failed: %s", ", ".join(self.channels), exc)
        for queue in list(self._queues):
            queue.put_nowait(_END)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for queue in list(self._queues):
            queue.put_nowait(_END)
        self._handlers.clear()
        await self._subscription.close()


class MessageRouter:
    """Builds, addresses and publishes UMF messages."""

    def __init__(self, store: Store, namespace: str = "umfab"):
        self.store = store
        self.keys = RegistryKeys(namespace)

    create_message = staticmethod(create_message)

    def channel_for(self, to: Optional[str]) -> str:
        """The channel a message addressed to *to* is published on."""
        address = parse_address(to)
        if address.is_direct:
            return self.keys.instance_channel(address.instance_id)
        return self.keys.service_channel(address.service_name)

    async def send_message(self, message: UMFMessage) -> SendResult:
        """Publish *message* to the channel selected by its ``to`` address.

        A direct message nobody is subscribed to raises
        UnreachableInstanceError; a service-wide message with no listeners
        returns ``receivers == 0``.
        """
        if not isinstance(message, UMFMessage):
            raise TypeError("send_message expects a UMFMessage")
        channel = self.channel_for(message.to)
        receivers = await self.store.publish(channel, serialize(message))
        logger.debug("Sent %s to %s (%d receiver(s))", message.mid, channel, receivers)
        if receivers == 0 and parse_address(message.to).is_direct:
            raise UnreachableInstanceError(f"no subscriber for {message.to}")
        return SendResult(mid=message.mid, channel=channel, receivers=receivers)

    async def subscribe(self, service_name: str, instance_id: str) -> Subscription:
        channels = [
            self.keys.instance_channel(instance_id),
            self.keys.service_channel(service_name),
        ]
        subscription = Subscription(await self.store.subscribe(*channels), channels)
        subscription.start()
        return subscription
