"""Per-instance heartbeat that keeps the presence key alive."""

import asyncio
import contextlib
import inspect
import logging
from enum import Enum
from typing import Callable, Optional

from .errors import TransportError
from .registry import ServiceDescriptor, ServiceRegistry

logger = logging.getLogger(__name__)


class LivenessStatus(Enum):
    """Heartbeat status as seen from inside the instance."""
    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    STOPPED = "stopped"


class Heartbeat:
    """Refreshes an instance's presence every *interval* seconds.

    Refresh failures are counted, never raised. After *failure_threshold*
    consecutive failures the status becomes DEGRADED and *on_degraded* is
    called once with ``(instance_id, failures)``; the next successful
    refresh restores HEALTHY. The instance is never deregistered here: if the
    store stays unreachable its presence key simply expires.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        descriptor: ServiceDescriptor,
        interval: float = 1.0,
        failure_threshold: int = 3,
        on_degraded: Optional[Callable[[str, int], object]] = None,
    ):
        self.registry = registry
        self.descriptor = descriptor
        self.interval = interval
        self.failure_threshold = failure_threshold
        self.on_degraded = on_degraded
        self.instance_id = descriptor.instance_id
        self.status = LivenessStatus.STARTING
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"heartbeat-{self.instance_id}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._set_status(LivenessStatus.STOPPED)

    def _set_status(self, status: LivenessStatus) -> None:
        if status != self.status:
            logger.info(
                "Heartbeat %s: %s -> %s",
                self.instance_id, self.status.value, status.value,
            )
            self.status = status

    async def beat(self) -> bool:
        """Run one refresh. Returns True if the presence was written."""
        try:
            await self.registry.refresh_presence(self.descriptor)
        except TransportError as exc:
            self.failures += 1
            logger.debug("Heartbeat %s failed (%d): %s", self.instance_id, self.failures, exc)
            if self.failures == self.failure_threshold:
                logger.warning(
                    "Heartbeat %s degraded after %d consecutive failures: %s",
                    self.instance_id, self.failures, exc,
                )
                self._set_status(LivenessStatus.DEGRADED)
                await self._notify_degraded()
            return False
        self.failures = 0
        self._set_status(LivenessStatus.HEALTHY)
        return True

    async def _notify_degraded(self) -> None:
        if self.on_degraded is None:
            return
        try:
            result = self.on_degraded(self.instance_id, self.failures)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Degraded callback failed for %s", self.instance_id)

    async def _run(self) -> None:
        while True:
            try:
                await self.beat()
            except Exception:
                logger.exception("Heartbeat %s tick failed", self.instance_id)
            await asyncio.sleep(self.interval)
