from __future__ import annotations
import asyncio
import time
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from driver.correlation import CorrelationRegistry
from shared.errors import CallTimeoutError, DriverConnectionError, DriverError
from shared.frames import Ping
from shared.log import get_logger

logger = get_logger(__name__)


class KeepAliveMonitor:
    """
    Sends a DDP ping every `interval` seconds and expects the matching pong
    within `timeout` seconds.

    Ping ids come from the correlation registry and pongs resolve them there,
    so an unanswered ping is retired like any timed-out call. A missed pong
    calls `on_unhealthy` once and stops the loop; the driver treats that the
    same as the transport closing.
    """

    def __init__(
        self,
        registry: CorrelationRegistry,
        send: Callable[[Ping], Awaitable[None]],
        on_unhealthy: Callable[[str], None],
        *,
        interval: float = 30.0,
        timeout: float = 10.0,
    ) -> None:
        self.registry = registry
        self._send = send
        self._on_unhealthy = on_unhealthy
        self.interval = interval
        self.timeout = timeout
        self.last_latency: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="ddp-keepalive")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def wait_stopped(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def ping_once(self, timeout: Optional[float] = None) -> float:
        """Round-trip one ping; returns the latency in seconds."""
        ping_id = self.registry.issue()
        pending = self.registry.register(ping_id, timeout=self.timeout if timeout is None else timeout)
        started = time.monotonic()
        try:
            await self._send(Ping(id=ping_id))
        except BaseException:
            self.registry.retire(ping_id)
            raise
        await self.registry.wait(pending)
        self.last_latency = time.monotonic() - started
        logger.debug("pong in %.1fms", self.last_latency * 1000, extra={"call_id": ping_id})
        return self.last_latency

    def pong(self, ping_id: Optional[str]) -> bool:
        if ping_id is None:
            logger.debug("Ignoring pong without id")
            return False
        return self.registry.resolve(ping_id, None)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.ping_once()
            except CallTimeoutError:
                logger.warning("No pong within %.1fs; connection is unhealthy", self.timeout)
                self._task = None
                self._on_unhealthy(f"keep-alive pong not received within {self.timeout}s")
                return
            except DriverConnectionError as e:
                logger.debug("Keep-alive stopped: %s", e)
                return
            except DriverError as e:
                # the service answered, so the link is alive
                logger.warning("Keep-alive ping rejected: %s", e)
