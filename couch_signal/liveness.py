"""
Liveness monitor: evicts connections that stop answering ping frames.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from websockets.exceptions import ConnectionClosed

from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0


class LivenessMonitor:
    """
    Periodic ping sweep over every open transport.

    Each sweep evicts transports whose alive flag is still clear from the
    previous sweep, then clears the flag on the rest and pings them. A
    transport that misses one full cycle is gone.
    """

    def __init__(
        self,
        connections: Callable[[], Iterable[Transport]],
        on_evict: Callable[[Transport], Awaitable[None]],
        interval: float = DEFAULT_INTERVAL,
    ):
        """
        Args:
            connections: Returns the transports to check on each sweep
            on_evict: Disconnect handler run for every evicted transport
            interval: Seconds between sweeps
        """
        self._connections = connections
        self._on_evict = on_evict
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> List[Transport]:
        """
        Run one liveness cycle.

        Returns:
            Transports evicted during this cycle
        """
        evicted = []

        for transport in list(self._connections()):
            if not transport.open:
                continue

            if not transport.alive:
                logger.info("Evicting unresponsive connection %r", transport)
                evicted.append(transport)
                await transport.abort()
                await self._on_evict(transport)
                continue

            transport.alive = False
            try:
                await transport.ping()
            except ConnectionClosed:
                logger.debug("Ping to %r failed, connection closing", transport)

        return evicted

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
