"""Polls the GATT server for client connects and disconnects."""

import asyncio
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class BLEServer(Protocol):
    """A server that can tell whether a client is connected."""

    async def is_connected(self) -> bool:
        ...


class ConnectionMonitor:
    """
    Reports connection changes of a BLE server.

    bless has no connection callbacks, so the connection state is polled.
    """

    def __init__(
        self,
        server: BLEServer,
        on_connect: Callable[[], None],
        on_disconnect: Callable[[], None],
        poll_interval: float = 0.25,
    ):
        """
        Args:
            server: Server with an is_connected() coroutine
            on_connect: Called when the first client connects
            on_disconnect: Called when the last client disconnects
            poll_interval: Seconds between two checks
        """
        self._server = server
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._was_connected = False

    async def start(self) -> None:
        if self._task:
            await self.stop()
        self._task = asyncio.create_task(self._monitor_loop())
        logger.debug("Connection monitor started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug("Connection monitor stopped")

    async def poll(self) -> None:
        """Check the connection once and report a change."""
        is_connected = await self._server.is_connected()
        if is_connected and not self._was_connected:
            logger.info("Client connected")
            self._was_connected = True
            self._on_connect()
        elif not is_connected and self._was_connected:
            logger.info("Client disconnected")
            self._was_connected = False
            self._on_disconnect()

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.poll()
            except Exception as e:
                logger.error(f"Error checking connection status: {e}")
