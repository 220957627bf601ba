"""
Transport abstraction between the state machine and the BLE stack.

Requests never block: each one is started and returns immediately, and its
outcome arrives later as an event on the client's queue. Every request
eventually yields either its acknowledgment event or a Failure.
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.exc import BleakError

from ..protocol import Channel
from .events import (
    BluetoothEnabled,
    Connected,
    Disconnected,
    Event,
    Failure,
    NotificationReceived,
    ServicesDiscovered,
    SubscribeAck,
    WriteAck,
)

logger = logging.getLogger(__name__)

# Timeouts (seconds)
CONNECT_TIMEOUT = 10.0
ADAPTER_PROBE_TIMEOUT = 0.5


class Transport(Protocol):
    """Operations the state machine issues towards the lock."""

    def ensure_enabled(self) -> None:
        """Check the radio; answers BluetoothEnabled or Failure."""
        ...

    def connect(self, address: str) -> None:
        """Connect to a lock; answers Connected or Failure."""
        ...

    def discover_services(self) -> None:
        """Answers ServicesDiscovered or Failure."""
        ...

    def subscribe(self, channel: Channel) -> None:
        """Enable indications; answers SubscribeAck, then NotificationReceived per value."""
        ...

    def write(self, channel: Channel, value: bytes) -> None:
        """Write with response; answers WriteAck or Failure."""
        ...

    def close(self) -> None:
        """Drop the connection and all characteristic references."""
        ...

    async def wait_closed(self) -> None:
        """Wait until outstanding requests and the disconnect are done."""
        ...


class BleakTransport:
    """
    Transport built on bleak.

    Each request runs as an asyncio task whose result is posted as an event.
    A connection generation number guards against callbacks of a previous,
    already closed connection reaching the state machine.
    """

    def __init__(self, post: Callable[[Event], None], adapter: Optional[str] = None):
        """
        Initialize the transport.

        Args:
            post: Puts an event on the client's event queue
            adapter: Optional Bluetooth adapter name (e.g. "hci0")
        """
        self._post = post
        self._adapter = adapter
        self._client: Optional[BleakClient] = None
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()

    def _kwargs(self) -> dict:
        return {"adapter": self._adapter} if self._adapter else {}

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _post_if_current(self, generation: int, event: Event) -> None:
        if generation != self._generation:
            logger.debug(f"Dropping {type(event).__name__} of a closed connection")
            return
        self._post(event)

    def ensure_enabled(self) -> None:
        self._spawn(self._probe_adapter(self._generation))

    async def _probe_adapter(self, generation: int) -> None:
        try:
            scanner = BleakScanner(**self._kwargs())
            await scanner.start()
            await asyncio.sleep(ADAPTER_PROBE_TIMEOUT)
            await scanner.stop()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Bluetooth adapter not available: {e}")
            self._post_if_current(generation, Failure(f"bluetooth unavailable: {e}"))
            return
        self._post_if_current(generation, BluetoothEnabled())

    def connect(self, address: str) -> None:
        self._generation += 1
        generation = self._generation

        def on_disconnect(client: BleakClient) -> None:
            logger.info(f"Disconnected from {address}")
            self._post_if_current(generation, Disconnected())

        self._client = BleakClient(
            address,
            disconnected_callback=on_disconnect,
            timeout=CONNECT_TIMEOUT,
            **self._kwargs(),
        )
        self._spawn(self._connect(self._client, generation))

    async def _connect(self, client: BleakClient, generation: int) -> None:
        logger.info(f"Connecting to {client.address}...")
        try:
            await client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Connection failed: {e}")
            self._post_if_current(generation, Failure(f"connect: {e}"))
            return
        logger.info(f"Connected: {client.is_connected}")
        self._post_if_current(generation, Connected())

    def discover_services(self) -> None:
        self._spawn(self._discover_services(self._client, self._generation))

    async def _discover_services(self, client: Optional[BleakClient], generation: int) -> None:
        # bleak resolves the services while connecting
        try:
            if client is None:
                raise BleakError("not connected")
            services = {
                str(service.uuid).lower(): frozenset(
                    str(char.uuid).lower() for char in service.characteristics
                )
                for service in client.services
            }
        except BleakError as e:
            logger.error(f"Service discovery failed: {e}")
            self._post_if_current(generation, Failure(f"discovery: {e}"))
            return
        logger.info(f"Discovered {len(services)} service(s)")
        self._post_if_current(generation, ServicesDiscovered(services=services))

    def subscribe(self, channel: Channel) -> None:
        self._spawn(self._subscribe(self._client, channel, self._generation))

    async def _subscribe(self, client: Optional[BleakClient], channel: Channel, generation: int) -> None:
        def notification_handler(characteristic: BleakGATTCharacteristic, data: bytearray) -> None:
            logger.debug(f"Notification on {channel.name} ({len(data)} bytes): {bytes(data).hex()}")
            self._post_if_current(generation, NotificationReceived(channel=channel, value=bytes(data)))

        try:
            if client is None:
                raise BleakError("not connected")
            await client.start_notify(channel.uuid, notification_handler)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to subscribe to {channel.name}: {e}")
            self._post_if_current(generation, Failure(f"subscribe {channel.name}: {e}"))
            return
        logger.info(f"Subscribed to {channel.name}")
        self._post_if_current(generation, SubscribeAck(channel=channel))

    def write(self, channel: Channel, value: bytes) -> None:
        self._spawn(self._write(self._client, channel, bytes(value), self._generation))

    async def _write(self, client: Optional[BleakClient], channel: Channel, value: bytes, generation: int) -> None:
        logger.debug(f"Writing {channel.name} ({len(value)} bytes): {value.hex()}")
        try:
            if client is None:
                raise BleakError("not connected")
            await client.write_gatt_char(channel.uuid, value, response=True)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to write {channel.name}: {e}")
            self._post_if_current(generation, Failure(f"write {channel.name}: {e}"))
            return
        self._post_if_current(generation, WriteAck(channel=channel))

    def close(self) -> None:
        client, self._client = self._client, None
        self._generation += 1
        if client is not None:
            self._spawn(self._disconnect(client))

    async def _disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Error while disconnecting: {e}")

    async def wait_closed(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
