"""
Key20 lock simulator.

Uses the bless library to expose the Key20 GATT service and drives a
LockProtocolHandler with the connection, subscription and write events.
The lock buttons are console commands.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from bless import (
    BlessGATTCharacteristic,
    BlessServer,
    GATTAttributePermissions,
    GATTCharacteristicProperties,
)

from ..protocol import KEY20_SERVICE_UUID, Channel
from .connection_monitor import ConnectionMonitor
from .keys import save_keys
from .state import Indications, LockProtocolHandler

logger = logging.getLogger(__name__)

# Server configuration
SERVER_NAME = "Key20"
POLL_INTERVAL = 0.25

# Timeouts (seconds)
AUTH_TIMEOUT = 10.0

CONSOLE_HELP = "Commands: r = red button, g = green button, k = list keys, q = quit"


class Key20GattServer:
    """
    BLE GATT server of the lock simulator.

    nonce and cfgOut are read/indicate characteristics, unlock and cfgIn are
    written with response.
    """

    def __init__(
        self,
        keys: dict[int, bytes],
        key_file: Path,
        name: str = SERVER_NAME,
        auth_timeout: float = AUTH_TIMEOUT,
    ):
        """
        Initialize the GATT server.

        Args:
            keys: Stored keys by slot number
            key_file: File the keys are persisted to after confirmation
            name: Advertised device name
            auth_timeout: Seconds a client may take to authenticate
        """
        self.name = name
        self.key_file = key_file
        self.auth_timeout = auth_timeout
        self.server: Optional[BlessServer] = None
        self.handler = LockProtocolHandler(
            keys=keys,
            on_unlock=self._on_unlock,
            on_keys_changed=self._on_keys_changed,
        )
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connection_monitor: Optional[ConnectionMonitor] = None
        self._tasks: set[asyncio.Task] = set()
        self._auth_timer: Optional[asyncio.TimerHandle] = None

    async def start(self) -> None:
        """Start the GATT server and begin advertising."""
        self._loop = asyncio.get_running_loop()
        self._running = True

        logger.info(f"Starting lock '{self.name}'")
        logger.info(f"Service UUID: {KEY20_SERVICE_UUID}")

        self.server = BlessServer(name=self.name, loop=self._loop)
        self.server.read_request_func = self._handle_read
        self.server.write_request_func = self._handle_write

        await self._setup_gatt()
        await self.server.start()

        self._connection_monitor = ConnectionMonitor(
            server=self.server,
            on_connect=self._handle_connect,
            on_disconnect=self._handle_disconnect,
            poll_interval=POLL_INTERVAL,
        )
        await self._connection_monitor.start()
        logger.info("Lock started and advertising")

    async def _setup_gatt(self) -> None:
        """Configure the Key20 service and its four characteristics."""
        if self.server is None:
            raise RuntimeError("Server not initialized")

        await self.server.add_new_service(KEY20_SERVICE_UUID)

        indicated = GATTCharacteristicProperties.read | GATTCharacteristicProperties.indicate
        written = GATTCharacteristicProperties.write
        for channel, properties, permissions in (
            (Channel.NONCE, indicated, GATTAttributePermissions.readable),
            (Channel.UNLOCK, written, GATTAttributePermissions.writeable),
            (Channel.CFG_IN, written, GATTAttributePermissions.writeable),
            (Channel.CFG_OUT, indicated, GATTAttributePermissions.readable),
        ):
            await self.server.add_new_characteristic(
                KEY20_SERVICE_UUID,
                channel.uuid,
                properties,
                bytearray(channel.max_length),
                permissions,
            )
            logger.info(f"Added {channel.name} characteristic: {channel.uuid}")

        for channel in (Channel.NONCE, Channel.CFG_OUT):
            char = self.server.get_characteristic(channel.uuid)
            if char is None:
                raise RuntimeError(f"Characteristic {channel.uuid} not found")
            char.on_subscribe = self._handle_subscribe

    def _spawn(self, coro) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _handle_connect(self) -> None:
        self.handler.on_connect()
        self._update_auth_timer()

    def _handle_disconnect(self) -> None:
        self.handler.on_disconnect()
        self._update_auth_timer()

    def _update_auth_timer(self) -> None:
        """Run the authentication timer while the handler authenticates."""
        if self.handler.authenticating:
            if self._auth_timer is None:
                self._auth_timer = self._loop.call_later(self.auth_timeout, self._on_auth_timeout)
        elif self._auth_timer is not None:
            self._auth_timer.cancel()
            self._auth_timer = None

    def _on_auth_timeout(self) -> None:
        self._auth_timer = None
        if self.handler.auth_timeout():
            # bless cannot drop a connection; the client has to disconnect
            logger.warning("Authentication aborted, waiting for the client to disconnect")

    def _handle_read(self, characteristic: BlessGATTCharacteristic, **kwargs: Any) -> bytearray:
        logger.debug(f"Read request for {characteristic.uuid}")
        return characteristic.value or bytearray()

    def _handle_write(self, characteristic: BlessGATTCharacteristic, value: Any, **kwargs: Any) -> None:
        channel = Channel.from_uuid(characteristic.uuid)
        if channel not in (Channel.UNLOCK, Channel.CFG_IN):
            logger.warning(f"Write to unknown characteristic: {characteristic.uuid}")
            return

        value = bytes(value or b"")
        logger.debug(f"Write to {channel.name} ({len(value)} bytes): {value.hex()}")
        indications = self.handler.on_write(channel, value)
        self._update_auth_timer()
        if indications:
            self._spawn(self._send_indications(indications))

    def _handle_subscribe(self, characteristic: BlessGATTCharacteristic, **kwargs: Any) -> None:
        channel = Channel.from_uuid(characteristic.uuid)
        if channel is None:
            return
        logger.info(f"Client subscribed to {channel.name}")
        indications = self.handler.on_subscribe(channel)
        self._update_auth_timer()
        if indications:
            self._spawn(self._send_indications(indications))

    async def _send_indications(self, indications: Indications) -> None:
        """Indicate the values one after the other."""
        if self.server is None:
            logger.error("Cannot indicate: server not initialized")
            return

        for channel, value in indications:
            char = self.server.get_characteristic(channel.uuid)
            if char is None:
                logger.error(f"Characteristic {channel.uuid} not found")
                return
            logger.debug(f"Indicating {channel.name} ({len(value)} bytes): {value.hex()}")
            char.value = bytearray(value)
            result = self.server.update_value(KEY20_SERVICE_UUID, channel.uuid)
            # BlueZ updates synchronously, CoreBluetooth returns a coroutine
            if asyncio.iscoroutine(result):
                await result

    def _on_unlock(self, key_number: int) -> None:
        logger.info(f"*** Door opened with key {key_number} ***")

    def _on_keys_changed(self, keys: dict[int, bytes]) -> None:
        save_keys(self.key_file, keys)

    def handle_command(self, command: str) -> None:
        """Run one console command."""
        command = command.strip().lower()
        if command == "r":
            if self.handler.start_configuration():
                # bless cannot drop a connection; the client has to disconnect
                logger.warning("Configuration aborted, waiting for the client to disconnect")
        elif command == "g":
            key_number = self.handler.confirm_key()
            if key_number is not None:
                print(f"Key {key_number} stored")
        elif command == "k":
            slots = sorted(self.handler.keys)
            print(f"Stored keys: {', '.join(str(slot) for slot in slots) or 'none'}")
        elif command == "q":
            self._running = False
        elif command:
            print(CONSOLE_HELP)

    def _read_console(self) -> None:
        line = sys.stdin.readline()
        if not line:
            self._loop.remove_reader(sys.stdin)
            return
        self.handle_command(line)

    async def stop(self) -> None:
        """Stop the GATT server."""
        self._running = False
        if self._auth_timer is not None:
            self._auth_timer.cancel()
            self._auth_timer = None
        if self._connection_monitor:
            await self._connection_monitor.stop()
        for task in list(self._tasks):
            task.cancel()
        if self.server:
            await self.server.stop()
            logger.info("Lock stopped")

    async def run_forever(self) -> None:
        """Run the lock until interrupted or quit from the console."""
        await self.start()

        def signal_handler() -> None:
            logger.info("Shutdown signal received")
            self._running = False

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, signal_handler)
            self._loop.add_signal_handler(signal.SIGTERM, signal_handler)
            self._loop.add_reader(sys.stdin, self._read_console)
            print(CONSOLE_HELP)

        try:
            while self._running:
                await asyncio.sleep(1)
        finally:
            if sys.platform != "win32":
                self._loop.remove_reader(sys.stdin)
            await self.stop()
