"""
Key20 client driver.

Serializes user intents and transport events through one asyncio queue and
feeds them to the state machine one at a time. Uses bleak for scanning and,
through BleakTransport, for the GATT connection.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from ..protocol import KEY20_SERVICE_UUID
from .events import (
    DeviceSelected,
    DisplayChecksum,
    ErrorReported,
    Event,
    Failure,
    KeyCommitted,
    KeyDiscarded,
    RequestDeviceSelection,
    TaskFinished,
    Track,
    UiEvent,
)
from .state import Key20StateMachine
from .store import DEFAULT_STORE_PATH, KeyStore
from .transport import BleakTransport, Transport

logger = logging.getLogger(__name__)

DEVICE_NAME = "Key20"

# Timeouts (seconds)
SCAN_TIMEOUT = 15.0


@dataclass
class ClientConfig:
    """Client configuration."""
    store_path: Path = DEFAULT_STORE_PATH
    scan_timeout: float = SCAN_TIMEOUT
    device_name: str = DEVICE_NAME
    adapter: Optional[str] = None


@dataclass
class Result:
    """Outcome of one user intent."""
    success: bool
    message: str
    checksum: Optional[str] = None


def _is_key20_device(device: BLEDevice, advertisement, device_name: str) -> bool:
    service_uuids = [s.lower() for s in (advertisement.service_uuids or [])]
    return KEY20_SERVICE_UUID in service_uuids or device.name == device_name


async def scan_for_locks(
    timeout: float = SCAN_TIMEOUT, device_name: str = DEVICE_NAME
) -> list[BLEDevice]:
    """Scan and list nearby Key20 locks."""
    logger.info(f"Scanning for Key20 locks ({timeout}s)...")
    discovered = await BleakScanner.discover(timeout=timeout, return_adv=True)

    locks = []
    for device, advertisement in discovered.values():
        if _is_key20_device(device, advertisement, device_name):
            logger.info(f"  {device.name or 'Unknown'}: {device.address}")
            locks.append(device)
    return locks


@dataclass(frozen=True)
class _SelectionOutcome:
    """Event produced by one device selection run."""
    generation: int
    event: Event


class Key20Client:
    """
    Runs the Key20 state machine on the asyncio event loop.

    UI collaborators register a listener for lifecycle events with
    add_listener() and drop it again with the returned callable. The client
    only ever holds those callables.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Optional[Transport] = None,
        select_device: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
        store: Optional[KeyStore] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Client configuration
            transport: Transport to the lock (BleakTransport if not given)
            select_device: Coroutine function returning a lock address when
                none is known yet (scans for the first lock if not given)
            store: Key store (a KeyStore at config.store_path if not given)
        """
        self.config = config
        self.store = store or KeyStore(config.store_path)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._listeners: list[Callable[[UiEvent], None]] = []
        self._select_device = select_device or self._scan_for_first_lock
        self._selection_task: Optional[asyncio.Task] = None
        self._selection_generation = 0
        self.transport = transport or BleakTransport(self.post, adapter=config.adapter)
        self.machine = Key20StateMachine(
            transport=self.transport,
            notify=self._dispatch,
            post=self.post,
            key_material=self.store.load_key_material(),
            device_address=self.store.load_device_address(),
            store=self.store,
        )

    def post(self, event: Event) -> None:
        """Queue an event for the state machine."""
        self._queue.put_nowait(event)

    def add_listener(self, listener: Callable[[UiEvent], None]) -> Callable[[], None]:
        """Register a UI listener; returns a callable that deregisters it."""
        self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: Callable[[UiEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _dispatch(self, event: UiEvent) -> None:
        if isinstance(event, RequestDeviceSelection):
            self._start_device_selection()
        for listener in list(self._listeners):
            listener(event)

    def _start_device_selection(self) -> None:
        self._cancel_device_selection()
        self._selection_task = asyncio.get_running_loop().create_task(
            self._run_device_selection(self._selection_generation)
        )

    def _cancel_device_selection(self) -> None:
        # Outcomes of earlier runs still in the queue are dropped
        self._selection_generation += 1
        if self._selection_task is not None and not self._selection_task.done():
            self._selection_task.cancel()
        self._selection_task = None

    async def _run_device_selection(self, generation: int) -> None:
        try:
            address = await self._select_device()
        except (BleakError, OSError) as e:
            logger.error(f"Device selection failed: {e}")
            address = None
        if address is None:
            self._queue.put_nowait(_SelectionOutcome(generation, Failure("no lock selected")))
        else:
            self._queue.put_nowait(_SelectionOutcome(generation, DeviceSelected(address)))

    async def _scan_for_first_lock(self) -> Optional[str]:
        logger.info(f"Scanning for lock (service: {KEY20_SERVICE_UUID})...")
        device = await BleakScanner.find_device_by_filter(
            lambda d, ad: _is_key20_device(d, ad, self.config.device_name),
            timeout=self.config.scan_timeout,
        )
        if device is None:
            logger.error("No lock found")
            return None
        logger.info(f"Found lock: {device.name} ({device.address})")
        return device.address

    async def process_next_event(self) -> None:
        """Wait for the next queued event and hand it to the state machine."""
        event = await self._queue.get()
        if isinstance(event, _SelectionOutcome):
            if event.generation != self._selection_generation:
                logger.debug(f"Dropping {event.event} of a finished device selection")
                return
            event = event.event
        logger.debug(f"Handling {event}")
        self.machine.handle_event(event)
        if self._selection_task is not None and not self.machine.awaiting_device_selection:
            self._cancel_device_selection()

    async def run_forever(self) -> None:
        """Process events until cancelled."""
        while True:
            await self.process_next_event()

    async def run_intent(self, intent: Event) -> Result:
        """
        Post a user intent and process events until it has an outcome.

        Returns:
            Result with success status, message and, after a key exchange,
            the checksum to compare with the lock display
        """
        outcome: list[UiEvent] = []
        checksum: list[str] = []

        def listener(event: UiEvent) -> None:
            if isinstance(event, DisplayChecksum):
                checksum.append(event.hex)
            elif isinstance(event, (TaskFinished, ErrorReported, KeyCommitted, KeyDiscarded)):
                outcome.append(event)

        remove = self.add_listener(listener)
        try:
            self.post(intent)
            while not outcome:
                await self.process_next_event()
                if not outcome and self.machine.is_idle and self._queue.empty():
                    return Result(success=False, message="Nothing to do")
        finally:
            remove()

        return _to_result(outcome[0], checksum[-1] if checksum else None)

    async def aclose(self) -> None:
        """Close the connection and wait for pending transport work."""
        self._cancel_device_selection()
        if not self.machine.is_idle:
            self.transport.close()
        await self.transport.wait_closed()


def _to_result(event: UiEvent, checksum: Optional[str]) -> Result:
    if isinstance(event, TaskFinished):
        if not event.success:
            return Result(success=False, message=event.error.to_message())
        if event.track == Track.UNLOCK:
            return Result(success=True, message="Door unlock request sent")
        return Result(
            success=True,
            message=f"Key exchange finished. Checksum: {checksum}",
            checksum=checksum,
        )
    if isinstance(event, ErrorReported):
        return Result(success=False, message=event.error.to_message())
    if isinstance(event, KeyCommitted):
        return Result(success=True, message=f"Key {event.key_number} confirmed")
    return Result(success=True, message=f"Key {event.key_number} discarded")
