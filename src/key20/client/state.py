"""
Client state machine for the Key20 unlock and key exchange protocols.

An idle supervisor runs at most one task at a time. Each task is one of two
independent sub-machines sharing a connection prefix:

    WAIT_BT_ENABLED -> WAIT_DEVICE_SELECTED -> WAIT_CONNECTED -> WAIT_SERVICES_DISCOVERED

Unlock:
    -> WAIT_NONCE -> WAIT_HMAC_PART1_ACK -> WAIT_HMAC_PART2_ACK -> idle

Key exchange:
    -> WAIT_CFG_OUT_SUBSCRIBE_ACK -> WAIT_KEY_PART1_ACK -> WAIT_KEY_PART2_ACK
    -> WAIT_SERVER_KEY_PART1 -> WAIT_SERVER_KEY_PART2 -> idle

A finished key exchange leaves a pending key behind. A KeyConfirmed event
received while idle makes it the active key.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Optional, Protocol

from .. import crypto
from ..protocol import (
    CFG_IN_CHAR_UUID,
    CFG_OUT_CHAR_UUID,
    KEY20_SERVICE_UUID,
    MAX_KEY_NUMBER,
    NONCE_CHAR_UUID,
    UNLOCK_CHAR_UUID,
    Channel,
    ErrorCode,
    ProtocolError,
    parse_nonce,
    reassemble,
    split,
)
from .events import (
    BluetoothEnabled,
    Connected,
    DeviceSelected,
    Disconnected,
    DisplayChecksum,
    ErrorReported,
    Event,
    Failure,
    KeyCommitted,
    KeyConfirmed,
    KeyDenied,
    KeyDiscarded,
    NotificationReceived,
    RequestDeviceSelection,
    ServicesDiscovered,
    StartKeyExchange,
    StartUnlock,
    SubscribeAck,
    TaskFinished,
    TaskStarted,
    Track,
    UiEvent,
    WriteAck,
)
from .store import KeyMaterial
from .transport import Transport

logger = logging.getLogger(__name__)


class UnlockState(Enum):
    """States of the unlock task."""
    WAIT_BT_ENABLED = auto()
    WAIT_DEVICE_SELECTED = auto()
    WAIT_CONNECTED = auto()
    WAIT_SERVICES_DISCOVERED = auto()
    WAIT_NONCE = auto()
    WAIT_HMAC_PART1_ACK = auto()
    WAIT_HMAC_PART2_ACK = auto()


class KeyExchangeState(Enum):
    """States of the key exchange task."""
    WAIT_BT_ENABLED = auto()
    WAIT_DEVICE_SELECTED = auto()
    WAIT_CONNECTED = auto()
    WAIT_SERVICES_DISCOVERED = auto()
    WAIT_CFG_OUT_SUBSCRIBE_ACK = auto()
    WAIT_KEY_PART1_ACK = auto()
    WAIT_KEY_PART2_ACK = auto()
    WAIT_SERVER_KEY_PART1 = auto()
    WAIT_SERVER_KEY_PART2 = auto()


class KeyPersistence(Protocol):
    """Persistence hooks used by the state machine (see KeyStore)."""

    def save_key_material(self, key_material: KeyMaterial) -> None:
        ...

    def save_device_address(self, address: Optional[str]) -> None:
        ...


@dataclass
class KeyExchangeSession:
    """Intermediate keys of a running key exchange."""
    target_key_number: int
    client_private_key: Optional[bytes] = None
    client_public_key: Optional[bytes] = None
    server_public_key: Optional[bytearray] = None
    shared_secret: Optional[bytes] = None


@dataclass
class PendingKey:
    """A derived shared secret waiting for the user's decision."""
    key_number: int
    secret: bytes


@dataclass
class SessionContext:
    """Per-task transient data, reset at every task start and end."""
    nonce: Optional[bytes] = None
    hmac: Optional[bytes] = None
    chunks: list[bytes] = field(default_factory=list)
    key_exchange: Optional[KeyExchangeSession] = None


class _ProtocolTask:
    """
    Common part of both tasks: enabling Bluetooth, selecting the lock,
    connecting and discovering services.

    handle_event() returns True once the task completed successfully and
    raises ProtocolError when it failed.
    """

    track: Track
    State: type
    # Characteristics the task needs
    required_characteristics: frozenset = frozenset()
    # Error reported for Failure/Disconnected, per state
    failure_codes: dict = {}

    def __init__(self, machine: "Key20StateMachine"):
        self.machine = machine
        self.session = machine.session
        self.state = self.State.WAIT_BT_ENABLED

    @property
    def transport(self) -> Transport:
        return self.machine.transport

    def _set_state(self, state) -> None:
        logger.info(f"{self.track.value}: {self.state.name} -> {state.name}")
        self.state = state

    def handle_event(self, event: Event) -> bool:
        if isinstance(event, (Failure, Disconnected)):
            reason = event.reason if isinstance(event, Failure) else "disconnected"
            raise ProtocolError(self.failure_codes[self.state], f"{reason} in {self.state.name}")

        if self.state == self.State.WAIT_BT_ENABLED:
            if isinstance(event, BluetoothEnabled):
                self._on_bluetooth_enabled()
                return False
        elif self.state == self.State.WAIT_DEVICE_SELECTED:
            if isinstance(event, DeviceSelected):
                self._on_device_selected(event)
                return False
        elif self.state == self.State.WAIT_CONNECTED:
            if isinstance(event, Connected):
                self.transport.discover_services()
                self._set_state(self.State.WAIT_SERVICES_DISCOVERED)
                return False
        elif self.state == self.State.WAIT_SERVICES_DISCOVERED:
            if isinstance(event, ServicesDiscovered):
                self._check_services(event)
                self._start_protocol()
                return False
        else:
            return self._handle_protocol_event(event)

        self._ignore(event)
        return False

    def _ignore(self, event: Event) -> None:
        logger.debug(f"{self.track.value}: ignoring {type(event).__name__} in {self.state.name}")

    def _on_bluetooth_enabled(self) -> None:
        self._set_state(self.State.WAIT_DEVICE_SELECTED)
        if self.machine.device_address is not None:
            self.machine.post(DeviceSelected(self.machine.device_address))
        else:
            self.machine.notify(RequestDeviceSelection())

    def _on_device_selected(self, event: DeviceSelected) -> None:
        address = event.address or self.machine.device_address
        if not address:
            raise ProtocolError(ErrorCode.NO_ENDPOINT_SELECTED, "no device address")
        self.machine.remember_device(address)
        self.transport.connect(address)
        self._set_state(self.State.WAIT_CONNECTED)

    def _check_services(self, event: ServicesDiscovered) -> None:
        characteristics = event.services.get(KEY20_SERVICE_UUID)
        if characteristics is None:
            raise ProtocolError(ErrorCode.REQUIRED_SERVICE_MISSING, KEY20_SERVICE_UUID)
        missing = self.required_characteristics - set(characteristics)
        if missing:
            raise ProtocolError(
                ErrorCode.REQUIRED_CHARACTERISTIC_MISSING, ", ".join(sorted(missing))
            )

    def _start_protocol(self) -> None:
        raise NotImplementedError

    def _handle_protocol_event(self, event: Event) -> bool:
        raise NotImplementedError


class UnlockTask(_ProtocolTask):
    """Nonce/HMAC challenge-response with the active key."""

    track = Track.UNLOCK
    State = UnlockState
    required_characteristics = frozenset({NONCE_CHAR_UUID, UNLOCK_CHAR_UUID})
    failure_codes = {
        UnlockState.WAIT_BT_ENABLED: ErrorCode.TRANSPORT_UNAVAILABLE,
        UnlockState.WAIT_DEVICE_SELECTED: ErrorCode.NO_ENDPOINT_SELECTED,
        UnlockState.WAIT_CONNECTED: ErrorCode.CONNECTION_FAILED,
        UnlockState.WAIT_SERVICES_DISCOVERED: ErrorCode.SERVICE_DISCOVERY_FAILED,
        UnlockState.WAIT_NONCE: ErrorCode.SUBSCRIBE_FAILED,
        UnlockState.WAIT_HMAC_PART1_ACK: ErrorCode.WRITE_FAILED,
        UnlockState.WAIT_HMAC_PART2_ACK: ErrorCode.WRITE_FAILED,
    }

    def _start_protocol(self) -> None:
        self.transport.subscribe(Channel.NONCE)
        # The subscribe ack for the nonce channel is not awaited. The lock
        # indicates the nonce as soon as the subscription is active, and the
        # ack may arrive after that indication. A received nonce implies the
        # subscription succeeded; a late SubscribeAck(NONCE) is ignored.
        self._set_state(UnlockState.WAIT_NONCE)

    def _handle_protocol_event(self, event: Event) -> bool:
        if self.state == UnlockState.WAIT_NONCE:
            if isinstance(event, NotificationReceived) and event.channel == Channel.NONCE:
                self._on_nonce(event.value)
                return False
        elif self.state == UnlockState.WAIT_HMAC_PART1_ACK:
            if isinstance(event, WriteAck) and event.channel == Channel.UNLOCK:
                self.transport.write(Channel.UNLOCK, self.session.chunks[1])
                self._set_state(UnlockState.WAIT_HMAC_PART2_ACK)
                return False
        elif self.state == UnlockState.WAIT_HMAC_PART2_ACK:
            if isinstance(event, WriteAck) and event.channel == Channel.UNLOCK:
                logger.info("HMAC sent")
                return True

        self._ignore(event)
        return False

    def _on_nonce(self, value: bytes) -> None:
        nonce = parse_nonce(value)
        key = self.machine.key_material
        logger.debug(f"Received nonce: {nonce.hex()}")

        self.session.nonce = nonce
        self.session.hmac = crypto.hmac_sha512_256(key.secret, nonce)
        self.session.chunks = split(self.session.hmac, key.key_number)

        self.transport.write(Channel.UNLOCK, self.session.chunks[0])
        self._set_state(UnlockState.WAIT_HMAC_PART1_ACK)


class KeyExchangeTask(_ProtocolTask):
    """Curve25519 key exchange for one key number."""

    track = Track.KEY_EXCHANGE
    State = KeyExchangeState
    required_characteristics = frozenset({CFG_IN_CHAR_UUID, CFG_OUT_CHAR_UUID})
    failure_codes = {
        KeyExchangeState.WAIT_BT_ENABLED: ErrorCode.TRANSPORT_UNAVAILABLE,
        KeyExchangeState.WAIT_DEVICE_SELECTED: ErrorCode.NO_ENDPOINT_SELECTED,
        KeyExchangeState.WAIT_CONNECTED: ErrorCode.CONNECTION_FAILED,
        KeyExchangeState.WAIT_SERVICES_DISCOVERED: ErrorCode.SERVICE_DISCOVERY_FAILED,
        KeyExchangeState.WAIT_CFG_OUT_SUBSCRIBE_ACK: ErrorCode.SUBSCRIBE_FAILED,
        KeyExchangeState.WAIT_KEY_PART1_ACK: ErrorCode.WRITE_FAILED,
        KeyExchangeState.WAIT_KEY_PART2_ACK: ErrorCode.WRITE_FAILED,
        KeyExchangeState.WAIT_SERVER_KEY_PART1: ErrorCode.SUBSCRIBE_FAILED,
        KeyExchangeState.WAIT_SERVER_KEY_PART2: ErrorCode.SUBSCRIBE_FAILED,
    }

    @property
    def exchange(self) -> KeyExchangeSession:
        return self.session.key_exchange

    def _start_protocol(self) -> None:
        # Unlike the nonce channel, the cfgOut subscription is acknowledged
        # before the client key is sent.
        self.transport.subscribe(Channel.CFG_OUT)
        self._set_state(KeyExchangeState.WAIT_CFG_OUT_SUBSCRIBE_ACK)

    def _handle_protocol_event(self, event: Event) -> bool:
        if self.state == KeyExchangeState.WAIT_CFG_OUT_SUBSCRIBE_ACK:
            if isinstance(event, SubscribeAck) and event.channel == Channel.CFG_OUT:
                self._send_client_key()
                return False
        elif self.state == KeyExchangeState.WAIT_KEY_PART1_ACK:
            if isinstance(event, WriteAck) and event.channel == Channel.CFG_IN:
                self.transport.write(Channel.CFG_IN, self.session.chunks[1])
                self._set_state(KeyExchangeState.WAIT_KEY_PART2_ACK)
                return False
        elif self.state == KeyExchangeState.WAIT_KEY_PART2_ACK:
            if isinstance(event, WriteAck) and event.channel == Channel.CFG_IN:
                self._set_state(KeyExchangeState.WAIT_SERVER_KEY_PART1)
                return False
        elif self.state == KeyExchangeState.WAIT_SERVER_KEY_PART1:
            if isinstance(event, NotificationReceived) and event.channel == Channel.CFG_OUT:
                self.exchange.server_public_key, _ = reassemble(
                    self.exchange.target_key_number, 0, event.value
                )
                self._set_state(KeyExchangeState.WAIT_SERVER_KEY_PART2)
                return False
        elif self.state == KeyExchangeState.WAIT_SERVER_KEY_PART2:
            if isinstance(event, NotificationReceived) and event.channel == Channel.CFG_OUT:
                self.exchange.server_public_key, _ = reassemble(
                    self.exchange.target_key_number, 1, event.value,
                    self.exchange.server_public_key,
                )
                self._derive_shared_secret()
                return True

        self._ignore(event)
        return False

    def _send_client_key(self) -> None:
        try:
            private_key, public_key = crypto.generate_key_pair(self.machine.random_source)
        except ValueError as e:
            raise ProtocolError(ErrorCode.TRANSPORT_UNAVAILABLE, f"key generation: {e}")

        self.exchange.client_private_key = private_key
        self.exchange.client_public_key = public_key
        self.session.chunks = split(public_key, self.exchange.target_key_number)
        logger.debug(f"Client public key: {public_key.hex()}")

        self.transport.write(Channel.CFG_IN, self.session.chunks[0])
        self._set_state(KeyExchangeState.WAIT_KEY_PART1_ACK)

    def _derive_shared_secret(self) -> None:
        server_key = bytes(self.exchange.server_public_key)
        logger.debug(f"Server public key: {server_key.hex()}")
        try:
            shared_secret = crypto.derive_shared_secret(self.exchange.client_private_key, server_key)
        except ValueError as e:
            raise ProtocolError(ErrorCode.TRANSPORT_UNAVAILABLE, f"key derivation: {e}")

        self.exchange.shared_secret = shared_secret
        self.machine.pending_key = PendingKey(self.exchange.target_key_number, shared_secret)

        checksum = crypto.secret_checksum(shared_secret)
        logger.info(f"Key checksum: {crypto.checksum_to_hex(checksum)}")
        self.machine.notify(DisplayChecksum(checksum))


class Key20StateMachine:
    """
    Supervisor of the unlock and key exchange tasks.

    Events are handed to handle_event() one at a time, in arrival order.
    Side effects go to the transport (requests), to the UI (notify) and back
    onto the event queue (post).
    """

    def __init__(
        self,
        transport: Transport,
        notify: Callable[[UiEvent], None],
        post: Callable[[Event], None],
        key_material: Optional[KeyMaterial] = None,
        device_address: Optional[str] = None,
        store: Optional[KeyPersistence] = None,
        random_source: crypto.RandomSource = os.urandom,
    ):
        """
        Initialize the state machine.

        Args:
            transport: Transport used to reach the lock
            notify: Receives lifecycle and result events for the UI
            post: Puts an event on the client's event queue
            key_material: The active key, if one was provisioned
            device_address: Last-used lock address
            store: Persists the key and device address (optional)
            random_source: Secure random source for key generation
        """
        self.transport = transport
        self.notify = notify
        self.post = post
        self.key_material = key_material or KeyMaterial()
        self.device_address = device_address
        self.store = store
        self.random_source = random_source
        self.session = SessionContext()
        self.pending_key: Optional[PendingKey] = None
        self._task: Optional[_ProtocolTask] = None

    @property
    def is_idle(self) -> bool:
        return self._task is None

    @property
    def track(self) -> Optional[Track]:
        return self._task.track if self._task else None

    @property
    def state(self) -> Optional[Enum]:
        """State of the running task, None while idle."""
        return self._task.state if self._task else None

    @property
    def awaiting_device_selection(self) -> bool:
        return self._task is not None and self._task.state == self._task.State.WAIT_DEVICE_SELECTED

    def remember_device(self, address: str) -> None:
        if address == self.device_address:
            return
        self.device_address = address
        if self.store is None:
            return
        try:
            self.store.save_device_address(address)
        except OSError as e:
            # The address stays known for this session
            logger.error(f"Could not store device address: {e}")

    def handle_event(self, event: Event) -> None:
        """Process one event to completion."""
        if isinstance(event, (StartUnlock, StartKeyExchange)) and self._task is not None:
            logger.warning(f"Rejecting {type(event).__name__}: {self._task.track.value} in progress")
            self.notify(ErrorReported(ErrorCode.TASK_ALREADY_IN_PROGRESS))
            return

        if self._task is None:
            self._handle_idle_event(event)
            return

        try:
            finished = self._task.handle_event(event)
        except ProtocolError as e:
            logger.error(f"{self._task.track.value} failed: {e}")
            self._end_task(success=False, error=e.code)
            return

        if finished:
            self._end_task(success=True)

    def _handle_idle_event(self, event: Event) -> None:
        if isinstance(event, StartUnlock):
            if not self.key_material.is_valid:
                logger.warning("Cannot unlock: no key defined")
                self.notify(ErrorReported(ErrorCode.NO_KEY_CONFIGURED))
                return
            self._start_task(UnlockTask)
        elif isinstance(event, StartKeyExchange):
            if not 0 <= event.key_number <= MAX_KEY_NUMBER:
                logger.warning(f"Invalid key number: {event.key_number}")
                self.notify(ErrorReported(ErrorCode.PROTOCOL_VIOLATION))
                return
            self.pending_key = None
            self._start_task(KeyExchangeTask, KeyExchangeSession(event.key_number))
        elif isinstance(event, KeyConfirmed):
            self._confirm_key()
        elif isinstance(event, KeyDenied):
            self._deny_key()
        else:
            logger.debug(f"idle: ignoring {type(event).__name__}")

    def _start_task(self, task_class: type, key_exchange: Optional[KeyExchangeSession] = None) -> None:
        self.session = SessionContext(key_exchange=key_exchange)
        self._task = task_class(self)
        logger.info(f"Starting {self._task.track.value}")
        self.notify(TaskStarted(self._task.track))
        self.transport.ensure_enabled()

    def _end_task(self, success: bool, error: Optional[ErrorCode] = None) -> None:
        track = self._task.track
        self.transport.close()
        self._task = None
        self.session = SessionContext()
        if success:
            logger.info(f"Finished {track.value}")
        self.notify(TaskFinished(track=track, success=success, error=error))

    def _confirm_key(self) -> None:
        if self.pending_key is None:
            logger.warning("Key confirmation without exchanged key")
            self.notify(ErrorReported(ErrorCode.NO_SHARED_SECRET_TO_CONFIRM))
            return

        pending = self.pending_key
        key_material = KeyMaterial(key_number=pending.key_number, secret=pending.secret)
        if self.store is not None:
            try:
                self.store.save_key_material(key_material)
            except OSError as e:
                # The pending key is kept so the confirmation can be retried
                logger.error(f"Could not store key {pending.key_number}: {e}")
                self.notify(ErrorReported(ErrorCode.KEY_STORAGE_FAILED))
                return
        self.key_material = key_material
        self.pending_key = None
        logger.info(f"Key {pending.key_number} confirmed")
        self.notify(KeyCommitted(pending.key_number))

    def _deny_key(self) -> None:
        if self.pending_key is None:
            logger.warning("Key denial without exchanged key")
            return
        pending, self.pending_key = self.pending_key, None
        logger.info(f"Key {pending.key_number} discarded")
        self.notify(KeyDiscarded(pending.key_number))
