"""
Lock-side state machine of the Key20 protocols.

States:
    IDLE -> AUTH_WAIT_SUBSCRIPTION -> AUTH_WAIT_HMAC_PART1 -> AUTH_WAIT_HMAC_PART2
         -> AUTH_WAIT_DISCONNECT -> IDLE

    AUTH_WAIT_* -(timeout)-> ABORTED_WAIT_DISCONNECT -> IDLE

    IDLE -> CFG_WAIT_CONNECTION -> CFG_WAIT_SUBSCRIPTION -> CFG_WAIT_KEY_PART1
         -> CFG_WAIT_KEY_PART2 -> CFG_WAIT_DISCONNECT -> CFG_WAIT_DECISION -> IDLE

The handler is transport independent. Connection, subscription and write
events go in; the values to indicate to the client come back out.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from .. import crypto
from ..protocol import (
    CHUNK_PARTS,
    CHUNK_PAYLOAD_LENGTH,
    Channel,
    Chunk,
    ProtocolError,
    split,
)

logger = logging.getLogger(__name__)

KEY_COUNT = 4

# (channel, value) pairs to send to the client as indications, in order
Indications = list[tuple[Channel, bytes]]


class LockState(Enum):
    """Lock state machine states."""
    IDLE = auto()
    CFG_WAIT_CONNECTION = auto()
    CFG_WAIT_SUBSCRIPTION = auto()
    CFG_WAIT_KEY_PART1 = auto()
    CFG_WAIT_KEY_PART2 = auto()
    CFG_WAIT_DISCONNECT = auto()
    CFG_WAIT_DECISION = auto()
    AUTH_WAIT_SUBSCRIPTION = auto()
    AUTH_WAIT_HMAC_PART1 = auto()
    AUTH_WAIT_HMAC_PART2 = auto()
    AUTH_WAIT_DISCONNECT = auto()
    ABORTED_WAIT_DISCONNECT = auto()


# Connected configuration states; the red button aborts them
_CFG_CONNECTED_STATES = (
    LockState.CFG_WAIT_SUBSCRIPTION,
    LockState.CFG_WAIT_KEY_PART1,
    LockState.CFG_WAIT_KEY_PART2,
    LockState.CFG_WAIT_DISCONNECT,
)

# States covered by the authentication timeout
_AUTH_TIMED_STATES = (
    LockState.AUTH_WAIT_SUBSCRIPTION,
    LockState.AUTH_WAIT_HMAC_PART1,
    LockState.AUTH_WAIT_HMAC_PART2,
)


@dataclass
class LockSession:
    """Per-connection data."""
    nonce: Optional[bytes] = None
    key_number: Optional[int] = None
    received: Optional[bytearray] = None
    shared_secret: Optional[bytes] = None
    checksum: Optional[bytes] = None


class LockProtocolHandler:
    """
    Handles the lock side of authentication and key exchange.

    Keys live in KEY_COUNT slots. A connection authenticates unless the
    configuration was armed with start_configuration() before it.
    """

    def __init__(
        self,
        keys: Optional[dict[int, bytes]] = None,
        random_source: crypto.RandomSource = os.urandom,
        on_unlock: Optional[Callable[[int], None]] = None,
        on_keys_changed: Optional[Callable[[dict[int, bytes]], None]] = None,
    ):
        """
        Initialize the protocol handler.

        Args:
            keys: Stored keys by slot number
            random_source: Secure random source for nonces and key pairs
            on_unlock: Called with the key number after a valid unlock
            on_keys_changed: Called with all keys after a key was stored
        """
        self.keys: dict[int, bytes] = dict(keys or {})
        self.random_source = random_source
        self.on_unlock = on_unlock
        self.on_keys_changed = on_keys_changed
        self.state = LockState.IDLE
        self.session = LockSession()

    def _set_state(self, state: LockState) -> None:
        logger.info(f"Lock: {self.state.name} -> {state.name}")
        self.state = state

    def _reset(self) -> None:
        self.session = LockSession()
        self._set_state(LockState.IDLE)

    @property
    def checksum(self) -> Optional[str]:
        """Checksum of the key being exchanged, as shown on the display."""
        if self.session.checksum is None:
            return None
        return crypto.checksum_to_hex(self.session.checksum)

    @property
    def authenticating(self) -> bool:
        """True while the authentication timeout applies."""
        return self.state in _AUTH_TIMED_STATES

    # -----------------------------------------------------------------
    # Buttons
    # -----------------------------------------------------------------

    def start_configuration(self) -> bool:
        """
        Red button: arm the key exchange, or abort it.

        Returns:
            True if the connected client must be disconnected
        """
        if self.state == LockState.IDLE:
            logger.info("Waiting for client key")
            self._set_state(LockState.CFG_WAIT_CONNECTION)
        elif self.state == LockState.CFG_WAIT_CONNECTION:
            logger.info("Configuration aborted")
            self._set_state(LockState.IDLE)
        elif self.state in _CFG_CONNECTED_STATES:
            logger.info("Configuration aborted, disconnecting client")
            self._set_state(LockState.ABORTED_WAIT_DISCONNECT)
            return True
        elif self.state == LockState.CFG_WAIT_DECISION:
            self.deny_key()
        else:
            logger.debug(f"Red button ignored in {self.state.name}")
        return False

    def confirm_key(self) -> Optional[int]:
        """
        Green button: store the exchanged key in its slot.

        Returns:
            The key number stored, None if no key was waiting
        """
        if self.state != LockState.CFG_WAIT_DECISION:
            logger.warning(f"No key to confirm in {self.state.name}")
            return None

        key_number = self.session.key_number
        self.keys[key_number] = self.session.shared_secret
        logger.info(f"Storing key {key_number}")
        if self.on_keys_changed:
            self.on_keys_changed(dict(self.keys))
        self._reset()
        return key_number

    def deny_key(self) -> None:
        """Discard the exchanged key."""
        if self.state != LockState.CFG_WAIT_DECISION:
            logger.warning(f"No key to deny in {self.state.name}")
            return
        logger.info(f"Key {self.session.key_number} discarded")
        self._reset()

    # -----------------------------------------------------------------
    # Timers
    # -----------------------------------------------------------------

    def auth_timeout(self) -> bool:
        """
        Authentication took too long: abort it.

        Returns:
            True if the connected client must be disconnected
        """
        if not self.authenticating:
            return False
        logger.warning(f"Authentication timed out in {self.state.name}")
        self.session = LockSession()
        self._set_state(LockState.ABORTED_WAIT_DISCONNECT)
        return True

    # -----------------------------------------------------------------
    # Connection events
    # -----------------------------------------------------------------

    def on_connect(self) -> None:
        if self.state == LockState.IDLE:
            logger.info("Client connected, authentication")
            self._set_state(LockState.AUTH_WAIT_SUBSCRIPTION)
        elif self.state == LockState.CFG_WAIT_CONNECTION:
            logger.info("Client connected, key exchange")
            self._set_state(LockState.CFG_WAIT_SUBSCRIPTION)
        else:
            logger.debug(f"Connect ignored in {self.state.name}")

    def on_disconnect(self) -> None:
        if self.state == LockState.AUTH_WAIT_DISCONNECT:
            key_number = self.session.key_number
            if self._check_auth():
                logger.info(f"Key {key_number} valid, opening door")
                if self.on_unlock:
                    self.on_unlock(key_number)
            else:
                logger.warning(f"Authentication with key {key_number} failed")
            self._reset()
        elif self.state == LockState.CFG_WAIT_DISCONNECT:
            logger.info(f"Confirm key {self.session.key_number} with checksum {self.checksum}")
            self._set_state(LockState.CFG_WAIT_DECISION)
        elif self.state in (LockState.IDLE, LockState.CFG_WAIT_CONNECTION, LockState.CFG_WAIT_DECISION):
            logger.debug(f"Disconnect ignored in {self.state.name}")
        else:
            logger.info(f"Client disconnected in {self.state.name}")
            self._reset()

    def on_subscribe(self, channel: Channel) -> Indications:
        """Handle an enabled subscription; returns the values to indicate."""
        if self.state in (LockState.IDLE, LockState.CFG_WAIT_CONNECTION):
            # The subscription can be reported before the connection
            self.on_connect()

        if self.state == LockState.AUTH_WAIT_SUBSCRIPTION and channel == Channel.NONCE:
            nonce = crypto.generate_nonce(self.random_source)
            self.session.nonce = nonce
            logger.debug(f"Nonce: {nonce.hex()}")
            self._set_state(LockState.AUTH_WAIT_HMAC_PART1)
            return [(Channel.NONCE, nonce)]
        if self.state == LockState.CFG_WAIT_SUBSCRIPTION and channel == Channel.CFG_OUT:
            self._set_state(LockState.CFG_WAIT_KEY_PART1)
            return []

        logger.debug(f"Subscription to {channel.name} ignored in {self.state.name}")
        return []

    def on_write(self, channel: Channel, value: bytes) -> Indications:
        """Handle a characteristic write; returns the values to indicate."""
        if channel == Channel.UNLOCK and self.state in (
            LockState.AUTH_WAIT_HMAC_PART1, LockState.AUTH_WAIT_HMAC_PART2,
        ):
            if not self._store_part(value):
                return []
            if self.state == LockState.AUTH_WAIT_HMAC_PART1:
                self._set_state(LockState.AUTH_WAIT_HMAC_PART2)
            else:
                self._set_state(LockState.AUTH_WAIT_DISCONNECT)
            return []

        if channel == Channel.CFG_IN and self.state in (
            LockState.CFG_WAIT_KEY_PART1, LockState.CFG_WAIT_KEY_PART2,
        ):
            if not self._store_part(value):
                return []
            if self.state == LockState.CFG_WAIT_KEY_PART1:
                self._set_state(LockState.CFG_WAIT_KEY_PART2)
                return []
            return self._answer_client_key()

        logger.debug(f"Write to {channel.name} ignored in {self.state.name}")
        return []

    def _store_part(self, value: bytes) -> bool:
        """Copy a chunk into the receive buffer; False if it is invalid."""
        try:
            chunk = Chunk.parse(value)
        except ProtocolError as e:
            logger.warning(f"Invalid chunk: {e}")
            return False
        if chunk.key_id >= KEY_COUNT:
            logger.warning(f"Invalid key number: {chunk.key_id}")
            return False
        if chunk.part >= CHUNK_PARTS:
            logger.warning(f"Invalid part number: {chunk.part}")
            return False

        if self.session.received is None:
            self.session.received = bytearray(CHUNK_PARTS * CHUNK_PAYLOAD_LENGTH)
        offset = chunk.part * CHUNK_PAYLOAD_LENGTH
        self.session.received[offset:offset + CHUNK_PAYLOAD_LENGTH] = chunk.payload
        self.session.key_number = chunk.key_id
        return True

    def _answer_client_key(self) -> Indications:
        client_public_key = bytes(self.session.received)
        key_number = self.session.key_number
        try:
            private_key, public_key = crypto.generate_key_pair(self.random_source)
            shared_secret = crypto.derive_shared_secret(private_key, client_public_key)
        except ValueError as e:
            logger.error(f"Key exchange failed: {e}")
            self._set_state(LockState.ABORTED_WAIT_DISCONNECT)
            return []

        self.session.shared_secret = shared_secret
        self.session.checksum = crypto.secret_checksum(shared_secret)
        logger.info(f"Key {key_number} checksum: {self.checksum}")
        self._set_state(LockState.CFG_WAIT_DISCONNECT)
        return [(Channel.CFG_OUT, chunk) for chunk in split(public_key, key_number)]

    def _check_auth(self) -> bool:
        key = self.keys.get(self.session.key_number)
        if key is None or self.session.nonce is None:
            return False
        return crypto.verify_hmac_sha512_256(key, self.session.nonce, self.session.received)
