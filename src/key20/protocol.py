"""
Key20 wire protocol definitions.

The lock exposes one GATT service with four characteristics. Values are
limited to 18 bytes, so 32-byte values (public keys, HMACs) travel as two
part-tagged chunks:

    [KeyNumber (1B)][Part (1B)][Half of the 32-byte value (16B)]

Part 0 always carries bytes [0..16) and part 1 bytes [16..32).
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional


NONCE_LENGTH = 16
HMAC_LENGTH = 32
KEY_LENGTH = 32
CHUNK_HEADER_LENGTH = 2
CHUNK_PAYLOAD_LENGTH = 16
CHUNK_PARTS = 2

# Maximum value lengths of the characteristics
MAX_CHAR_NONCE_LENGTH = 16
MAX_CHAR_UNLOCK_LENGTH = 18
MAX_CHAR_CFG_IN_LENGTH = 18
MAX_CHAR_CFG_OUT_LENGTH = 18

# Key number of an unset key
INVALID_KEY_NUMBER = -1
MAX_KEY_NUMBER = 0xFF

# 0x0a9dXXXX-5ff4-4c58-8a53-627de7cf1faf, XXXX being the 16 bit id
BASE_UUID = "0a9d{:04x}-5ff4-4c58-8a53-627de7cf1faf"


def make_uuid(short_id: int) -> str:
    """Expand a 16 bit service/characteristic id into a Key20 128 bit UUID."""
    return BASE_UUID.format(short_id & 0xFFFF)


KEY20_SERVICE_UUID = make_uuid(0x0001)
NONCE_CHAR_UUID = make_uuid(0x0002)
UNLOCK_CHAR_UUID = make_uuid(0x0003)
CFG_IN_CHAR_UUID = make_uuid(0x0004)
CFG_OUT_CHAR_UUID = make_uuid(0x0005)


class Channel(Enum):
    """
    The four Key20 characteristics.

    cfgIn carries messages from client to lock, cfgOut from lock to client.
    """
    NONCE = NONCE_CHAR_UUID
    UNLOCK = UNLOCK_CHAR_UUID
    CFG_IN = CFG_IN_CHAR_UUID
    CFG_OUT = CFG_OUT_CHAR_UUID

    @property
    def uuid(self) -> str:
        return self.value

    @property
    def max_length(self) -> int:
        return _MAX_LENGTHS[self]

    @classmethod
    def from_uuid(cls, uuid: str) -> Optional["Channel"]:
        """Look up a channel by UUID (case-insensitive), None if unknown."""
        try:
            return cls(str(uuid).lower())
        except ValueError:
            return None


_MAX_LENGTHS = {
    Channel.NONCE: MAX_CHAR_NONCE_LENGTH,
    Channel.UNLOCK: MAX_CHAR_UNLOCK_LENGTH,
    Channel.CFG_IN: MAX_CHAR_CFG_IN_LENGTH,
    Channel.CFG_OUT: MAX_CHAR_CFG_OUT_LENGTH,
}


class ErrorCode(IntEnum):
    """Errors reported to the user, classified by the failing step."""
    NO_KEY_CONFIGURED = 0x01
    TASK_ALREADY_IN_PROGRESS = 0x02
    TRANSPORT_UNAVAILABLE = 0x03
    NO_ENDPOINT_SELECTED = 0x04
    CONNECTION_FAILED = 0x05
    SERVICE_DISCOVERY_FAILED = 0x06
    REQUIRED_SERVICE_MISSING = 0x07
    REQUIRED_CHARACTERISTIC_MISSING = 0x08
    SUBSCRIBE_FAILED = 0x09
    WRITE_FAILED = 0x0A
    MALFORMED_NOTIFICATION = 0x0B
    PROTOCOL_VIOLATION = 0x0C
    NO_SHARED_SECRET_TO_CONFIRM = 0x0D
    KEY_STORAGE_FAILED = 0x0E

    def to_message(self) -> str:
        """Convert error code to user-friendly message."""
        messages = {
            ErrorCode.NO_KEY_CONFIGURED: "No key defined. Run a key exchange first",
            ErrorCode.TASK_ALREADY_IN_PROGRESS: "Another task is in progress",
            ErrorCode.TRANSPORT_UNAVAILABLE: "Bluetooth not available",
            ErrorCode.NO_ENDPOINT_SELECTED: "No lock selected",
            ErrorCode.CONNECTION_FAILED: "Could not connect to lock",
            ErrorCode.SERVICE_DISCOVERY_FAILED: "Service discovery failed",
            ErrorCode.REQUIRED_SERVICE_MISSING: "Device does not provide the Key20 service",
            ErrorCode.REQUIRED_CHARACTERISTIC_MISSING: "Device is missing a Key20 characteristic",
            ErrorCode.SUBSCRIBE_FAILED: "Did not receive data from lock",
            ErrorCode.WRITE_FAILED: "Could not send data to lock",
            ErrorCode.MALFORMED_NOTIFICATION: "Lock sent malformed data",
            ErrorCode.PROTOCOL_VIOLATION: "Protocol error",
            ErrorCode.NO_SHARED_SECRET_TO_CONFIRM: "No exchanged key to confirm",
            ErrorCode.KEY_STORAGE_FAILED: "Could not store key",
        }
        return messages.get(self, f"Unknown error: {self}")


class ProtocolError(Exception):
    """A protocol step failed; carries the error code reported to the user."""

    def __init__(self, code: ErrorCode, detail: str = ""):
        self.code = code
        self.detail = detail
        super().__init__(f"{code.name}: {detail}" if detail else code.name)


@dataclass(frozen=True)
class Chunk:
    """
    One half of a 32-byte value.

    Format: [KeyNumber (1B)][Part (1B)][Payload (16B)]
    Total: 18 bytes
    """
    key_id: int
    part: int
    payload: bytes

    def build(self) -> bytes:
        """Build the 18-byte characteristic value."""
        return bytes([self.key_id, self.part]) + self.payload

    @classmethod
    def parse(cls, data: bytes) -> "Chunk":
        """Parse a chunk from a characteristic value."""
        expected_size = CHUNK_HEADER_LENGTH + CHUNK_PAYLOAD_LENGTH
        if len(data) != expected_size:
            raise ProtocolError(
                ErrorCode.MALFORMED_NOTIFICATION,
                f"chunk has {len(data)} bytes (expected {expected_size})",
            )
        return cls(key_id=data[0], part=data[1], payload=bytes(data[CHUNK_HEADER_LENGTH:]))


def split(payload: bytes, key_id: int, capacity: int = MAX_CHAR_UNLOCK_LENGTH) -> list[bytes]:
    """
    Split a 32-byte value into two tagged characteristic values.

    Args:
        payload: The 32-byte value (public key or HMAC)
        key_id: Key number tagging both chunks
        capacity: Maximum characteristic value length

    Returns:
        [chunk0, chunk1], each [key_id][part][16 bytes]
    """
    if len(payload) != CHUNK_PARTS * CHUNK_PAYLOAD_LENGTH:
        raise ValueError(f"Payload must be {CHUNK_PARTS * CHUNK_PAYLOAD_LENGTH} bytes")
    if not 0 <= key_id <= MAX_KEY_NUMBER:
        raise ValueError(f"Key number out of range: {key_id}")
    if capacity < CHUNK_HEADER_LENGTH + CHUNK_PAYLOAD_LENGTH:
        raise ValueError(f"Characteristic capacity too small: {capacity}")

    return [
        Chunk(
            key_id=key_id,
            part=part,
            payload=bytes(payload[part * CHUNK_PAYLOAD_LENGTH:(part + 1) * CHUNK_PAYLOAD_LENGTH]),
        ).build()
        for part in range(CHUNK_PARTS)
    ]


def reassemble(
    expected_key_id: int,
    expected_next_part: int,
    received_chunk: bytes,
    buffer: Optional[bytearray] = None,
) -> tuple[bytearray, bool]:
    """
    Add a received chunk to a 32-byte reassembly buffer.

    Chunks are accepted strictly in order: part 1 is only valid after part 0
    of the same value was accepted, and both must carry the expected key id.

    Args:
        expected_key_id: Key number of the running exchange
        expected_next_part: 0 for the first chunk, 1 for the second
        received_chunk: Raw 18-byte characteristic value
        buffer: Buffer returned for part 0 (required for part 1)

    Returns:
        Tuple of (buffer, is_complete)

    Raises:
        ProtocolError: MALFORMED_NOTIFICATION on wrong length,
            PROTOCOL_VIOLATION on key id or part mismatch
    """
    chunk = Chunk.parse(received_chunk)

    if chunk.key_id != expected_key_id:
        raise ProtocolError(
            ErrorCode.PROTOCOL_VIOLATION,
            f"key number {chunk.key_id} (expected {expected_key_id})",
        )
    if chunk.part != expected_next_part:
        raise ProtocolError(
            ErrorCode.PROTOCOL_VIOLATION,
            f"part {chunk.part} (expected {expected_next_part})",
        )

    if expected_next_part == 0:
        buffer = bytearray(CHUNK_PARTS * CHUNK_PAYLOAD_LENGTH)
    elif buffer is None or len(buffer) != CHUNK_PARTS * CHUNK_PAYLOAD_LENGTH:
        raise ProtocolError(ErrorCode.PROTOCOL_VIOLATION, "part 1 without part 0")

    offset = chunk.part * CHUNK_PAYLOAD_LENGTH
    buffer[offset:offset + CHUNK_PAYLOAD_LENGTH] = chunk.payload
    return buffer, chunk.part == CHUNK_PARTS - 1


def parse_nonce(data: bytes) -> bytes:
    """Validate a nonce notification and return the raw nonce."""
    if len(data) != NONCE_LENGTH:
        raise ProtocolError(
            ErrorCode.MALFORMED_NOTIFICATION,
            f"nonce has {len(data)} bytes (expected {NONCE_LENGTH})",
        )
    return bytes(data)
