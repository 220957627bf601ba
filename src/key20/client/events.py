"""
Events consumed and produced by the Key20 client state machine.

Inbound events come from the user (intents) and from the transport. They are
serialized through one queue and handled one at a time. Outbound events are
delivered to the UI collaborator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Union

from ..crypto import checksum_to_hex
from ..protocol import Channel, ErrorCode


class Track(Enum):
    """The two protocols sharing the state machine."""
    UNLOCK = "unlock"
    KEY_EXCHANGE = "key_exchange"


# -----------------------------------------------------------------
# User intents
# -----------------------------------------------------------------

@dataclass(frozen=True)
class StartUnlock:
    pass


@dataclass(frozen=True)
class StartKeyExchange:
    key_number: int


@dataclass(frozen=True)
class KeyConfirmed:
    pass


@dataclass(frozen=True)
class KeyDenied:
    pass


@dataclass(frozen=True)
class DeviceSelected:
    address: Optional[str] = None


@dataclass(frozen=True)
class BluetoothEnabled:
    pass


# -----------------------------------------------------------------
# Transport events
# -----------------------------------------------------------------

@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class ServicesDiscovered:
    """Discovered services: service UUID -> characteristic UUIDs (lower case)."""
    services: Mapping[str, frozenset] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscribeAck:
    channel: Channel


@dataclass(frozen=True)
class NotificationReceived:
    channel: Channel
    value: bytes


@dataclass(frozen=True)
class WriteAck:
    channel: Channel


@dataclass(frozen=True)
class Failure:
    reason: str = ""


Event = Union[
    StartUnlock, StartKeyExchange, KeyConfirmed, KeyDenied, DeviceSelected,
    BluetoothEnabled, Connected, Disconnected, ServicesDiscovered, SubscribeAck,
    NotificationReceived, WriteAck, Failure,
]


# -----------------------------------------------------------------
# Lifecycle and result events for the UI
# -----------------------------------------------------------------

@dataclass(frozen=True)
class TaskStarted:
    track: Track


@dataclass(frozen=True)
class TaskFinished:
    track: Track
    success: bool
    error: Optional[ErrorCode] = None


@dataclass(frozen=True)
class DisplayChecksum:
    checksum: bytes

    @property
    def hex(self) -> str:
        return checksum_to_hex(self.checksum)


@dataclass(frozen=True)
class RequestDeviceSelection:
    pass


@dataclass(frozen=True)
class ErrorReported:
    """An intent was rejected outside of a running task."""
    error: ErrorCode


@dataclass(frozen=True)
class KeyCommitted:
    key_number: int


@dataclass(frozen=True)
class KeyDiscarded:
    key_number: int


UiEvent = Union[
    TaskStarted, TaskFinished, DisplayChecksum, RequestDeviceSelection,
    ErrorReported, KeyCommitted, KeyDiscarded,
]
