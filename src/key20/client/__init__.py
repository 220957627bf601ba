"""
Key20 BLE client.

This package implements the BLE central (GATT client) that unlocks a Key20
door lock with a shared secret, and provisions that secret through a
Curve25519 key exchange confirmed by the user.
"""

from .events import (
    Track,
    StartUnlock,
    StartKeyExchange,
    KeyConfirmed,
    KeyDenied,
    DeviceSelected,
    TaskStarted,
    TaskFinished,
    DisplayChecksum,
    RequestDeviceSelection,
    ErrorReported,
    KeyCommitted,
    KeyDiscarded,
)
from .state import (
    UnlockState,
    KeyExchangeState,
    Key20StateMachine,
)
from .store import (
    KeyMaterial,
    KeyStore,
    DEFAULT_STORE_PATH,
)
from .transport import (
    Transport,
    BleakTransport,
)
from .client import (
    Key20Client,
    ClientConfig,
    Result,
    scan_for_locks,
    DEVICE_NAME,
    SCAN_TIMEOUT,
)
from .ui_bridge import UiBridge

__all__ = [
    # Events
    "Track",
    "StartUnlock",
    "StartKeyExchange",
    "KeyConfirmed",
    "KeyDenied",
    "DeviceSelected",
    "TaskStarted",
    "TaskFinished",
    "DisplayChecksum",
    "RequestDeviceSelection",
    "ErrorReported",
    "KeyCommitted",
    "KeyDiscarded",
    # State
    "UnlockState",
    "KeyExchangeState",
    "Key20StateMachine",
    # Store
    "KeyMaterial",
    "KeyStore",
    "DEFAULT_STORE_PATH",
    # Transport
    "Transport",
    "BleakTransport",
    # Client
    "Key20Client",
    "ClientConfig",
    "Result",
    "scan_for_locks",
    "DEVICE_NAME",
    "SCAN_TIMEOUT",
    "UiBridge",
]
