"""
Key20 lock simulator.

This package implements the BLE peripheral (GATT server) side of the Key20
protocols: nonce/HMAC authentication and the key exchange with four key
slots confirmed on the lock.
"""

from .state import (
    KEY_COUNT,
    LockState,
    LockSession,
    LockProtocolHandler,
)
from .keys import (
    DEFAULT_KEY_FILE,
    load_keys,
    save_keys,
)
from .server import (
    Key20GattServer,
    SERVER_NAME,
)

__all__ = [
    # State
    "KEY_COUNT",
    "LockState",
    "LockSession",
    "LockProtocolHandler",
    # Keys
    "DEFAULT_KEY_FILE",
    "load_keys",
    "save_keys",
    # Server
    "Key20GattServer",
    "SERVER_NAME",
]
