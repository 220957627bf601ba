"""
Persistent client state: the active key and the last-used lock address.

Stored as JSON with the secret base64-encoded. Read at start-up and written
only at task boundaries (key confirmation, device selection).
"""

import base64
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..protocol import INVALID_KEY_NUMBER, KEY_LENGTH, MAX_KEY_NUMBER

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path.home() / ".key20" / "client.json"

PREF_KEYNO = "key_number"
PREF_KEY = "key"
PREF_DEVICE_ADDRESS = "device_address"


@dataclass(frozen=True)
class KeyMaterial:
    """The key used for unlocking: secret is present iff key_number is valid."""
    key_number: int = INVALID_KEY_NUMBER
    secret: Optional[bytes] = None

    def __post_init__(self) -> None:
        if self.key_number == INVALID_KEY_NUMBER:
            if self.secret is not None:
                raise ValueError("Secret given for an invalid key number")
            return
        if not 0 <= self.key_number <= MAX_KEY_NUMBER:
            raise ValueError(f"Key number out of range: {self.key_number}")
        if self.secret is None or len(self.secret) != KEY_LENGTH:
            raise ValueError(f"Secret must be {KEY_LENGTH} bytes")

    @property
    def is_valid(self) -> bool:
        return self.key_number != INVALID_KEY_NUMBER


class KeyStore:
    """JSON file holding key number, secret and device address."""

    def __init__(self, path: Path = DEFAULT_STORE_PATH):
        self.path = Path(path)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read key store {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Key store {self.path} is not a JSON object, ignoring it")
            return {}
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)

    def load_key_material(self) -> KeyMaterial:
        """Load the active key, or an invalid KeyMaterial if none is stored."""
        data = self._read()
        if PREF_KEYNO not in data or PREF_KEY not in data:
            return KeyMaterial()
        try:
            return KeyMaterial(
                key_number=int(data[PREF_KEYNO]),
                secret=base64.b64decode(data[PREF_KEY]),
            )
        except (TypeError, ValueError) as e:
            logger.error(f"Stored key is invalid, ignoring it: {e}")
            return KeyMaterial()

    def save_key_material(self, key_material: KeyMaterial) -> None:
        data = self._read()
        if key_material.is_valid:
            data[PREF_KEYNO] = key_material.key_number
            data[PREF_KEY] = base64.b64encode(key_material.secret).decode("ascii")
        else:
            data.pop(PREF_KEYNO, None)
            data.pop(PREF_KEY, None)
        self._write(data)
        logger.info(f"Stored key number {key_material.key_number} in {self.path}")

    def load_device_address(self) -> Optional[str]:
        address = self._read().get(PREF_DEVICE_ADDRESS)
        return address if isinstance(address, str) and address else None

    def save_device_address(self, address: Optional[str]) -> None:
        data = self._read()
        if address:
            data[PREF_DEVICE_ADDRESS] = address
        else:
            data.pop(PREF_DEVICE_ADDRESS, None)
        self._write(data)
        logger.debug(f"Stored device address {address}")
