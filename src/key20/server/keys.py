"""Key slot file of the lock simulator: JSON mapping slot number to base64 key."""

import base64
import binascii
import json
import logging
import os
from pathlib import Path

from ..crypto import KEY_SIZE
from .state import KEY_COUNT

logger = logging.getLogger(__name__)

DEFAULT_KEY_FILE = Path.home() / ".key20" / "lock_keys.json"


def load_keys(path: Path) -> dict[int, bytes]:
    """
    Load the stored keys, skipping invalid entries.

    A missing file means no key is stored yet.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No key file at {path}, all slots empty")
        return {}

    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    keys = {}
    for slot, encoded in data.items():
        try:
            key_number = int(slot)
            key = base64.b64decode(encoded, validate=True)
        except (TypeError, ValueError, binascii.Error) as e:
            logger.warning(f"Skipping key slot {slot!r}: {e}")
            continue
        if not 0 <= key_number < KEY_COUNT or len(key) != KEY_SIZE:
            logger.warning(f"Skipping invalid key slot {slot!r}")
            continue
        keys[key_number] = key

    logger.info(f"Loaded {len(keys)} key(s) from {path}")
    return keys


def save_keys(path: Path, keys: dict[int, bytes]) -> None:
    """Write all keys, replacing the file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {str(slot): base64.b64encode(key).decode("ascii") for slot, key in sorted(keys.items())}

    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)
    logger.info(f"Stored {len(keys)} key(s) in {path}")
