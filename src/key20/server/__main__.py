"""
Entry point for running the lock simulator as a module.

Usage:
    python -m key20.server
    python -m key20.server --name Key20 --key-file keys.json -v
"""

import argparse
import asyncio
import logging
from pathlib import Path

from .keys import DEFAULT_KEY_FILE, load_keys
from .server import SERVER_NAME, Key20GattServer

logger = logging.getLogger(__name__)


async def run(name: str, key_file: Path) -> None:
    keys = load_keys(key_file)
    server = Key20GattServer(keys=keys, key_file=key_file, name=name)
    await server.run_forever()


def main() -> None:
    parser = argparse.ArgumentParser(description="Key20 lock simulator")
    parser.add_argument(
        "--name",
        type=str,
        default=SERVER_NAME,
        help=f"Advertised device name (default: {SERVER_NAME})",
    )
    parser.add_argument(
        "--key-file",
        type=Path,
        default=DEFAULT_KEY_FILE,
        help=f"Key slot file (default: {DEFAULT_KEY_FILE})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    asyncio.run(run(args.name, args.key_file))


if __name__ == "__main__":
    main()
