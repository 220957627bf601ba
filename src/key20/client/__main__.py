"""
Command line entry point for the Key20 client.

Usage:
    python -m key20.client scan
    python -m key20.client unlock
    python -m key20.client keyex 1
    python -m key20.client ui --port 8720
    python -m key20.client -v unlock  # verbose mode
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .client import (
    DEVICE_NAME,
    SCAN_TIMEOUT,
    ClientConfig,
    Key20Client,
    Result,
    scan_for_locks,
)
from .events import KeyConfirmed, KeyDenied, StartKeyExchange, StartUnlock
from .store import DEFAULT_STORE_PATH
from .ui_bridge import WEBSOCKET_HOST, WEBSOCKET_PORT, UiBridge

logger = logging.getLogger(__name__)


def _print_result(result: Result) -> int:
    print()
    if result.success:
        print(f"✓ {result.message}")
        return 0
    print(f"✗ {result.message}")
    return 1


async def scan(config: ClientConfig) -> int:
    locks = await scan_for_locks(config.scan_timeout, config.device_name)
    if not locks:
        print("No Key20 lock found")
        return 1
    for device in locks:
        print(f"{device.address}  {device.name or 'Unknown'}")
    return 0


async def unlock(config: ClientConfig) -> int:
    client = Key20Client(config)
    try:
        result = await client.run_intent(StartUnlock())
    finally:
        await client.aclose()
    return _print_result(result)


async def key_exchange(config: ClientConfig, key_number: int, assume_yes: bool = False) -> int:
    """
    Run a key exchange and ask the user to compare checksums.

    The new key only becomes active once the user confirms that the checksum
    equals the one shown by the lock.
    """
    client = Key20Client(config)
    try:
        result = await client.run_intent(StartKeyExchange(key_number))
        if not result.success:
            return _print_result(result)

        print()
        print(f"Checksum: {result.checksum}")
        if assume_yes:
            answer = "y"
        else:
            answer = await asyncio.get_running_loop().run_in_executor(
                None, input, "Does it match the lock display? [y/N] "
            )
        decision = KeyConfirmed() if answer.strip().lower() in ("y", "yes") else KeyDenied()
        result = await client.run_intent(decision)
    finally:
        await client.aclose()
    return _print_result(result)


async def run_ui(config: ClientConfig, host: str, port: int) -> int:
    client = Key20Client(config)
    bridge = UiBridge(client, host=host, port=port)
    await bridge.start()
    try:
        await client.run_forever()
    except asyncio.CancelledError:
        pass
    finally:
        await bridge.stop()
        await client.aclose()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Key20 BLE door lock client")
    parser.add_argument(
        "--store",
        type=Path,
        default=DEFAULT_STORE_PATH,
        help=f"Key store file (default: {DEFAULT_STORE_PATH})",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=SCAN_TIMEOUT,
        help=f"Scan timeout in seconds (default: {SCAN_TIMEOUT})",
    )
    parser.add_argument(
        "--device-name",
        type=str,
        default=DEVICE_NAME,
        help=f"Advertised lock name to look for (default: {DEVICE_NAME})",
    )
    parser.add_argument(
        "--adapter",
        type=str,
        help="Bluetooth adapter to use (e.g. hci0)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("scan", help="List nearby Key20 locks")
    subparsers.add_parser("unlock", help="Unlock the door with the stored key")
    keyex_parser = subparsers.add_parser("keyex", help="Exchange a new key with the lock")
    keyex_parser.add_argument("key_number", type=int, help="Key slot on the lock")
    keyex_parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Confirm the key without asking",
    )
    ui_parser = subparsers.add_parser("ui", help="Serve the client to a WebSocket UI")
    ui_parser.add_argument("--host", type=str, default=WEBSOCKET_HOST)
    ui_parser.add_argument("--port", type=int, default=WEBSOCKET_PORT)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = ClientConfig(
        store_path=args.store,
        scan_timeout=args.scan_timeout,
        device_name=args.device_name,
        adapter=args.adapter,
    )

    if args.command == "scan":
        coro = scan(config)
    elif args.command == "unlock":
        coro = unlock(config)
    elif args.command == "keyex":
        coro = key_exchange(config, args.key_number, args.yes)
    else:
        coro = run_ui(config, args.host, args.port)

    try:
        sys.exit(asyncio.run(coro))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
