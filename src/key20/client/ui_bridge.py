"""
WebSocket bridge between the Key20 client and an external user interface.

The UI sends intents as JSON messages, e.g. {"intent": "unlock"} or
{"intent": "key_exchange", "key_number": 1}, and receives every lifecycle
event of the client as a JSON message.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from .client import Key20Client
from .events import (
    DeviceSelected,
    DisplayChecksum,
    ErrorReported,
    Event,
    KeyCommitted,
    KeyConfirmed,
    KeyDenied,
    KeyDiscarded,
    RequestDeviceSelection,
    StartKeyExchange,
    StartUnlock,
    TaskFinished,
    TaskStarted,
    UiEvent,
)

logger = logging.getLogger(__name__)

# WebSocket server configuration
WEBSOCKET_HOST = "localhost"
WEBSOCKET_PORT = 8720


def intent_from_message(data: dict[str, Any]) -> Event:
    """
    Convert a decoded UI message into a user intent.

    Raises:
        ValueError: If the message does not name a known intent
    """
    intent = data.get("intent")
    if intent == "unlock":
        return StartUnlock()
    if intent == "key_exchange":
        key_number = data.get("key_number")
        if not isinstance(key_number, int) or isinstance(key_number, bool):
            raise ValueError(f"key_number must be an integer, got {key_number!r}")
        return StartKeyExchange(key_number)
    if intent == "confirm":
        return KeyConfirmed()
    if intent == "deny":
        return KeyDenied()
    if intent == "select_device":
        address = data.get("address")
        if not isinstance(address, str) or not address:
            raise ValueError("select_device needs an address")
        return DeviceSelected(address)
    raise ValueError(f"Unknown intent: {intent!r}")


def ui_event_to_message(event: UiEvent) -> dict[str, Any]:
    """Convert a UI event into a JSON-serializable message."""
    if isinstance(event, TaskStarted):
        return {"event": "task_started", "track": event.track.value}
    if isinstance(event, TaskFinished):
        return {
            "event": "task_finished",
            "track": event.track.value,
            "success": event.success,
            "error": event.error.name if event.error else None,
            "message": event.error.to_message() if event.error else None,
        }
    if isinstance(event, DisplayChecksum):
        return {"event": "checksum", "checksum": event.hex}
    if isinstance(event, RequestDeviceSelection):
        return {"event": "select_device"}
    if isinstance(event, ErrorReported):
        return {"event": "error", "error": event.error.name, "message": event.error.to_message()}
    if isinstance(event, KeyCommitted):
        return {"event": "key_committed", "key_number": event.key_number}
    if isinstance(event, KeyDiscarded):
        return {"event": "key_discarded", "key_number": event.key_number}
    raise ValueError(f"Unknown UI event: {event!r}")


class UiBridge:
    """
    WebSocket server forwarding intents to a Key20Client and broadcasting
    its events to all connected UIs.
    """

    def __init__(
        self,
        client: Key20Client,
        host: str = WEBSOCKET_HOST,
        port: int = WEBSOCKET_PORT,
    ):
        self.client = client
        self.host = host
        self.port = port
        self._clients: set[ServerConnection] = set()
        self._server: Optional[Server] = None
        self._remove_listener = None
        self._sends: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the WebSocket server and subscribe to client events."""
        self._server = await serve(self._handle_connection, self.host, self.port)
        self._remove_listener = self.client.add_listener(self._on_ui_event)
        logger.info(f"UI bridge listening on ws://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("UI bridge stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        self._clients.add(websocket)
        logger.info(f"UI connected: {websocket.remote_address}")
        try:
            async for message in websocket:
                await self._handle_message(websocket, message)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)
            logger.info(f"UI disconnected: {websocket.remote_address}")

    async def _handle_message(self, websocket: ServerConnection, message) -> None:
        try:
            data = json.loads(message)
            if not isinstance(data, dict):
                raise ValueError("message must be a JSON object")
            intent = intent_from_message(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Invalid UI message {message!r}: {e}")
            await websocket.send(json.dumps({"event": "invalid_message", "message": str(e)}))
            return

        logger.info(f"UI intent: {type(intent).__name__}")
        self.client.post(intent)

    def _on_ui_event(self, event: UiEvent) -> None:
        if not self._clients:
            return
        task = asyncio.get_running_loop().create_task(
            self._broadcast(json.dumps(ui_event_to_message(event)))
        )
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def _broadcast(self, message: str) -> None:
        disconnected = set()
        for websocket in list(self._clients):
            try:
                await websocket.send(message)
            except websockets.exceptions.ConnectionClosed:
                disconnected.add(websocket)
        self._clients -= disconnected

    @property
    def client_count(self) -> int:
        return len(self._clients)
