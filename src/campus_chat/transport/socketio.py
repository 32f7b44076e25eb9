"""
Socket.IO connection manager for the chat push channel.

Connection: {baseUrl}/realtime/socket.io/ with auth={token}.
Waits for the `ready` event before resolving connect().
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from campus_chat.errors import NetworkError
from campus_chat.transport.envelope import build_envelope

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "/realtime/socket.io/"
LIFECYCLE_EVENTS = ("connect", "disconnect", "connect_error", "ready")

EventHandler = Callable[[str, dict[str, Any]], None]


class SocketIOManager:
    def __init__(
        self,
        base_url: str,
        token: str,
        user_id: str,
        device_id: Optional[str] = None,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
    ):
        self._base_url = base_url
        self._token = token
        self._user_id = user_id
        self._device_id = device_id or str(uuid.uuid4())
        self._transports = transports or ["websocket"]
        self._ready_timeout = ready_timeout
        self._sio: Optional[socketio.AsyncClient] = None
        self._connected = False
        self._event_handlers: list[EventHandler] = []

    @property
    def connected(self) -> bool:
        return self._connected and self._sio is not None and self._sio.connected

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def handler_count(self) -> int:
        return len(self._event_handlers)

    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        """Add an event handler. Returns a cleanup function."""
        self._event_handlers.append(handler)

        def remove() -> None:
            try:
                self._event_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def dispatch(self, event: str, data: Any) -> None:
        """Fan a server event out to every handler."""
        if event in LIFECYCLE_EVENTS or not isinstance(data, dict):
            return
        for handler in list(self._event_handlers):
            try:
                handler(event, data)
            except Exception:
                logger.exception("Handler failed for %s", event)

    async def connect(self) -> None:
        """Connect to the backend and wait for `ready`."""
        if self._sio and self._sio.connected:
            return

        self._sio = socketio.AsyncClient()
        ready_event = asyncio.Event()

        @self._sio.on("ready")
        async def on_ready(*_args: Any) -> None:
            self._connected = True
            ready_event.set()

        @self._sio.on("*")
        async def on_any(event: str, data: Any) -> None:
            self.dispatch(event, data)

        @self._sio.event
        async def disconnect(_reason: str = "") -> None:
            self._connected = False
            logger.info("Socket.IO disconnected %s", _reason)

        try:
            await self._sio.connect(
                self._base_url,
                auth={"token": self._token},
                transports=self._transports,
                socketio_path=SOCKETIO_PATH,
            )
        except SocketIOConnectionError as e:
            raise NetworkError(f"Socket.IO connection failed: {e}") from e

        try:
            await asyncio.wait_for(ready_event.wait(), timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            await self._sio.disconnect()
            raise NetworkError(f"Timed out waiting for 'ready' event after {self._ready_timeout}s")

    def emit(
        self,
        event_type: str,
        data: Any,
        room_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        """Emit an enveloped event without waiting.

        Schedules the async emit on the running event loop. Errors are logged
        rather than silently swallowed.
        """
        if not self.connected:
            raise NetworkError("Socket.IO not connected")
        envelope = build_envelope(
            event_type, data,
            user_id=self._user_id,
            device_id=self._device_id,
            room_id=room_id,
            message_id=message_id,
        )

        async def _do_emit() -> None:
            try:
                await self._sio.emit(event_type, envelope)  # type: ignore[union-attr]
            except Exception as e:
                logger.error("Emit failed for %s: %s", event_type, e)

        asyncio.get_running_loop().create_task(_do_emit())

    async def emit_and_wait(
        self,
        event_type: str,
        data: Any,
        room_id: Optional[str] = None,
        timeout: float = 10.0,
    ) -> dict[str, Any]:
        """Emit and wait for the server's echo carrying the same request_id."""
        if not self.connected:
            raise NetworkError("Socket.IO not connected")
        request_id = str(uuid.uuid4())
        envelope = build_envelope(
            event_type, data,
            user_id=self._user_id,
            device_id=self._device_id,
            room_id=room_id,
            request_id=request_id,
        )

        result_event = asyncio.Event()
        result_data: dict[str, Any] = {}

        def response_handler(evt: str, raw: dict[str, Any]) -> None:
            if evt != event_type:
                return
            if (raw.get("metadata") or {}).get("request_id") == request_id:
                result_data.update((raw.get("payload") or {}).get("data") or {})
                result_event.set()

        remove_handler = self.add_event_handler(response_handler)
        try:
            await self._sio.emit(event_type, envelope)  # type: ignore[union-attr]
            await asyncio.wait_for(result_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise NetworkError(f"Timeout waiting for {event_type} response")
        finally:
            remove_handler()

        return result_data

    async def disconnect(self) -> None:
        self._connected = False
        if self._sio:
            await self._sio.disconnect()
            self._sio = None
