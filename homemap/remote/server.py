"""WebSocket server accepting push peripheral connections."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from aiohttp import WSMsgType, web

from ..const import DEFAULT_WS_BIND, DEFAULT_WS_PORT, MSG_REQUEST
from ..errors import ProtocolDecodeError, TransportError

_LOGGER = logging.getLogger(__name__)


class ConnectionHandler(Protocol):
    """Receiver of connection lifecycle events and decoded messages."""

    def handle_connected(self, connection_id: str, address: str | None = None) -> None:
        """Called when a peripheral opens a connection."""

    async def async_handle_disconnected(self, connection_id: str) -> None:
        """Called after a connection closed."""

    async def async_handle_message(
        self, connection_id: str, message: Mapping[str, Any]
    ) -> None:
        """Called for every decoded JSON message."""


class PeripheralServer:
    """aiohttp WebSocket endpoint speaking the peripheral protocol."""

    def __init__(self, handler: ConnectionHandler | None = None) -> None:
        """Create a stopped server forwarding events to ``handler``."""

        self._handler = handler
        self._connections: dict[str, web.WebSocketResponse] = {}
        self._runner: web.AppRunner | None = None
        self._port: int | None = None

    def attach_handler(self, handler: ConnectionHandler) -> None:
        """Forward connection events to ``handler``."""

        self._handler = handler

    @property
    def is_running(self) -> bool:
        """Return whether the server is listening."""

        return self._runner is not None

    @property
    def port(self) -> int | None:
        """Return the port the server listens on."""

        return self._port

    def connected_clients(self) -> list[str]:
        """Return the ids of open connections."""

        return [conn_id for conn_id, ws in self._connections.items() if not ws.closed]

    def build_app(self) -> web.Application:
        """Return the aiohttp application serving the WebSocket route."""

        app = web.Application()
        app.router.add_get("/", self._handle_websocket)
        return app

    async def async_start(
        self, port: int = DEFAULT_WS_PORT, bind_address: str = DEFAULT_WS_BIND
    ) -> None:
        """Start listening on ``bind_address:port``."""

        if self._runner is not None:
            _LOGGER.debug("WebSocket server already running on port %s", self._port)
            return
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, bind_address, port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._port = port
        _LOGGER.info("WebSocket server listening on %s:%s", bind_address, port)

    async def async_stop(self) -> None:
        """Close every connection and stop listening."""

        for ws in list(self._connections.values()):
            await ws.close()
        self._connections.clear()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            _LOGGER.info("WebSocket server stopped")
        self._port = None

    async def async_send(self, connection_id: str, message: Mapping[str, Any]) -> None:
        """Send ``message`` as JSON to one connection."""

        ws = self._connections.get(connection_id)
        if ws is None or ws.closed:
            msg = f"Client {connection_id} is not connected"
            raise TransportError(msg)
        try:
            await ws.send_json(dict(message))
        except (ConnectionError, RuntimeError) as err:
            msg = f"Failed to send to {connection_id}: {err}"
            raise TransportError(msg) from err

    async def async_broadcast(self, message: Mapping[str, Any]) -> None:
        """Send ``message`` to every open connection."""

        for connection_id in self.connected_clients():
            try:
                await self.async_send(connection_id, message)
            except TransportError as err:
                _LOGGER.warning("Broadcast failed: %s", err)

    async def async_request_widgets(self, connection_id: str | None = None) -> None:
        """Ask one or every connection to register its widgets again."""

        message = {"type": MSG_REQUEST, "message": "Please send your widget definitions"}
        if connection_id is None:
            await self.async_broadcast(message)
        else:
            await self.async_send(connection_id, message)

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(autoping=True)
        await ws.prepare(request)

        peer = request.transport.get_extra_info("peername") if request.transport else None
        address = f"{peer[0]}:{peer[1]}" if peer else request.remote or "unknown"
        connection_id = f"client_{address}"
        self._connections[connection_id] = ws
        _LOGGER.info("Peripheral connected: %s", connection_id)
        if self._handler is not None:
            self._handler.handle_connected(connection_id, address)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._async_dispatch(connection_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    _LOGGER.warning(
                        "Connection %s closed with error %s", connection_id, ws.exception()
                    )
        finally:
            self._connections.pop(connection_id, None)
            _LOGGER.info("Peripheral disconnected: %s", connection_id)
            if self._handler is not None:
                await self._handler.async_handle_disconnected(connection_id)
        return ws

    async def _async_dispatch(self, connection_id: str, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as err:
            _LOGGER.error("Invalid JSON from %s: %s", connection_id, err)
            return
        if not isinstance(message, dict):
            _LOGGER.error("Message from %s is not an object", connection_id)
            return
        if self._handler is None:
            return
        try:
            await self._handler.async_handle_message(connection_id, message)
        except ProtocolDecodeError as err:
            _LOGGER.error("Rejected message from %s: %s", connection_id, err)
        except Exception:
            _LOGGER.exception("Unexpected failure handling message from %s", connection_id)
