"""WebSocket channel for live conversion status.

Clients send ``{"type": "subscribe", "id": ...}`` or
``{"type": "unsubscribe", "id": ...}`` and receive
``{"type": "status", "id": ..., "job": ...}`` pushes.

Runs the websockets synchronous server in a daemon thread (one thread per
connection), next to the HTTP server.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any, Optional

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import Server, ServerConnection, serve

if TYPE_CHECKING:
    from vhoster.pipeline.broadcast import StatusHub

logger = logging.getLogger(__name__)

DEFAULT_WS_PORT = 3001


class StatusChannelServer:
    """Bridges WebSocket connections to the StatusHub.

    Usage::

        channel = StatusChannelServer(hub, port=3001)
        channel.start()   # non-blocking
        ...
        channel.stop()
    """

    def __init__(self, hub: "StatusHub", host: str = "0.0.0.0", port: int = DEFAULT_WS_PORT) -> None:
        self.hub = hub
        self.host = host
        self._requested_port = port
        self._server: Optional[Server] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._server is not None:
            return self._server.socket.getsockname()[1]
        return self._requested_port

    def handle(self, connection: ServerConnection) -> None:
        """Per-connection loop; hub cleanup runs exactly once however it ends."""
        try:
            for raw in connection:
                self.dispatch(connection, raw)
        except ConnectionClosed as exc:
            logger.debug("Status channel closed abnormally: %s", exc)
        finally:
            self.hub.on_connection_closed(connection)

    def dispatch(self, connection: Any, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring malformed status channel message: %r", raw)
            return
        if not isinstance(data, dict):
            return
        media_id = data.get("id")
        if not isinstance(media_id, str) or not media_id:
            return

        msg_type = data.get("type")
        if msg_type == "subscribe":
            self.hub.subscribe(connection, media_id)
        elif msg_type == "unsubscribe":
            self.hub.unsubscribe(connection, media_id)
        else:
            logger.debug("Ignoring status channel message type %r", msg_type)

    def start(self) -> None:
        """Start the channel in a daemon background thread."""
        try:
            self._server = serve(self.handle, self.host, self._requested_port)
        except OSError as exc:
            logger.warning("Status channel: could not bind to %s:%d: %s", self.host, self._requested_port, exc)
            return

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="vhoster-status-channel",
            daemon=True,
        )
        self._thread.start()
        display_host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        logger.info("Status channel: ws://%s:%d/", display_host, self.port)

    def stop(self) -> None:
        """Close the listener and every open connection."""
        if self._server:
            self._server.shutdown()
            self._server = None
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
