"""WebSocket transport carrying JSON frames to the hub."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from hubclient.cancellation import CancellationToken
from hubclient.config import ClientSettings
from hubclient.errors import ClientError, ErrorKind, STATUS_CODE_KINDS

from .base import ProtocolTransport

LOGGER = logging.getLogger(__name__)

WEBSOCKET_PATH = "/$iothub/websocket"


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status


def _translate(exc: BaseException) -> ClientError:
    if isinstance(exc, ClientError):
        return exc
    status = _status_code(exc)
    if status is not None:
        kind = STATUS_CODE_KINDS.get(status, ErrorKind.NETWORK_ERROR)
        return ClientError(f"WebSocket handshake rejected: {exc}", kind)
    if isinstance(exc, TimeoutError):
        return ClientError(str(exc) or "WebSocket operation timed out", ErrorKind.TIMEOUT)
    return ClientError(str(exc) or exc.__class__.__name__, ErrorKind.NETWORK_ERROR)


class WebSocketTransport(ProtocolTransport):
    """JSON-over-WebSocket transport for one physical connection."""

    def __init__(self, settings: ClientSettings, hostname: Optional[str] = None) -> None:
        self._settings = settings
        self._hostname = hostname
        self._ws: Any = None

    @property
    def url(self) -> str:
        if self._settings.hub_ws_url:
            return str(self._settings.hub_ws_url)
        if not self._hostname:
            raise ClientError("No hub endpoint configured", ErrorKind.ARGUMENT_INVALID)
        return f"wss://{self._hostname}{WEBSOCKET_PATH}"

    async def open(self, cancel: CancellationToken) -> None:
        url = self.url
        LOGGER.info("Connecting to hub WebSocket at %s", url)
        try:
            self._ws = await cancel.run(
                websockets.connect(
                    url,
                    ping_interval=self._settings.idle_timeout_seconds,
                    ping_timeout=self._settings.idle_timeout_seconds,
                )
            )
        except (OSError, WebSocketException) as exc:
            raise _translate(exc) from exc

    async def close(self, cancel: CancellationToken) -> None:
        if self._ws is None:
            return
        LOGGER.info("Closing hub WebSocket transport")
        ws, self._ws = self._ws, None
        try:
            await cancel.run(ws.close())
        except (OSError, WebSocketException):
            LOGGER.debug("Suppress WebSocket close error", exc_info=True)

    async def send(self, frame: dict[str, Any], cancel: CancellationToken) -> None:
        if self._ws is None:
            raise ClientError("WebSocket transport not connected", ErrorKind.NETWORK_ERROR)
        payload = json.dumps(frame)
        LOGGER.debug("WebSocket send: %s", payload)
        try:
            await cancel.run(self._ws.send(payload))
        except (OSError, WebSocketException) as exc:
            raise _translate(exc) from exc

    async def receive(self, cancel: CancellationToken) -> dict[str, Any]:
        if self._ws is None:
            raise ClientError("WebSocket transport not connected", ErrorKind.NETWORK_ERROR)
        try:
            raw = await cancel.run(self._ws.recv())
        except ConnectionClosed as exc:
            raise ClientError(f"WebSocket closed: {exc}", ErrorKind.NETWORK_ERROR) from exc
        except (OSError, WebSocketException) as exc:
            raise _translate(exc) from exc
        LOGGER.debug("WebSocket receive: %s", raw)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ClientError("Hub sent a frame that is not valid JSON", ErrorKind.PROTOCOL_ERROR) from exc
        if not isinstance(frame, dict):
            raise ClientError("Hub sent a frame that is not an object", ErrorKind.PROTOCOL_ERROR)
        return frame
