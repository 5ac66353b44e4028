"""In-memory transport standing in for the hub in offline runs and tests."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from hubclient.cancellation import CancellationToken
from hubclient.errors import ClientError, ErrorKind
from shared.models.frame import Frame
from shared.protocol import build_response, parse_frame

from .base import ProtocolTransport

LOGGER = logging.getLogger(__name__)

Responder = Callable[[Frame], Optional[Dict[str, Any]]]


def default_responder(request: Frame) -> Optional[Dict[str, Any]]:
    """Acknowledge every request; twin reads return an empty versioned document."""

    if request.link == "twin" and request.op == "get":
        return build_response(request, 200, {"desired": {"$version": 1}, "reported": {"$version": 1}})
    if request.link == "twin" and request.op == "patch":
        return build_response(request, 204, {"version": 2})
    return build_response(request, 200)


class LoopbackTransport(ProtocolTransport):
    """Records outbound frames and replays injected inbound frames."""

    def __init__(
        self,
        settings=None,
        hostname: Optional[str] = None,
        *,
        responder: Optional[Responder] = default_responder,
    ) -> None:
        self._settings = settings
        self.hostname = hostname
        self._responder = responder
        self._inbound: asyncio.Queue[Dict[str, Any] | BaseException] = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.is_open = False
        self.open_count = 0
        self.close_count = 0

    async def open(self, cancel: CancellationToken) -> None:
        cancel.raise_if_cancelled()
        LOGGER.debug("Loopback transport open()")
        self.is_open = True
        self.open_count += 1

    async def close(self, cancel: CancellationToken) -> None:
        LOGGER.debug("Loopback transport close()")
        self.is_open = False
        self.close_count += 1

    async def send(self, frame: Dict[str, Any], cancel: CancellationToken) -> None:
        cancel.raise_if_cancelled()
        if not self.is_open:
            raise ClientError("Loopback transport not open", ErrorKind.NETWORK_ERROR)
        LOGGER.debug("Loopback transport send(): %s", frame)
        self.sent.append(frame)
        if self._responder is None or frame.get("rid") is None:
            return
        response = self._responder(parse_frame(frame))
        if response is not None:
            self.inject(response)

    async def receive(self, cancel: CancellationToken) -> Dict[str, Any]:
        if not self.is_open:
            raise ClientError("Loopback transport not open", ErrorKind.NETWORK_ERROR)
        item = await cancel.run(self._inbound.get())
        if isinstance(item, BaseException):
            raise item
        return item

    def inject(self, frame: Dict[str, Any]) -> None:
        """Queue a frame as if the hub had sent it."""

        self._inbound.put_nowait(frame)

    def fail(self, exc: Optional[BaseException] = None) -> None:
        """Make the next receive fail, simulating a dropped connection."""

        self._inbound.put_nowait(exc or ClientError("Loopback connection lost", ErrorKind.NETWORK_ERROR))
