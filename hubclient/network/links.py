"""Inbound link buffers for a device session."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from hubclient.cancellation import CancellationToken
from hubclient.errors import OperationCancelledError
from shared.models.message import IncomingMessage

LOGGER = logging.getLogger(__name__)


class ReceivingLink:
    """Buffers cloud-to-device messages while the receive link is enabled.

    Disabling the link cancels every pending :meth:`receive`; messages arriving
    while the link is disabled are not buffered.
    """

    def __init__(self, device_key: str, maxsize: int = 0) -> None:
        self._device_key = device_key
        self._maxsize = max(0, int(maxsize or 0))
        self._queue: Optional[asyncio.Queue[IncomingMessage]] = None
        self._disabled = CancellationToken.cancelled_token("message receive disabled")

    @property
    def enabled(self) -> bool:
        return self._queue is not None

    def enable(self) -> None:
        if self._queue is not None:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._disabled = CancellationToken("message receive disabled")

    def disable(self) -> None:
        if self._queue is None:
            return
        dropped = self._queue.qsize()
        self._queue = None
        self._disabled.cancel()
        if dropped:
            LOGGER.debug("Dropped %s buffered message(s) for %s on disable", dropped, self._device_key)

    def offer(self, message: IncomingMessage) -> bool:
        queue = self._queue
        if queue is None:
            LOGGER.debug("Receive link disabled for %s; dropping message id=%s", self._device_key, message.message_id)
            return False
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            LOGGER.warning("Receive buffer full for %s; dropping message id=%s", self._device_key, message.message_id)
            return False
        return True

    async def receive(self, cancel: CancellationToken) -> IncomingMessage:
        queue = self._queue
        if queue is None:
            raise OperationCancelledError("message receive disabled")
        token = cancel.linked(self._disabled)
        try:
            return await token.run(queue.get())
        finally:
            token.dispose()
