"""Connection status state machine observed through a single caller callback."""

from __future__ import annotations

import enum
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from hubclient.errors import ClientError, ErrorKind

LOGGER = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DISABLED = "disabled"
    CLOSED = "closed"


class ChangeReason(str, enum.Enum):
    CONNECTION_OK = "connection_ok"
    DEVICE_DISABLED = "device_disabled"
    BAD_CREDENTIAL = "bad_credential"
    QUOTA_EXCEEDED = "quota_exceeded"
    RETRY_EXPIRED = "retry_expired"
    COMMUNICATION_ERROR = "communication_error"
    CLIENT_CLOSED = "client_closed"


_TERMINAL_REASONS = {
    ErrorKind.DEVICE_NOT_FOUND: ChangeReason.DEVICE_DISABLED,
    ErrorKind.DISABLED: ChangeReason.DEVICE_DISABLED,
    ErrorKind.UNAUTHORIZED: ChangeReason.BAD_CREDENTIAL,
    ErrorKind.QUOTA_EXCEEDED: ChangeReason.QUOTA_EXCEEDED,
}


def reason_for_error(exc: BaseException) -> ChangeReason:
    if isinstance(exc, ClientError):
        return _TERMINAL_REASONS.get(exc.kind, ChangeReason.COMMUNICATION_ERROR)
    return ChangeReason.COMMUNICATION_ERROR


@dataclass(frozen=True)
class ConnectionStatusInfo:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reason: ChangeReason = ChangeReason.CLIENT_CLOSED
    changed_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


StatusCallback = Callable[[ConnectionStatus, ChangeReason], Optional[Awaitable[None]]]


class ConnectionStatusTracker:
    """Holds the current status of one device pipeline.

    Exactly one callback slot exists: registering a callback replaces the
    previous one. ``CLOSED`` is terminal and ignores later transitions.
    """

    def __init__(self, callback: Optional[StatusCallback] = None) -> None:
        self._info = ConnectionStatusInfo()
        self._callback = callback

    @property
    def info(self) -> ConnectionStatusInfo:
        return self._info

    @property
    def status(self) -> ConnectionStatus:
        return self._info.status

    @property
    def closed(self) -> bool:
        return self._info.status is ConnectionStatus.CLOSED

    def set_callback(self, callback: Optional[StatusCallback]) -> None:
        self._callback = callback

    async def transition(self, status: ConnectionStatus, reason: ChangeReason) -> bool:
        """Apply a transition; returns False when it was a no-op or rejected."""

        current = self._info
        if current.status is ConnectionStatus.CLOSED:
            LOGGER.debug("Ignoring status %s (%s) after close", status.value, reason.value)
            return False
        if current.status is status and current.reason is reason:
            return False
        self._info = ConnectionStatusInfo(status=status, reason=reason)
        LOGGER.info(
            "Connection status %s -> %s (%s)",
            current.status.value,
            status.value,
            reason.value,
        )
        await self._notify(status, reason)
        return True

    async def _notify(self, status: ConnectionStatus, reason: ChangeReason) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            result = callback(status, reason)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            LOGGER.exception("Connection status callback failed")
