"""Protocol transport abstraction consumed by physical connections."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from hubclient.cancellation import CancellationToken


class ProtocolTransport(ABC):
    """Frame-level transport for one physical connection to the hub.

    Failures raise :class:`hubclient.errors.ClientError` tagged with an
    :class:`hubclient.errors.ErrorKind`; every wait must honour ``cancel``.
    """

    @abstractmethod
    async def open(self, cancel: CancellationToken) -> None:
        ...

    @abstractmethod
    async def close(self, cancel: CancellationToken) -> None:
        ...

    @abstractmethod
    async def send(self, frame: dict[str, Any], cancel: CancellationToken) -> None:
        ...

    @abstractmethod
    async def receive(self, cancel: CancellationToken) -> dict[str, Any]:
        ...
