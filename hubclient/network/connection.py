"""Physical connection wrapper that owns one protocol transport."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Dict, Hashable, List, Optional

from pydantic import ValidationError

from hubclient.cancellation import CancellationToken
from hubclient.config import ClientSettings
from hubclient.errors import ClientError, ErrorKind, OperationCancelledError
from hubclient.network.transport.base import ProtocolTransport
from hubclient.network.unit import Unit
from shared.protocol import parse_frame

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[ClientSettings, str], ProtocolTransport]


class PhysicalConnection:
    """Network session shared by up to ``capacity`` device units.

    Open and close are serialized by a per-connection lock; sends from the
    attached units go straight to the transport without that lock. A receive
    loop routes inbound frames to units by device key. When the transport
    faults, every attached unit is notified and the connection is discarded.
    """

    def __init__(
        self,
        settings: ClientSettings,
        transport_factory: TransportFactory,
        hostname: str,
        *,
        key: Hashable,
        capacity: int,
        on_faulted: Optional[Callable[["PhysicalConnection"], Awaitable[None]]] = None,
    ) -> None:
        self._settings = settings
        self._transport_factory = transport_factory
        self.hostname = hostname
        self.key = key
        self.capacity = max(1, int(capacity))
        self._on_faulted = on_faulted
        self._transport: Optional[ProtocolTransport] = None
        self._units: Dict[str, Unit] = {}
        self._lock = asyncio.Lock()
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._recv_cancel: Optional[CancellationToken] = None
        self._faulted = False
        self._closed = False

    @property
    def name(self) -> str:
        return f"connection[{self.hostname}:{self.key}]"

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    @property
    def faulted(self) -> bool:
        return self._faulted

    @property
    def unit_count(self) -> int:
        return len(self._units)

    @property
    def has_capacity(self) -> bool:
        return not self._faulted and not self._closed and len(self._units) < self.capacity

    @property
    def transport(self) -> Optional[ProtocolTransport]:
        return self._transport

    def units(self) -> List[Unit]:
        return list(self._units.values())

    def attach(self, unit: Unit) -> None:
        if unit.key in self._units:
            return
        if len(self._units) >= self.capacity:
            raise ClientError(f"{self.name} is full", ErrorKind.QUOTA_EXCEEDED)
        self._units[unit.key] = unit

    def detach(self, unit: Unit) -> int:
        """Remove ``unit``; returns the number of units still attached."""

        if self._units.get(unit.key) is unit:
            del self._units[unit.key]
        return len(self._units)

    async def ensure_open(self, cancel: CancellationToken) -> None:
        if self._transport is not None:
            return
        async with cancel.hold(self._lock):
            if self._faulted or self._closed:
                raise ClientError(f"{self.name} is no longer usable", ErrorKind.NETWORK_ERROR)
            if self._transport is not None:
                return
            transport = self._transport_factory(self._settings, self.hostname)
            await transport.open(cancel)
            self._transport = transport
            self._recv_cancel = CancellationToken("connection closing")
            self._recv_task = asyncio.create_task(self._receive_loop(transport), name=f"{self.name}-recv")
            LOGGER.info("Opened %s", self.name)

    async def send(self, frame: dict, cancel: CancellationToken) -> None:
        transport = self._transport
        if transport is None:
            raise ClientError(f"{self.name} is not open", ErrorKind.NETWORK_ERROR)
        await transport.send(frame, cancel)

    async def close(self, cancel: Optional[CancellationToken] = None) -> None:
        cancel = cancel or CancellationToken.none()
        async with cancel.hold(self._lock):
            self._closed = True
            await self._stop_receive_loop()
            transport, self._transport = self._transport, None
            if transport is None:
                return
            try:
                await transport.close(cancel)
            except ClientError as exc:
                LOGGER.debug("Suppress transport close error on %s: %s", self.name, exc)
            LOGGER.info("Closed %s", self.name)

    async def _stop_receive_loop(self) -> None:
        if self._recv_cancel:
            self._recv_cancel.cancel()
        task, self._recv_task = self._recv_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _receive_loop(self, transport: ProtocolTransport) -> None:
        cancel = self._recv_cancel or CancellationToken.none()
        while not cancel.cancelled:
            try:
                raw = await transport.receive(cancel)
            except OperationCancelledError:
                return
            except asyncio.CancelledError:
                raise
            except ClientError as exc:
                if cancel.cancelled:
                    return
                if exc.kind is ErrorKind.PROTOCOL_ERROR:
                    LOGGER.warning("Dropping undecodable frame on %s: %s", self.name, exc)
                    continue
                await self._fault(exc)
                return
            except Exception as exc:  # noqa: BLE001
                if cancel.cancelled:
                    return
                await self._fault(exc)
                return
            try:
                frame = parse_frame(raw)
            except ValidationError as exc:
                LOGGER.warning("Dropping malformed frame on %s: %s", self.name, exc)
                continue
            unit = self._units.get(frame.device)
            if unit is None:
                LOGGER.debug("No unit attached for %s on %s", frame.device, self.name)
                continue
            try:
                await unit.dispatch(frame)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Frame dispatch failed for %s", frame.device)

    async def _fault(self, exc: BaseException) -> None:
        LOGGER.warning("Transport error on %s, notifying %s unit(s): %s", self.name, len(self._units), exc)
        self._faulted = True
        transport, self._transport = self._transport, None
        self._recv_task = None
        if transport is not None:
            try:
                await transport.close(CancellationToken.none())
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress transport close error", exc_info=True)
        if self._on_faulted:
            try:
                await self._on_faulted(self)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Connection fault hook failed for %s", self.name)
        for unit in list(self._units.values()):
            await unit.on_connection_lost(exc)
