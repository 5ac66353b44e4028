"""Connection pool assigning device identities to physical connections."""

from __future__ import annotations

import asyncio
import logging
import zlib
from typing import Dict, Hashable, List, Optional, Tuple

from hubclient.cancellation import CancellationToken
from hubclient.config import ClientSettings
from hubclient.errors import OperationCancelledError, PoolExhaustedError
from hubclient.identity import DeviceIdentity
from hubclient.network.connection import PhysicalConnection, TransportFactory
from hubclient.network.unit import Unit, UnitHandlers

LOGGER = logging.getLogger(__name__)


def slot_for(device_id: str, pool_size: int) -> int:
    """Stable slot index for ``device_id``; identical across processes."""

    return zlib.crc32(device_id.encode("utf-8")) % pool_size


class ConnectionPool:
    """Owns the physical connections used by every device pipeline.

    Without pooling every identity gets a dedicated connection. With pooling,
    identities are spread over at most ``pool_size`` connections per hub host,
    each carrying up to ``devices_per_connection`` units.

    The identity->unit map is guarded by a single lock; opening connections
    and link traffic happen outside it. The pool never reconnects on its own:
    a faulted connection is dropped and its units are told so.
    """

    def __init__(self, settings: ClientSettings, transport_factory: TransportFactory) -> None:
        self._settings = settings
        self._transport_factory = transport_factory
        self._lock = asyncio.Lock()
        self._units: Dict[str, Unit] = {}
        self._connections: Dict[Tuple[str, Hashable], PhysicalConnection] = {}

    @property
    def pooling_enabled(self) -> bool:
        return self._settings.pooling_enabled

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def unit_count(self) -> int:
        return len(self._units)

    def connections(self) -> List[PhysicalConnection]:
        return list(self._connections.values())

    def get_unit(self, identity: DeviceIdentity) -> Optional[Unit]:
        return self._units.get(identity.key)

    async def acquire(self, identity: DeviceIdentity, handlers: Optional[UnitHandlers] = None) -> Unit:
        """Return the unit for ``identity``, attaching it to a connection on first use."""

        async with self._lock:
            unit = self._units.get(identity.key)
            if unit is not None:
                return unit
            connection = self._select_connection(identity)
            unit = Unit(identity, connection, self._settings, handlers)
            connection.attach(unit)
            self._units[identity.key] = unit
            LOGGER.debug(
                "Attached %s to %s (%s/%s)",
                identity.key,
                connection.name,
                connection.unit_count,
                connection.capacity,
            )
            return unit

    async def release(self, unit: Unit) -> None:
        """Detach ``unit``; its connection closes once no units remain on it."""

        # The unit closes while still attached so its detach response is routed.
        await self._close_unit(unit)
        to_close: Optional[PhysicalConnection] = None
        async with self._lock:
            if self._units.get(unit.key) is unit:
                del self._units[unit.key]
            connection = unit.connection
            remaining = connection.detach(unit)
            if remaining == 0 and self._connections.get((connection.hostname, connection.key)) is connection:
                del self._connections[(connection.hostname, connection.key)]
                to_close = connection
        if to_close is not None:
            await to_close.close()

    async def close(self) -> None:
        """Release every unit and close every connection."""

        async with self._lock:
            units = list(self._units.values())
            connections = list(self._connections.values())
            self._units.clear()
            self._connections.clear()
        for unit in units:
            await self._close_unit(unit)
        for connection in connections:
            await connection.close()

    async def _close_unit(self, unit: Unit) -> None:
        if not unit.is_open:
            return
        cancel = CancellationToken.with_timeout(self._settings.operation_timeout_seconds)
        try:
            await unit.close(cancel)
        except OperationCancelledError:
            LOGGER.warning("Timed out closing device session for %s", unit.key)
        finally:
            cancel.dispose()

    def _select_connection(self, identity: DeviceIdentity) -> PhysicalConnection:
        host = identity.hostname
        capacity = self._settings.devices_per_connection
        if not self._settings.pooling_enabled:
            return self._get_or_create(host, f"device:{identity.key}", capacity=capacity)
        pool_size = self._settings.pool_size
        start = slot_for(identity.device_id, pool_size)
        for offset in range(pool_size):
            slot = (start + offset) % pool_size
            connection = self._get_or_create(host, slot, capacity=capacity)
            if connection.has_capacity:
                return connection
        raise PoolExhaustedError(
            f"All {pool_size} pooled connections to {host} carry "
            f"{capacity} devices"
        )

    def _get_or_create(self, host: str, key: Hashable, *, capacity: int) -> PhysicalConnection:
        connection = self._connections.get((host, key))
        if connection is not None:
            return connection
        connection = PhysicalConnection(
            self._settings,
            self._transport_factory,
            host,
            key=key,
            capacity=capacity,
            on_faulted=self._connection_faulted,
        )
        self._connections[(host, key)] = connection
        return connection

    async def _connection_faulted(self, connection: PhysicalConnection) -> None:
        async with self._lock:
            if self._connections.get((connection.hostname, connection.key)) is connection:
                del self._connections[(connection.hostname, connection.key)]
            for unit in connection.units():
                if self._units.get(unit.key) is unit:
                    del self._units[unit.key]
        LOGGER.warning("Dropped faulted %s", connection.name)
