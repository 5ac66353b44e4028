"""Last pipeline stage: drives the device unit obtained from the pool."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional

from hubclient.cancellation import CancellationToken
from hubclient.errors import ClientError, ErrorKind
from hubclient.network.pool import ConnectionPool
from hubclient.network.unit import Unit, UnitHandlers
from hubclient.pipeline.base import PipelineContext, PipelineStage
from shared.models.message import IncomingMessage, MessageAcknowledgement, TelemetryMessage
from shared.models.method import DirectMethodRequest, DirectMethodResponse
from shared.models.twin import DesiredProperties, Twin

LOGGER = logging.getLogger(__name__)


class TransportHandler(PipelineStage):
    """Performs the raw operations against this device's unit.

    A unit whose connection was lost is replaced by a fresh one from the pool
    on the next open.
    """

    def __init__(self, context: PipelineContext, pool: ConnectionPool) -> None:
        super().__init__(context)
        self._pool = pool
        self._unit: Optional[Unit] = None

    @property
    def unit(self) -> Optional[Unit]:
        return self._unit

    def _handlers(self) -> UnitHandlers:
        return UnitHandlers(
            on_method_request=self._on_method_request,
            on_desired_update=self._on_desired_update,
            on_disconnected=self._on_disconnected,
        )

    def _require_unit(self) -> Unit:
        unit = self._unit
        if unit is None:
            raise ClientError(f"{self.context.identity.key} is not open", ErrorKind.NETWORK_ERROR)
        return unit

    async def open(self, cancel: CancellationToken) -> None:
        cancel.raise_if_cancelled()
        unit = self._unit
        if unit is None or unit.is_lost:
            unit = await self._pool.acquire(self.context.identity, self._handlers())
            self._unit = unit
        try:
            await unit.open(cancel)
        except Exception:
            # A device that never attached must not hold its pool slot.
            self._unit = None
            await self._pool.release(unit)
            raise

    async def close(self, cancel: CancellationToken) -> None:
        unit, self._unit = self._unit, None
        if unit is None:
            return
        try:
            await unit.close(cancel)
        finally:
            await self._pool.release(unit)

    async def send_telemetry(self, message: TelemetryMessage, cancel: CancellationToken) -> None:
        await self._require_unit().send_telemetry(message, cancel)

    async def send_telemetry_batch(self, messages: Iterable[TelemetryMessage], cancel: CancellationToken) -> None:
        await self._require_unit().send_telemetry_batch(messages, cancel)

    async def enable_receive_message(self, cancel: CancellationToken) -> None:
        await self._require_unit().enable_receive_message(cancel)

    async def disable_receive_message(self, cancel: CancellationToken) -> None:
        if self._unit is not None:
            await self._unit.disable_receive_message(cancel)

    async def receive_message(self, cancel: CancellationToken) -> IncomingMessage:
        return await self._require_unit().receive_message(cancel)

    async def dispose_message(
        self,
        lock_token: str,
        acknowledgement: MessageAcknowledgement,
        cancel: CancellationToken,
    ) -> None:
        await self._require_unit().dispose_message(lock_token, acknowledgement, cancel)

    async def enable_methods(self, cancel: CancellationToken) -> None:
        await self._require_unit().enable_methods(cancel)

    async def disable_methods(self, cancel: CancellationToken) -> None:
        if self._unit is not None:
            await self._unit.disable_methods(cancel)

    async def send_method_response(self, response: DirectMethodResponse, cancel: CancellationToken) -> None:
        await self._require_unit().send_method_response(response, cancel)

    async def get_twin(self, cancel: CancellationToken) -> Twin:
        return await self._require_unit().get_twin(cancel)

    async def update_reported_properties(self, patch: Mapping[str, Any], cancel: CancellationToken) -> int:
        return await self._require_unit().update_reported_properties(patch, cancel)

    async def enable_twin_patch(self, cancel: CancellationToken) -> None:
        await self._require_unit().enable_twin_patch(cancel)

    async def disable_twin_patch(self, cancel: CancellationToken) -> None:
        if self._unit is not None:
            await self._unit.disable_twin_patch(cancel)

    async def _on_method_request(self, request: DirectMethodRequest) -> None:
        handler = self.context.method_request_handler
        if handler is not None:
            await handler(request)

    async def _on_desired_update(self, patch: DesiredProperties) -> None:
        handler = self.context.desired_update_handler
        if handler is not None:
            await handler(patch)

    async def _on_disconnected(self, exc: BaseException) -> None:
        LOGGER.warning("Connection lost for %s: %s", self.context.identity.key, exc)
        handler = self.context.connection_lost_handler
        if handler is not None:
            await handler(exc)
