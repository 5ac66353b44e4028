"""Shared capability interface implemented by every pipeline stage."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from hubclient.cancellation import CancellationToken
from hubclient.config import ClientSettings
from hubclient.identity import DeviceIdentity
from hubclient.status import ConnectionStatusTracker
from shared.models.message import IncomingMessage, MessageAcknowledgement, TelemetryMessage
from shared.models.method import DirectMethodRequest, DirectMethodResponse
from shared.models.twin import DesiredProperties, Twin


@dataclass
class PipelineContext:
    """State shared by the stages of one device pipeline."""

    identity: DeviceIdentity
    settings: ClientSettings
    status: ConnectionStatusTracker = field(default_factory=ConnectionStatusTracker)
    method_request_handler: Optional[Callable[[DirectMethodRequest], Awaitable[None]]] = None
    desired_update_handler: Optional[Callable[[DesiredProperties], Awaitable[None]]] = None
    connection_lost_handler: Optional[Callable[[BaseException], Awaitable[None]]] = None


class PipelineStage:
    """One stage of a device pipeline.

    Every capability forwards to ``next`` unless a stage overrides it. Stages
    are linked by :class:`hubclient.pipeline.builder.Pipeline`, never by
    subclassing one another.
    """

    def __init__(self, context: PipelineContext) -> None:
        self.context = context
        self.next: Optional[PipelineStage] = None

    @property
    def inner(self) -> "PipelineStage":
        if self.next is None:
            raise RuntimeError(f"{type(self).__name__} is the last stage and cannot forward")
        return self.next

    async def open(self, cancel: CancellationToken) -> None:
        await self.inner.open(cancel)

    async def close(self, cancel: CancellationToken) -> None:
        await self.inner.close(cancel)

    async def send_telemetry(self, message: TelemetryMessage, cancel: CancellationToken) -> None:
        await self.inner.send_telemetry(message, cancel)

    async def send_telemetry_batch(self, messages: Iterable[TelemetryMessage], cancel: CancellationToken) -> None:
        await self.inner.send_telemetry_batch(messages, cancel)

    async def enable_receive_message(self, cancel: CancellationToken) -> None:
        await self.inner.enable_receive_message(cancel)

    async def disable_receive_message(self, cancel: CancellationToken) -> None:
        await self.inner.disable_receive_message(cancel)

    async def receive_message(self, cancel: CancellationToken) -> IncomingMessage:
        return await self.inner.receive_message(cancel)

    async def dispose_message(
        self,
        lock_token: str,
        acknowledgement: MessageAcknowledgement,
        cancel: CancellationToken,
    ) -> None:
        await self.inner.dispose_message(lock_token, acknowledgement, cancel)

    async def enable_methods(self, cancel: CancellationToken) -> None:
        await self.inner.enable_methods(cancel)

    async def disable_methods(self, cancel: CancellationToken) -> None:
        await self.inner.disable_methods(cancel)

    async def send_method_response(self, response: DirectMethodResponse, cancel: CancellationToken) -> None:
        await self.inner.send_method_response(response, cancel)

    async def get_twin(self, cancel: CancellationToken) -> Twin:
        return await self.inner.get_twin(cancel)

    async def update_reported_properties(self, patch: Mapping[str, Any], cancel: CancellationToken) -> int:
        return await self.inner.update_reported_properties(patch, cancel)

    async def enable_twin_patch(self, cancel: CancellationToken) -> None:
        await self.inner.enable_twin_patch(cancel)

    async def disable_twin_patch(self, cancel: CancellationToken) -> None:
        await self.inner.disable_twin_patch(cancel)
