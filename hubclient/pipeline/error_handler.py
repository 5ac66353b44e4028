"""Stage that tags raw socket failures with error kinds before they reach retry."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Iterable, Mapping
from typing import Any, TypeVar

from hubclient.cancellation import CancellationToken
from hubclient.errors import translate_error
from hubclient.pipeline.base import PipelineStage
from shared.models.message import IncomingMessage, MessageAcknowledgement, TelemetryMessage
from shared.models.method import DirectMethodResponse
from shared.models.twin import Twin

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorDelegatingHandler(PipelineStage):
    async def _guard(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as exc:
            translated = translate_error(exc)
            if translated is exc:
                raise
            LOGGER.debug("Translated %s into %r", type(exc).__name__, translated)
            raise translated from exc

    async def open(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.open(cancel))

    async def close(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.close(cancel))

    async def send_telemetry(self, message: TelemetryMessage, cancel: CancellationToken) -> None:
        await self._guard(self.inner.send_telemetry(message, cancel))

    async def send_telemetry_batch(self, messages: Iterable[TelemetryMessage], cancel: CancellationToken) -> None:
        await self._guard(self.inner.send_telemetry_batch(messages, cancel))

    async def enable_receive_message(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.enable_receive_message(cancel))

    async def disable_receive_message(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.disable_receive_message(cancel))

    async def receive_message(self, cancel: CancellationToken) -> IncomingMessage:
        return await self._guard(self.inner.receive_message(cancel))

    async def dispose_message(
        self,
        lock_token: str,
        acknowledgement: MessageAcknowledgement,
        cancel: CancellationToken,
    ) -> None:
        await self._guard(self.inner.dispose_message(lock_token, acknowledgement, cancel))

    async def enable_methods(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.enable_methods(cancel))

    async def disable_methods(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.disable_methods(cancel))

    async def send_method_response(self, response: DirectMethodResponse, cancel: CancellationToken) -> None:
        await self._guard(self.inner.send_method_response(response, cancel))

    async def get_twin(self, cancel: CancellationToken) -> Twin:
        return await self._guard(self.inner.get_twin(cancel))

    async def update_reported_properties(self, patch: Mapping[str, Any], cancel: CancellationToken) -> int:
        return await self._guard(self.inner.update_reported_properties(patch, cancel))

    async def enable_twin_patch(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.enable_twin_patch(cancel))

    async def disable_twin_patch(self, cancel: CancellationToken) -> None:
        await self._guard(self.inner.disable_twin_patch(cancel))
