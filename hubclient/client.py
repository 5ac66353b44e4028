"""Public device client built on top of a retrying device pipeline."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Iterator, Mapping, Optional, Union

from hubclient.bootstrap import create_pool
from hubclient.cancellation import CancellationToken
from hubclient.config import ClientSettings, get_settings
from hubclient.errors import ClientClosedError, OperationCancelledError
from hubclient.identity import DeviceIdentity
from hubclient.network.connection import TransportFactory
from hubclient.network.pool import ConnectionPool
from hubclient.pipeline import PipelineContext, RetryDelegatingHandler, build_pipeline
from hubclient.retry import RetryPolicy
from hubclient.status import ConnectionStatusInfo, StatusCallback
from shared.models.message import IncomingMessage, MessageAcknowledgement, TelemetryMessage
from shared.models.method import DirectMethodRequest, DirectMethodResponse
from shared.models.twin import DesiredProperties, Twin

LOGGER = logging.getLogger(__name__)

MessageCallback = Callable[
    [IncomingMessage],
    Union[Optional[MessageAcknowledgement], Awaitable[Optional[MessageAcknowledgement]]],
]
MethodHandler = Callable[[DirectMethodRequest], Any]
DesiredPropertyCallback = Callable[[DesiredProperties], Any]


class DeviceClient:
    """Client for one device or module identity.

    Every call accepts an optional :class:`CancellationToken`; without one the
    call is bounded by ``operation_timeout_seconds``. Several clients may share
    one :class:`ConnectionPool`; a client that created its own pool closes it
    on :meth:`close`.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        settings: Optional[ClientSettings] = None,
        *,
        pool: Optional[ConnectionPool] = None,
        transport_factory: Optional[TransportFactory] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.identity = identity
        self.settings = settings or get_settings()
        self._owns_pool = pool is None
        self._pool = pool or create_pool(self.settings, transport_factory)
        self._context = PipelineContext(
            identity=identity,
            settings=self.settings,
            method_request_handler=self._dispatch_method,
            desired_update_handler=self._dispatch_desired,
        )
        self._pipeline = build_pipeline(self._context, self._pool, retry_policy)
        retry_stage = self._pipeline.find(RetryDelegatingHandler)
        if not isinstance(retry_stage, RetryDelegatingHandler):
            raise RuntimeError("device pipeline has no retry stage")
        self._retry = retry_stage
        self._message_callback: Optional[MessageCallback] = None
        self._message_task: Optional[asyncio.Task[None]] = None
        self._message_cancel: Optional[CancellationToken] = None
        self._method_handler: Optional[MethodHandler] = None
        self._desired_callback: Optional[DesiredPropertyCallback] = None

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str,
        settings: Optional[ClientSettings] = None,
        **kwargs: Any,
    ) -> "DeviceClient":
        return cls(DeviceIdentity.from_connection_string(connection_string), settings, **kwargs)

    async def __aenter__(self) -> "DeviceClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def connection_status(self) -> ConnectionStatusInfo:
        return self._context.status.info

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry.retry_policy

    def set_retry_policy(self, policy: RetryPolicy) -> None:
        self._retry.set_retry_policy(policy)

    def set_connection_status_callback(self, callback: Optional[StatusCallback]) -> None:
        self._context.status.set_callback(callback)

    # Lifecycle

    async def open(self, cancel: Optional[CancellationToken] = None) -> None:
        with self._operation_token(cancel) as token:
            await self._pipeline.head.open(token)

    async def close(self, cancel: Optional[CancellationToken] = None) -> None:
        if self._retry.closed:
            return
        await self._stop_message_pump()
        with self._operation_token(cancel) as token:
            try:
                await self._pipeline.head.close(token)
            finally:
                if self._owns_pool:
                    await self._pool.close()

    # Telemetry

    async def send_telemetry(self, message: Any, cancel: Optional[CancellationToken] = None) -> None:
        with self._operation_token(cancel) as token:
            await self._pipeline.head.send_telemetry(_as_telemetry(message), token)

    async def send_telemetry_batch(self, messages: Iterable[Any], cancel: Optional[CancellationToken] = None) -> None:
        batch = [_as_telemetry(message) for message in messages]
        with self._operation_token(cancel) as token:
            await self._pipeline.head.send_telemetry_batch(batch, token)

    # Cloud-to-device messages

    async def enable_receive_message(self, cancel: Optional[CancellationToken] = None) -> None:
        with self._operation_token(cancel) as token:
            await self._pipeline.head.enable_receive_message(token)

    async def disable_receive_message(self, cancel: Optional[CancellationToken] = None) -> None:
        with self._operation_token(cancel) as token:
            await self._pipeline.head.disable_receive_message(token)

    async def receive_message(self, cancel: Optional[CancellationToken] = None) -> IncomingMessage:
        with self._operation_token(cancel) as token:
            return await self._pipeline.head.receive_message(token)

    async def complete_message(self, message: IncomingMessage, cancel: Optional[CancellationToken] = None) -> None:
        await self._dispose(message, MessageAcknowledgement.COMPLETE, cancel)

    async def abandon_message(self, message: IncomingMessage, cancel: Optional[CancellationToken] = None) -> None:
        await self._dispose(message, MessageAcknowledgement.ABANDON, cancel)

    async def reject_message(self, message: IncomingMessage, cancel: Optional[CancellationToken] = None) -> None:
        await self._dispose(message, MessageAcknowledgement.REJECT, cancel)

    async def set_incoming_message_callback(
        self,
        callback: Optional[MessageCallback],
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """Deliver inbound messages to ``callback``; ``None`` unsubscribes.

        The callback's return value is the disposition sent back to the hub
        (``COMPLETE`` when it returns nothing, ``ABANDON`` when it raises).
        """

        self._message_callback = callback
        if callback is None:
            await self._stop_message_pump()
            await self.disable_receive_message(cancel)
            return
        await self.enable_receive_message(cancel)
        if self._message_task is None or self._message_task.done():
            self._message_cancel = CancellationToken("message pump stopped")
            self._message_task = asyncio.create_task(
                self._pump_messages(self._message_cancel),
                name=f"messages-{self.identity.key}",
            )

    # Direct methods

    async def set_method_handler(self, handler: Optional[MethodHandler], cancel: Optional[CancellationToken] = None) -> None:
        self._method_handler = handler
        with self._operation_token(cancel) as token:
            if handler is None:
                await self._pipeline.head.disable_methods(token)
            else:
                await self._pipeline.head.enable_methods(token)

    # Twin

    async def get_twin(self, cancel: Optional[CancellationToken] = None) -> Twin:
        with self._operation_token(cancel) as token:
            return await self._pipeline.head.get_twin(token)

    async def update_reported_properties(self, patch: Mapping[str, Any], cancel: Optional[CancellationToken] = None) -> int:
        with self._operation_token(cancel) as token:
            return await self._pipeline.head.update_reported_properties(patch, token)

    async def set_desired_property_update_callback(
        self,
        callback: Optional[DesiredPropertyCallback],
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self._desired_callback = callback
        with self._operation_token(cancel) as token:
            if callback is None:
                await self._pipeline.head.disable_twin_patch(token)
            else:
                await self._pipeline.head.enable_twin_patch(token)

    # Internals

    @contextlib.contextmanager
    def _operation_token(self, cancel: Optional[CancellationToken]) -> Iterator[CancellationToken]:
        if cancel is not None:
            yield cancel
            return
        token = CancellationToken.with_timeout(self.settings.operation_timeout_seconds)
        try:
            yield token
        finally:
            token.dispose()

    async def _dispose(
        self,
        message: IncomingMessage,
        acknowledgement: MessageAcknowledgement,
        cancel: Optional[CancellationToken],
    ) -> None:
        if message.lock_token is None:
            raise ValueError(f"Message {message.message_id} carries no lock token")
        with self._operation_token(cancel) as token:
            await self._pipeline.head.dispose_message(message.lock_token, acknowledgement, token)

    async def _pump_messages(self, cancel: CancellationToken) -> None:
        head = self._pipeline.head
        while not cancel.cancelled:
            try:
                message = await head.receive_message(cancel)
            except (OperationCancelledError, ClientClosedError):
                LOGGER.debug("Message pump for %s stopped", self.identity.key)
                return
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Message pump for %s failed: %s", self.identity.key, exc)
                return
            acknowledgement = await self._invoke_message_callback(message)
            if message.lock_token is None:
                continue
            try:
                await head.dispose_message(message.lock_token, acknowledgement, cancel)
            except (OperationCancelledError, ClientClosedError):
                return
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Failed to %s message %s: %s", acknowledgement.value, message.message_id, exc)

    async def _invoke_message_callback(self, message: IncomingMessage) -> MessageAcknowledgement:
        callback = self._message_callback
        if callback is None:
            return MessageAcknowledgement.ABANDON
        try:
            result = callback(message)
            if inspect.isawaitable(result):
                result = await result
        except Exception:  # noqa: BLE001
            LOGGER.exception("Message callback failed for %s", message.message_id)
            return MessageAcknowledgement.ABANDON
        return result or MessageAcknowledgement.COMPLETE

    async def _stop_message_pump(self) -> None:
        task, self._message_task = self._message_task, None
        token, self._message_cancel = self._message_cancel, None
        if token is not None:
            token.cancel()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _dispatch_method(self, request: DirectMethodRequest) -> None:
        handler = self._method_handler
        if handler is None:
            response = DirectMethodResponse(request_id=request.request_id, status=501)
        else:
            try:
                result = handler(request)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Method handler %s failed", request.method_name)
                response = DirectMethodResponse(request_id=request.request_id, status=500, payload={"error": str(exc)})
            else:
                if isinstance(result, DirectMethodResponse):
                    response = result.model_copy(update={"request_id": request.request_id})
                else:
                    response = DirectMethodResponse(request_id=request.request_id, status=200, payload=result)
        with self._operation_token(None) as token:
            await self._pipeline.head.send_method_response(response, token)

    async def _dispatch_desired(self, patch: DesiredProperties) -> None:
        callback = self._desired_callback
        if callback is None:
            return
        try:
            result = callback(patch)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            LOGGER.exception("Desired property callback failed for %s", self.identity.key)


def _as_telemetry(message: Any) -> TelemetryMessage:
    if isinstance(message, TelemetryMessage):
        return message
    return TelemetryMessage(payload=message)
