"""Per-device logical session multiplexed over a physical connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from pydantic import ValidationError

from hubclient.cancellation import CancellationToken
from hubclient.config import ClientSettings
from hubclient.errors import ClientError, ErrorKind, OperationCancelledError, error_for_status
from hubclient.identity import DeviceIdentity
from hubclient.network.links import ReceivingLink
from shared.models.frame import Frame, Link
from shared.models.message import IncomingMessage, MessageAcknowledgement, TelemetryMessage
from shared.models.method import DirectMethodRequest, DirectMethodResponse
from shared.models.twin import DesiredProperties, Twin, TwinDocumentError
from shared.protocol import build_frame, build_request, is_response

if TYPE_CHECKING:
    from hubclient.network.connection import PhysicalConnection

LOGGER = logging.getLogger(__name__)


@dataclass
class UnitHandlers:
    """Callbacks a device pipeline registers for unsolicited unit events."""

    on_method_request: Optional[Callable[[DirectMethodRequest], Awaitable[None]]] = None
    on_desired_update: Optional[Callable[[DesiredProperties], Awaitable[None]]] = None
    on_disconnected: Optional[Callable[[BaseException], Awaitable[None]]] = None


class Unit:
    """Logical links of one device over a (possibly shared) physical connection.

    The unit references its connection without owning it; the pool decides
    when the connection closes. Open and close are idempotent.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        connection: "PhysicalConnection",
        settings: ClientSettings,
        handlers: Optional[UnitHandlers] = None,
    ) -> None:
        self.identity = identity
        self.connection = connection
        self._settings = settings
        self.handlers = handlers or UnitHandlers()
        self._lock = asyncio.Lock()
        self._open = False
        self._lost = False
        self._pending: Dict[str, asyncio.Future[Frame]] = {}
        self._messages = ReceivingLink(identity.key, settings.receive_queue_max)
        self._methods_enabled = False
        self._twin_updates_enabled = False
        self._callback_tasks: Set[asyncio.Task[None]] = set()

    @property
    def key(self) -> str:
        return self.identity.key

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def is_lost(self) -> bool:
        return self._lost

    @property
    def receive_enabled(self) -> bool:
        return self._messages.enabled

    async def open(self, cancel: CancellationToken) -> None:
        async with cancel.hold(self._lock):
            self._check_not_lost()
            if self._open:
                return
            await self.connection.ensure_open(cancel)
            await self._request(
                Link.session,
                "attach",
                {"token": self.identity.build_sas_token(), "moduleId": self.identity.module_id},
                cancel,
            )
            self._open = True
            LOGGER.info("Device session opened for %s on %s", self.key, self.connection.name)

    async def close(self, cancel: CancellationToken) -> None:
        async with cancel.hold(self._lock):
            if not self._open:
                return
            self._open = False
            self._messages.disable()
            self._methods_enabled = False
            self._twin_updates_enabled = False
            if not self._lost:
                try:
                    await self._request(Link.session, "detach", None, cancel)
                except ClientError as exc:
                    LOGGER.debug("Suppress session detach error for %s: %s", self.key, exc)
            self._fail_pending(OperationCancelledError("device session closed"))
            LOGGER.info("Device session closed for %s", self.key)

    # Telemetry

    async def send_telemetry(self, message: TelemetryMessage, cancel: CancellationToken) -> None:
        self._check_open()
        await self._request(Link.telemetry, "send", message, cancel)

    async def send_telemetry_batch(self, messages: Iterable[TelemetryMessage], cancel: CancellationToken) -> None:
        self._check_open()
        await self._request(Link.telemetry, "send_batch", list(messages), cancel)

    # Cloud-to-device messages

    async def enable_receive_message(self, cancel: CancellationToken) -> None:
        self._check_open()
        if self._messages.enabled:
            return
        await self._request(Link.messages, "subscribe", None, cancel)
        self._messages.enable()

    async def disable_receive_message(self, cancel: CancellationToken) -> None:
        if not self._messages.enabled:
            return
        self._messages.disable()
        if self._open and not self._lost:
            await self._request(Link.messages, "unsubscribe", None, cancel)

    async def receive_message(self, cancel: CancellationToken) -> IncomingMessage:
        self._check_open()
        return await self._messages.receive(cancel)

    async def dispose_message(
        self,
        lock_token: str,
        acknowledgement: MessageAcknowledgement,
        cancel: CancellationToken,
    ) -> None:
        self._check_open()
        await self._request(
            Link.messages,
            "dispose",
            {"lockToken": lock_token, "disposition": acknowledgement.value},
            cancel,
        )

    # Direct methods

    async def enable_methods(self, cancel: CancellationToken) -> None:
        self._check_open()
        if self._methods_enabled:
            return
        await self._request(Link.methods, "subscribe", None, cancel)
        self._methods_enabled = True

    async def disable_methods(self, cancel: CancellationToken) -> None:
        if not self._methods_enabled:
            return
        self._methods_enabled = False
        if self._open and not self._lost:
            await self._request(Link.methods, "unsubscribe", None, cancel)

    async def send_method_response(self, response: DirectMethodResponse, cancel: CancellationToken) -> None:
        self._check_open()
        await self.connection.send(build_frame(self.key, Link.methods, "respond", response), cancel)

    # Twin

    async def get_twin(self, cancel: CancellationToken) -> Twin:
        self._check_open()
        body = await self._request(Link.twin, "get", None, cancel)
        try:
            return Twin.from_document(body)
        except TwinDocumentError as exc:
            raise ClientError(str(exc), ErrorKind.PROTOCOL_ERROR) from exc

    async def update_reported_properties(self, patch: Mapping[str, Any], cancel: CancellationToken) -> int:
        self._check_open()
        body = await self._request(Link.twin, "patch", dict(patch), cancel)
        version = body.get("version") if isinstance(body, dict) else None
        if not isinstance(version, int):
            raise ClientError("Reported property update response carried no version", ErrorKind.PROTOCOL_ERROR)
        return version

    async def enable_twin_patch(self, cancel: CancellationToken) -> None:
        self._check_open()
        if self._twin_updates_enabled:
            return
        await self._request(Link.twin, "subscribe", None, cancel)
        self._twin_updates_enabled = True

    async def disable_twin_patch(self, cancel: CancellationToken) -> None:
        if not self._twin_updates_enabled:
            return
        self._twin_updates_enabled = False
        if self._open and not self._lost:
            await self._request(Link.twin, "unsubscribe", None, cancel)

    # Inbound routing, called from the connection receive loop

    async def dispatch(self, frame: Frame) -> None:
        if is_response(frame):
            future = self._pending.pop(frame.rid, None)
            if future is None or future.done():
                LOGGER.debug("Dropping late response rid=%s for %s", frame.rid, self.key)
                return
            future.set_result(frame)
            return
        try:
            if frame.link == Link.messages and frame.op == "deliver":
                self._messages.offer(IncomingMessage.model_validate(frame.body))
            elif frame.link == Link.methods and frame.op == "invoke":
                self._deliver_method(DirectMethodRequest.model_validate(frame.body))
            elif frame.link == Link.twin and frame.op == "desired":
                self._deliver_desired(DesiredProperties(frame.body or {}))
            else:
                LOGGER.debug("Unhandled frame %s/%s for %s", frame.link, frame.op, self.key)
        except (ValidationError, TwinDocumentError, TypeError) as exc:
            LOGGER.warning("Dropping malformed %s frame for %s: %s", frame.link, self.key, exc)

    async def on_connection_lost(self, exc: BaseException) -> None:
        """Mark the unit unusable and tell the owning pipeline."""

        if self._lost:
            return
        self._lost = True
        self._open = False
        self._messages.disable()
        self._methods_enabled = False
        self._twin_updates_enabled = False
        self._fail_pending(ClientError(f"Connection lost: {exc}", ErrorKind.NETWORK_ERROR))
        handler = self.handlers.on_disconnected
        if handler is None:
            return
        try:
            await handler(exc)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Unit disconnect handler failed for %s", self.key)

    def _deliver_method(self, request: DirectMethodRequest) -> None:
        handler = self.handlers.on_method_request
        if not self._methods_enabled or handler is None:
            LOGGER.debug("Methods disabled for %s; dropping request %s", self.key, request.request_id)
            return
        self._spawn(handler(request), f"method-{request.method_name}")

    def _deliver_desired(self, patch: DesiredProperties) -> None:
        handler = self.handlers.on_desired_update
        if not self._twin_updates_enabled or handler is None:
            LOGGER.debug("Twin updates disabled for %s; dropping patch v%s", self.key, patch.version)
            return
        self._spawn(handler(patch), "twin-desired")

    def _spawn(self, coro: Awaitable[None], label: str) -> None:
        task = asyncio.create_task(coro, name=f"unit-{self.key}-{label}")
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task[None]) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Unit callback %s failed", task.get_name(), exc_info=exc)

    async def _request(self, link: Link, op: str, body: Any, cancel: CancellationToken) -> Any:
        rid, frame = build_request(self.key, link, op, body)
        future: asyncio.Future[Frame] = asyncio.get_running_loop().create_future()
        self._pending[rid] = future
        try:
            await self.connection.send(frame, cancel)
            response = await cancel.run(future)
        finally:
            self._pending.pop(rid, None)
        status = response.status or 200
        if status >= 300:
            raise error_for_status(status, f"{link.value} {op} rejected for {self.key}")
        return response.body

    def _fail_pending(self, exc: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    def _check_not_lost(self) -> None:
        if self._lost:
            raise ClientError(f"Connection for {self.key} was lost", ErrorKind.NETWORK_ERROR)

    def _check_open(self) -> None:
        self._check_not_lost()
        if not self._open:
            raise ClientError(f"Device session for {self.key} is not open", ErrorKind.NETWORK_ERROR)
