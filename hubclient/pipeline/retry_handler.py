"""Top pipeline stage: retries transient failures and owns connection status."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from functools import partial
from typing import Any, Optional, TypeVar

from hubclient.cancellation import CancellationToken
from hubclient.config import ClientSettings
from hubclient.errors import (
    ClientClosedError,
    ClientError,
    ErrorCategory,
    ErrorKind,
    OperationCancelledError,
    classify_error,
)
from hubclient.pipeline.base import PipelineContext, PipelineStage
from hubclient.retry import ExponentialBackoffRetryPolicy, RetryPolicy
from hubclient.status import ChangeReason, ConnectionStatus, reason_for_error
from shared.models.message import IncomingMessage, MessageAcknowledgement, TelemetryMessage
from shared.models.method import DirectMethodResponse
from shared.models.twin import Twin

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def default_retry_policy(settings: ClientSettings) -> RetryPolicy:
    return ExponentialBackoffRetryPolicy(
        max_retries=settings.retry_max_retries,
        max_delay=settings.retry_max_delay_seconds,
        use_jitter=settings.retry_use_jitter,
    )


class RetryDelegatingHandler(PipelineStage):
    """Wraps every operation of the stages below in a retry loop.

    Transient failures are retried as long as the active policy allows;
    terminal failures move the status to ``DISCONNECTED`` with a specific
    reason; cancellation always wins and is never retried. The loop captures
    the policy when it starts, so :meth:`set_retry_policy` only affects
    operations started afterwards.

    Subscriptions (message receive, methods, desired-property updates) are
    remembered and restored whenever the pipeline is reopened, either lazily by
    the next operation or by the background reconnect after a connection loss.
    """

    def __init__(self, context: PipelineContext, retry_policy: Optional[RetryPolicy] = None) -> None:
        super().__init__(context)
        self._policy = retry_policy or default_retry_policy(context.settings)
        self._open_lock = asyncio.Lock()
        self._opened = False
        self._connected_once = False
        self._closed = False
        self._closing = CancellationToken("client closed")
        self._receive_enabled = False
        self._methods_enabled = False
        self._twin_patch_enabled = False
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_cancel: Optional[CancellationToken] = None
        context.connection_lost_handler = self._on_connection_lost

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    def set_retry_policy(self, policy: RetryPolicy) -> None:
        LOGGER.debug("Retry policy for %s set to %r", self.context.identity.key, policy)
        self._policy = policy

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def closed(self) -> bool:
        return self._closed

    # Lifecycle

    async def open(self, cancel: CancellationToken) -> None:
        await self._execute("open", self._open_once, cancel, ensure_open=False)

    async def close(self, cancel: CancellationToken) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing.cancel()
        await self._stop_reconnect()
        try:
            await self.inner.close(cancel)
        finally:
            self._opened = False
            await self.context.status.transition(ConnectionStatus.CLOSED, ChangeReason.CLIENT_CLOSED)

    # Telemetry

    async def send_telemetry(self, message: TelemetryMessage, cancel: CancellationToken) -> None:
        await self._execute("send_telemetry", partial(self.inner.send_telemetry, message), cancel)

    async def send_telemetry_batch(self, messages: Iterable[TelemetryMessage], cancel: CancellationToken) -> None:
        batch = list(messages)
        await self._execute("send_telemetry_batch", partial(self.inner.send_telemetry_batch, batch), cancel)

    # Cloud-to-device messages

    async def enable_receive_message(self, cancel: CancellationToken) -> None:
        await self._execute("enable_receive_message", self.inner.enable_receive_message, cancel)
        self._receive_enabled = True

    async def disable_receive_message(self, cancel: CancellationToken) -> None:
        self._receive_enabled = False
        await self._disable("disable_receive_message", self.inner.disable_receive_message, cancel)

    async def receive_message(self, cancel: CancellationToken) -> IncomingMessage:
        return await self._execute("receive_message", self._receive_once, cancel)

    async def dispose_message(
        self,
        lock_token: str,
        acknowledgement: MessageAcknowledgement,
        cancel: CancellationToken,
    ) -> None:
        await self._execute(
            "dispose_message",
            partial(self.inner.dispose_message, lock_token, acknowledgement),
            cancel,
        )

    # Direct methods

    async def enable_methods(self, cancel: CancellationToken) -> None:
        await self._execute("enable_methods", self.inner.enable_methods, cancel)
        self._methods_enabled = True

    async def disable_methods(self, cancel: CancellationToken) -> None:
        self._methods_enabled = False
        await self._disable("disable_methods", self.inner.disable_methods, cancel)

    async def send_method_response(self, response: DirectMethodResponse, cancel: CancellationToken) -> None:
        await self._execute("send_method_response", partial(self.inner.send_method_response, response), cancel)

    # Twin

    async def get_twin(self, cancel: CancellationToken) -> Twin:
        return await self._execute("get_twin", self.inner.get_twin, cancel)

    async def update_reported_properties(self, patch: Mapping[str, Any], cancel: CancellationToken) -> int:
        snapshot = dict(patch)
        return await self._execute(
            "update_reported_properties",
            partial(self.inner.update_reported_properties, snapshot),
            cancel,
        )

    async def enable_twin_patch(self, cancel: CancellationToken) -> None:
        await self._execute("enable_twin_patch", self.inner.enable_twin_patch, cancel)
        self._twin_patch_enabled = True

    async def disable_twin_patch(self, cancel: CancellationToken) -> None:
        self._twin_patch_enabled = False
        await self._disable("disable_twin_patch", self.inner.disable_twin_patch, cancel)

    # Retry loop

    async def _execute(
        self,
        name: str,
        operation: Callable[[CancellationToken], Awaitable[T]],
        cancel: CancellationToken,
        *,
        ensure_open: bool = True,
    ) -> T:
        token = cancel.linked(self._closing)
        try:
            return await self._retry_loop(name, operation, token, ensure_open)
        finally:
            token.dispose()

    async def _retry_loop(
        self,
        name: str,
        operation: Callable[[CancellationToken], Awaitable[T]],
        cancel: CancellationToken,
        ensure_open: bool,
    ) -> T:
        policy = self._policy
        attempt = 0
        key = self.context.identity.key
        while True:
            self._check_not_closed()
            cancel.raise_if_cancelled()
            try:
                if ensure_open:
                    await self._ensure_opened(cancel)
                return await operation(cancel)
            except Exception as exc:
                category = classify_error(exc)
                if category is ErrorCategory.CANCELLED or cancel.cancelled:
                    # Close aborts everything in flight.
                    self._check_not_closed(exc)
                if category is ErrorCategory.CANCELLED:
                    raise
                if cancel.cancelled:
                    raise OperationCancelledError(cancel.reason) from exc
                if category is ErrorCategory.TERMINAL:
                    LOGGER.error("%s failed for %s with terminal error: %s", name, key, exc)
                    await self.context.status.transition(ConnectionStatus.DISCONNECTED, reason_for_error(exc))
                    raise
                if category is ErrorCategory.NON_RETRYABLE:
                    raise
                attempt += 1
                should_retry, delay = policy.should_retry(attempt, exc)
                if not should_retry:
                    LOGGER.warning("%s for %s gave up after %s attempt(s): %s", name, key, attempt, exc)
                    if self._connected_once:
                        await self.context.status.transition(
                            ConnectionStatus.DISCONNECTED, ChangeReason.RETRY_EXPIRED
                        )
                    raise
                delay = max(0.0, delay)
                LOGGER.info("Retrying %s for %s in %.3fs (attempt %s): %s", name, key, delay, attempt, exc)
            try:
                await cancel.sleep(delay)
            except OperationCancelledError as exc:
                self._check_not_closed(exc)
                raise

    async def _ensure_opened(self, cancel: CancellationToken) -> None:
        if not self._opened:
            await self._open_once(cancel)

    async def _open_once(self, cancel: CancellationToken) -> None:
        async with cancel.hold(self._open_lock):
            self._check_not_closed()
            if self._opened:
                return
            await self.inner.open(cancel)
            await self._restore_subscriptions(cancel)
            self._opened = True
            self._connected_once = True
        await self.context.status.transition(ConnectionStatus.CONNECTED, ChangeReason.CONNECTION_OK)

    async def _restore_subscriptions(self, cancel: CancellationToken) -> None:
        if self._receive_enabled:
            await self.inner.enable_receive_message(cancel)
        if self._methods_enabled:
            await self.inner.enable_methods(cancel)
        if self._twin_patch_enabled:
            await self.inner.enable_twin_patch(cancel)

    async def _receive_once(self, cancel: CancellationToken) -> IncomingMessage:
        try:
            return await self.inner.receive_message(cancel)
        except OperationCancelledError as exc:
            # A subscribed link torn down by a connection loss is retryable; an
            # explicit unsubscribe or a cancelled caller is not.
            if cancel.cancelled or not self._receive_enabled or self._closed:
                raise
            raise ClientError("Message link dropped while waiting", ErrorKind.NETWORK_ERROR) from exc

    async def _disable(
        self,
        name: str,
        operation: Callable[[CancellationToken], Awaitable[None]],
        cancel: CancellationToken,
    ) -> None:
        self._check_not_closed()
        if not self._opened:
            return
        await self._execute(name, operation, cancel, ensure_open=False)

    def _check_not_closed(self, cause: Optional[BaseException] = None) -> None:
        if self._closed:
            raise ClientClosedError(f"Client for {self.context.identity.key} is closed") from cause

    # Connection loss

    async def _on_connection_lost(self, exc: BaseException) -> None:
        self._opened = False
        if self._closed:
            return
        status = self.context.status
        if not self.context.settings.auto_reconnect:
            await status.transition(ConnectionStatus.DISABLED, ChangeReason.COMMUNICATION_ERROR)
            return
        await status.transition(ConnectionStatus.DISCONNECTED, ChangeReason.COMMUNICATION_ERROR)
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_cancel = CancellationToken("reconnect stopped")
        self._reconnect_task = asyncio.create_task(
            self._reconnect(self._reconnect_cancel),
            name=f"reconnect-{self.context.identity.key}",
        )

    async def _reconnect(self, cancel: CancellationToken) -> None:
        key = self.context.identity.key
        LOGGER.info("Reconnecting %s", key)
        try:
            await self._execute("reconnect", self._open_once, cancel, ensure_open=False)
        except (OperationCancelledError, ClientClosedError):
            LOGGER.debug("Reconnect for %s stopped", key)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Reconnect for %s failed: %s", key, exc)

    async def _stop_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        token, self._reconnect_cancel = self._reconnect_cancel, None
        if token is not None:
            token.cancel()
        if task is None or task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task
