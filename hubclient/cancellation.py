"""Cooperative cancellation signal threaded through every pipeline layer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from functools import partial
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from hubclient.errors import OperationCancelledError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Signal that aborts in-flight network waits and retry delays.

    Every operation of the pipeline receives one token; waits race it through
    :meth:`run` and :meth:`sleep`, so a cancelled token surfaces as
    :class:`OperationCancelledError` rather than a transport failure.
    """

    def __init__(self, reason: str = "operation cancelled") -> None:
        self._event = asyncio.Event()
        self._reason = reason
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._links: List[tuple["CancellationToken", Callable[[], None]]] = []

    @classmethod
    def none(cls) -> "CancellationToken":
        """Token that is never cancelled unless the caller does so explicitly."""

        return cls()

    @classmethod
    def cancelled_token(cls, reason: str = "operation cancelled") -> "CancellationToken":
        token = cls(reason)
        token.cancel()
        return token

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        token = cls(f"operation timed out after {seconds}s")
        token.cancel_after(seconds)
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        if reason:
            self._reason = reason
        self._event.set()
        if self._timer:
            self._timer.cancel()
            self._timer = None
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress cancellation callback error", exc_info=True)

    def cancel_after(self, seconds: float) -> None:
        loop = asyncio.get_running_loop()
        if self._timer:
            self._timer.cancel()
        self._timer = loop.call_later(max(0.0, seconds), self.cancel)

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self.cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    def linked(self, *others: "CancellationToken") -> "CancellationToken":
        """Return a child token cancelled when this token or any of ``others`` is."""

        child = CancellationToken(self._reason)
        for parent in (self, *others):
            if parent.cancelled:
                child.cancel(parent.reason)
                break
            callback = partial(child._follow, parent)
            parent.add_callback(callback)
            child._links.append((parent, callback))
        return child

    def _follow(self, parent: "CancellationToken") -> None:
        self.cancel(parent.reason)

    def dispose(self) -> None:
        """Stop any pending timeout and detach from parent tokens."""

        if self._timer:
            self._timer.cancel()
            self._timer = None
        links, self._links = self._links, []
        for parent, callback in links:
            parent.remove_callback(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""

        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError(self._reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task.done():
            waiter.cancel()
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise OperationCancelledError(self._reason)

    @contextlib.asynccontextmanager
    async def hold(self, lock: asyncio.Lock) -> AsyncIterator[None]:
        """Acquire ``lock`` unless the token fires while waiting for it."""

        await self.run(lock.acquire())
        try:
            yield
        finally:
            lock.release()

    async def sleep(self, delay: float) -> None:
        """Cancellable replacement for ``asyncio.sleep``."""

        if delay <= 0:
            self.raise_if_cancelled()
            return
        await self.run(asyncio.sleep(delay))
