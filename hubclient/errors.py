"""Error kinds raised by the transport stack and their retry classification."""

from __future__ import annotations

import asyncio
import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    """Tag attached by the lowest layer that observed a failure."""

    DEVICE_NOT_FOUND = "device_not_found"
    DISABLED = "disabled"
    QUOTA_EXCEEDED = "quota_exceeded"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"
    THROTTLED = "throttled"
    SERVER_BUSY = "server_busy"
    ARGUMENT_INVALID = "argument_invalid"
    PROTOCOL_ERROR = "protocol_error"


class ErrorCategory(str, enum.Enum):
    """How the retry loop treats a failure."""

    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    TERMINAL = "terminal"
    CANCELLED = "cancelled"


TRANSIENT_KINDS = frozenset(
    {
        ErrorKind.NETWORK_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.THROTTLED,
        ErrorKind.SERVER_BUSY,
    }
)
TERMINAL_KINDS = frozenset(
    {
        ErrorKind.DEVICE_NOT_FOUND,
        ErrorKind.DISABLED,
        ErrorKind.UNAUTHORIZED,
        ErrorKind.QUOTA_EXCEEDED,
    }
)

# Twin/method response status codes mapped onto error kinds.
STATUS_CODE_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.ARGUMENT_INVALID,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.UNAUTHORIZED,
    404: ErrorKind.DEVICE_NOT_FOUND,
    429: ErrorKind.THROTTLED,
    501: ErrorKind.UNSUPPORTED,
    503: ErrorKind.SERVER_BUSY,
    504: ErrorKind.TIMEOUT,
}


class ClientError(RuntimeError):
    """Raised when a hub operation fails; ``kind`` drives retry decisions."""

    def __init__(self, message: str, kind: ErrorKind, *, tracking_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.tracking_id = tracking_id

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def __repr__(self) -> str:
        return f"ClientError({str(self)!r}, kind={self.kind.value})"


class OperationCancelledError(Exception):
    """Raised when the caller's cancellation signal aborts an operation."""


class ClientClosedError(RuntimeError):
    """Raised when an operation is attempted on a closed client."""


class PoolExhaustedError(ClientError):
    """Raised when every pooled connection already carries its maximum devices."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.QUOTA_EXCEEDED)


def error_for_status(status: int, message: str) -> ClientError:
    kind = STATUS_CODE_KINDS.get(status, ErrorKind.NETWORK_ERROR)
    return ClientError(f"{message} (status={status})", kind)


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception to the category the retry loop acts on."""

    if isinstance(exc, (OperationCancelledError, asyncio.CancelledError)):
        return ErrorCategory.CANCELLED
    if isinstance(exc, PoolExhaustedError):
        return ErrorCategory.NON_RETRYABLE
    if isinstance(exc, ClientError):
        if exc.kind in TRANSIENT_KINDS:
            return ErrorCategory.TRANSIENT
        if exc.kind in TERMINAL_KINDS:
            return ErrorCategory.TERMINAL
        return ErrorCategory.NON_RETRYABLE
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.NON_RETRYABLE


def translate_error(exc: Exception) -> Exception:
    """Tag raw socket level failures so upper layers only see ``ClientError`` kinds."""

    if isinstance(exc, (ClientError, OperationCancelledError)):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ClientError(str(exc) or "operation timed out", ErrorKind.TIMEOUT)
    if isinstance(exc, OSError):
        return ClientError(str(exc) or exc.__class__.__name__, ErrorKind.NETWORK_ERROR)
    if isinstance(exc, NotImplementedError):
        return ClientError(str(exc) or "operation not supported", ErrorKind.UNSUPPORTED)
    return exc
