"""Device-side client for an IoT hub with retrying pipelines and pooled connections."""

from hubclient.cancellation import CancellationToken
from hubclient.client import DeviceClient
from hubclient.config import ClientSettings, get_settings
from hubclient.errors import (
    ClientClosedError,
    ClientError,
    ErrorCategory,
    ErrorKind,
    OperationCancelledError,
    PoolExhaustedError,
)
from hubclient.identity import DeviceIdentity
from hubclient.retry import (
    ExponentialBackoffRetryPolicy,
    IncrementalDelayRetryPolicy,
    NoRetryPolicy,
    RetryPolicy,
)
from hubclient.status import ChangeReason, ConnectionStatus, ConnectionStatusInfo

__all__ = [
    "CancellationToken",
    "ChangeReason",
    "ClientClosedError",
    "ClientError",
    "ClientSettings",
    "ConnectionStatus",
    "ConnectionStatusInfo",
    "DeviceClient",
    "DeviceIdentity",
    "ErrorCategory",
    "ErrorKind",
    "ExponentialBackoffRetryPolicy",
    "IncrementalDelayRetryPolicy",
    "NoRetryPolicy",
    "OperationCancelledError",
    "PoolExhaustedError",
    "RetryPolicy",
    "get_settings",
]
