import asyncio
import base64
from typing import Callable, List, Optional

import pytest

from hubclient.config import ClientSettings
from hubclient.identity import DeviceIdentity
from hubclient.network.transport.loopback import LoopbackTransport, Responder, default_responder

DEVICE_KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode("ascii")


class RecordingTransportFactory:
    """Transport factory that hands out loopback transports and remembers them."""

    def __init__(self, responder: Optional[Responder] = default_responder) -> None:
        self.responder = responder
        self.created: List[LoopbackTransport] = []

    def __call__(self, settings: ClientSettings, hostname: str) -> LoopbackTransport:
        transport = LoopbackTransport(settings, hostname, responder=self.responder)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> LoopbackTransport:
        return self.created[-1]


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(transport="loopback", retry_use_jitter=False, operation_timeout_seconds=5.0)


@pytest.fixture
def pooled_settings() -> ClientSettings:
    return ClientSettings(
        transport="loopback",
        pooling_enabled=True,
        pool_size=3,
        max_devices_per_connection=4,
        operation_timeout_seconds=5.0,
    )


@pytest.fixture
def make_identity() -> Callable[..., DeviceIdentity]:
    def _make(device_id: str = "device-1", module_id: Optional[str] = None) -> DeviceIdentity:
        return DeviceIdentity(
            hostname="hub.example.net",
            device_id=device_id,
            module_id=module_id,
            shared_access_key=DEVICE_KEY,
        )

    return _make


@pytest.fixture
def transports() -> RecordingTransportFactory:
    return RecordingTransportFactory()


@pytest.fixture
def transport_factory_cls() -> type:
    return RecordingTransportFactory


@pytest.fixture
def wait_until() -> Callable[..., object]:
    return wait_for
