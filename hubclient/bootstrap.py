"""Process-level wiring: logging and the transport used by connection pools."""

from __future__ import annotations

import logging
from typing import Optional, Type

from hubclient.config import ClientSettings, get_settings
from hubclient.network.connection import TransportFactory
from hubclient.network.pool import ConnectionPool
from hubclient.network.transport.base import ProtocolTransport
from hubclient.network.transport.loopback import LoopbackTransport
from hubclient.network.transport.websocket import WebSocketTransport

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(settings: Optional[ClientSettings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), format=LOG_FORMAT)


def default_transport_factory(settings: ClientSettings) -> TransportFactory:
    resolved_cls: Type[ProtocolTransport]
    resolved_cls = WebSocketTransport if settings.transport == "websocket" else LoopbackTransport
    LOGGER.debug("Using %s for hub connections", resolved_cls.__name__)

    def _factory(s: ClientSettings, hostname: str) -> ProtocolTransport:
        return resolved_cls(s, hostname)

    return _factory


def create_pool(
    settings: Optional[ClientSettings] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> ConnectionPool:
    """Build a pool that several :class:`hubclient.client.DeviceClient` can share."""

    settings = settings or get_settings()
    return ConnectionPool(settings, transport_factory or default_transport_factory(settings))
