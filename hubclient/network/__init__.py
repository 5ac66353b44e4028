"""Network stack (transport/connection/pool/unit) shared by device pipelines."""

from hubclient.network.connection import PhysicalConnection, TransportFactory
from hubclient.network.links import ReceivingLink
from hubclient.network.pool import ConnectionPool, slot_for
from hubclient.network.transport.base import ProtocolTransport
from hubclient.network.transport.loopback import LoopbackTransport
from hubclient.network.transport.websocket import WebSocketTransport
from hubclient.network.unit import Unit, UnitHandlers

__all__ = [
    "ConnectionPool",
    "PhysicalConnection",
    "TransportFactory",
    "ReceivingLink",
    "Unit",
    "UnitHandlers",
    "ProtocolTransport",
    "LoopbackTransport",
    "WebSocketTransport",
    "slot_for",
]
