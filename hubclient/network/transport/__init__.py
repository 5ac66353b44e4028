"""Protocol transports carrying frames over one physical connection."""

from .base import ProtocolTransport
from .loopback import LoopbackTransport, default_responder
from .websocket import WebSocketTransport

__all__ = ["ProtocolTransport", "LoopbackTransport", "WebSocketTransport", "default_responder"]
