from .frame import Frame, Link
from .message import IncomingMessage, MessageAcknowledgement, TelemetryMessage
from .method import DirectMethodRequest, DirectMethodResponse
from .twin import DesiredProperties, PropertyCollection, ReportedProperties, Twin, TwinDocumentError

__all__ = [
    "Frame",
    "Link",
    "IncomingMessage",
    "MessageAcknowledgement",
    "TelemetryMessage",
    "DirectMethodRequest",
    "DirectMethodResponse",
    "DesiredProperties",
    "PropertyCollection",
    "ReportedProperties",
    "Twin",
    "TwinDocumentError",
]
