from .frames import RESPONSE_OP, build_frame, build_request, build_response, is_response, parse_frame

__all__ = [
    "RESPONSE_OP",
    "build_frame",
    "build_request",
    "build_response",
    "is_response",
    "parse_frame",
]
