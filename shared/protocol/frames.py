"""Helpers for building/parsing frames exchanged with the hub."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

from shared.models.frame import Frame, Link

RESPONSE_OP = "response"


def _body(body: Any) -> Any:
    if isinstance(body, BaseModel):
        return body.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(body, (list, tuple)):
        return [_body(item) for item in body]
    return body


def build_frame(
    device: str,
    link: Link | str,
    op: str,
    body: Any = None,
    *,
    rid: Optional[str] = None,
    status: Optional[int] = None,
) -> Dict[str, Any]:
    """Construct a frame dict ready for transport."""

    frame = Frame(device=device, link=link, op=op, rid=rid, status=status, body=_body(body))
    return frame.model_dump(mode="json", exclude_none=True)


def build_request(device: str, link: Link | str, op: str, body: Any = None) -> Tuple[str, Dict[str, Any]]:
    """Build a frame expecting a correlated response; returns ``(rid, frame)``."""

    rid = uuid.uuid4().hex
    return rid, build_frame(device, link, op, body, rid=rid)


def build_response(request: Frame, status: int, body: Any = None) -> Dict[str, Any]:
    return build_frame(request.device, request.link, RESPONSE_OP, body, rid=request.rid, status=status)


def parse_frame(raw: Dict[str, Any]) -> Frame:
    """Validate an inbound frame; raises ``pydantic.ValidationError`` when malformed."""

    return Frame.model_validate(raw)


def is_response(frame: Frame) -> bool:
    return frame.op == RESPONSE_OP and frame.rid is not None
