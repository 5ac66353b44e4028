from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Link(str, enum.Enum):
    """Logical link a frame travels on within a device session."""

    session = "session"
    telemetry = "telemetry"
    messages = "messages"
    methods = "methods"
    twin = "twin"


class Frame(BaseModel):
    """Unit of traffic multiplexed over a physical connection."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    device: str
    link: Link
    op: str
    rid: Optional[str] = Field(default=None, description="Request id correlating a response to its request.")
    status: Optional[int] = None
    body: Any = None
