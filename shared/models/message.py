from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageAcknowledgement(str, enum.Enum):
    """Disposition reported back to the hub for a cloud-to-device message."""

    COMPLETE = "complete"
    ABANDON = "abandon"
    REJECT = "reject"


class TelemetryMessage(BaseModel):
    """Device-to-cloud telemetry message."""

    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="messageId")
    payload: Any = None
    content_type: Optional[str] = Field(default="application/json", alias="contentType")
    content_encoding: Optional[str] = Field(default="utf-8", alias="contentEncoding")
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    output_name: Optional[str] = Field(default=None, alias="outputName")
    properties: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="createdAt")


class IncomingMessage(BaseModel):
    """Cloud-to-device message delivered on the receive link."""

    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    lock_token: Optional[str] = Field(default=None, alias="lockToken")
    payload: Any = None
    content_type: Optional[str] = Field(default=None, alias="contentType")
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    input_name: Optional[str] = Field(default=None, alias="inputName")
    properties: Dict[str, str] = Field(default_factory=dict)
