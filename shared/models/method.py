from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class DirectMethodRequest(BaseModel):
    """Method invocation sent by the service to a device."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    method_name: str = Field(alias="methodName")
    payload: Any = None
    response_timeout_seconds: Optional[int] = Field(default=None, alias="responseTimeoutSeconds")


class DirectMethodResponse(BaseModel):
    """Device reply to a :class:`DirectMethodRequest`."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    status: int
    payload: Any = None
