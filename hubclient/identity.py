"""Device identity and shared-access-signature helpers."""

from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote_plus, urlencode

DEFAULT_TOKEN_TTL_SECONDS = 3600


class AuthScope(str, enum.Enum):
    """Whether credentials belong to the device or to a hub-level policy."""

    DEVICE = "device"
    HUB = "hub"


def _parse_connection_string(value: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for segment in value.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        key, sep, val = segment.partition("=")
        if not sep:
            raise ValueError(f"Malformed connection string segment: {segment!r}")
        parts[key.strip()] = val
    return parts


@dataclass(frozen=True)
class DeviceIdentity:
    """Addressable device or module endpoint on the hub."""

    hostname: str
    device_id: str
    module_id: Optional[str] = None
    shared_access_key: Optional[str] = None
    shared_access_key_name: Optional[str] = None
    sas_token: Optional[str] = None
    gateway_hostname: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.hostname:
            raise ValueError("hostname is required")
        if not self.device_id:
            raise ValueError("device_id is required")
        if not (self.shared_access_key or self.sas_token):
            raise ValueError("Either shared_access_key or sas_token is required")

    @classmethod
    def from_connection_string(cls, value: str) -> "DeviceIdentity":
        parts = _parse_connection_string(value)
        try:
            hostname = parts["HostName"]
            device_id = parts["DeviceId"]
        except KeyError as exc:
            raise ValueError(f"Connection string is missing {exc.args[0]}") from exc
        return cls(
            hostname=hostname,
            device_id=device_id,
            module_id=parts.get("ModuleId"),
            shared_access_key=parts.get("SharedAccessKey"),
            shared_access_key_name=parts.get("SharedAccessKeyName"),
            sas_token=parts.get("SharedAccessSignature"),
            gateway_hostname=parts.get("GatewayHostName"),
        )

    @property
    def key(self) -> str:
        """Stable identifier used to address this endpoint on a shared connection."""

        if self.module_id:
            return f"{self.device_id}/{self.module_id}"
        return self.device_id

    @property
    def auth_scope(self) -> AuthScope:
        return AuthScope.HUB if self.shared_access_key_name else AuthScope.DEVICE

    @property
    def resource_uri(self) -> str:
        uri = f"{self.hostname}/devices/{self.device_id}"
        if self.module_id:
            uri = f"{uri}/modules/{self.module_id}"
        return uri

    def build_sas_token(self, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS, *, now: Optional[float] = None) -> str:
        """Return the configured token, or mint one from the shared access key."""

        if self.sas_token:
            return self.sas_token
        assert self.shared_access_key is not None
        expiry = int((now if now is not None else time.time()) + ttl_seconds)
        resource = quote_plus(self.resource_uri)
        to_sign = f"{resource}\n{expiry}".encode("utf-8")
        key = base64.b64decode(self.shared_access_key)
        signature = base64.b64encode(hmac.new(key, to_sign, hashlib.sha256).digest()).decode("utf-8")
        fields = {"sr": self.resource_uri, "sig": signature, "se": str(expiry)}
        if self.shared_access_key_name:
            fields["skn"] = self.shared_access_key_name
        return "SharedAccessSignature " + urlencode(fields, quote_via=quote_plus)
