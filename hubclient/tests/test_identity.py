import base64
import hashlib
import hmac
from urllib.parse import parse_qs, quote_plus

import pytest

from hubclient.identity import AuthScope, DeviceIdentity

KEY = base64.b64encode(b"secret-key-material").decode("ascii")


def test_parse_device_connection_string():
    identity = DeviceIdentity.from_connection_string(
        f"HostName=hub.example.net;DeviceId=sensor-1;SharedAccessKey={KEY}"
    )

    assert identity.hostname == "hub.example.net"
    assert identity.device_id == "sensor-1"
    assert identity.key == "sensor-1"
    assert identity.auth_scope is AuthScope.DEVICE
    assert identity.resource_uri == "hub.example.net/devices/sensor-1"


def test_parse_module_connection_string_with_policy():
    identity = DeviceIdentity.from_connection_string(
        f"HostName=hub.example.net;DeviceId=edge;ModuleId=filter;"
        f"SharedAccessKeyName=iothubowner;SharedAccessKey={KEY};GatewayHostName=gw.local"
    )

    assert identity.key == "edge/filter"
    assert identity.auth_scope is AuthScope.HUB
    assert identity.gateway_hostname == "gw.local"
    assert identity.resource_uri == "hub.example.net/devices/edge/modules/filter"


@pytest.mark.parametrize(
    "value",
    [
        "DeviceId=x;SharedAccessKey=abc",
        "HostName=h;SharedAccessKey=abc",
        "HostName=h;DeviceId=x",
        "HostName=h;DeviceId",
    ],
)
def test_invalid_connection_strings_rejected(value):
    with pytest.raises(ValueError):
        DeviceIdentity.from_connection_string(value)


def test_sas_token_signature():
    identity = DeviceIdentity(hostname="hub.example.net", device_id="sensor-1", shared_access_key=KEY)

    token = identity.build_sas_token(ttl_seconds=60, now=1_000)

    assert token.startswith("SharedAccessSignature ")
    fields = {k: v[0] for k, v in parse_qs(token[len("SharedAccessSignature "):]).items()}
    assert fields["sr"] == "hub.example.net/devices/sensor-1"
    assert fields["se"] == "1060"
    assert "skn" not in fields
    expected = base64.b64encode(
        hmac.new(
            base64.b64decode(KEY),
            f"{quote_plus('hub.example.net/devices/sensor-1')}\n1060".encode("utf-8"),
            hashlib.sha256,
        ).digest()
    ).decode("utf-8")
    assert fields["sig"] == expected


def test_preconfigured_sas_token_is_returned_verbatim():
    identity = DeviceIdentity(hostname="h", device_id="d", sas_token="SharedAccessSignature sr=h&sig=x&se=1")
    assert identity.build_sas_token() == "SharedAccessSignature sr=h&sig=x&se=1"
