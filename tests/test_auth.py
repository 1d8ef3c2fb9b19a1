"""Tests for connection-string parsing and SAS tokens."""

import base64
import hashlib
import hmac
from urllib.parse import parse_qs

import pytest

from pnplink.auth import ConnectionString, ConnectionStringError, generate_sas_token

KEY = base64.b64encode(b"not-a-real-key").decode("ascii")

SERVICE_STRING = (
    f"HostName=demo-hub.azure-devices.net;SharedAccessKeyName=iothubowner;SharedAccessKey={KEY}"
)
DEVICE_STRING = f"HostName=demo-hub.azure-devices.net;DeviceId=thermo-01;SharedAccessKey={KEY}"


def test_parse_service_connection_string():
    connection = ConnectionString.parse(SERVICE_STRING)

    assert connection.host_name == "demo-hub.azure-devices.net"
    assert connection.hub_name == "demo-hub"
    assert connection.shared_access_key_name == "iothubowner"
    assert connection.shared_access_key == KEY
    assert not connection.is_device
    assert connection.resource_uri == "demo-hub.azure-devices.net"


def test_parse_device_connection_string():
    connection = ConnectionString.parse(DEVICE_STRING)

    assert connection.device_id == "thermo-01"
    assert connection.is_device
    assert connection.resource_uri == "demo-hub.azure-devices.net/devices/thermo-01"


def test_parse_is_case_insensitive_and_keeps_padding():
    connection = ConnectionString.parse(
        "hostname=hub.example.net;sharedaccesskey=YWJjZA==;"
    )

    assert connection.host_name == "hub.example.net"
    assert connection.shared_access_key == "YWJjZA=="


@pytest.mark.parametrize(
    "raw",
    ["", "HostName=hub.example.net", "SharedAccessKey=YWJj", "HostName"],
)
def test_parse_rejects_incomplete_strings(raw):
    with pytest.raises(ConnectionStringError):
        ConnectionString.parse(raw)


def test_sas_token_signature():
    token = generate_sas_token(
        "demo-hub.azure-devices.net/devices/thermo-01",
        KEY,
        ttl_seconds=60,
        now=1_700_000_000,
    )

    assert token.startswith("SharedAccessSignature ")
    fields = {k: v[0] for k, v in parse_qs(token.split(" ", 1)[1]).items()}
    assert fields["sr"] == "demo-hub.azure-devices.net/devices/thermo-01"
    assert fields["se"] == "1700000060"
    assert "skn" not in fields

    expected = base64.b64encode(
        hmac.new(
            b"not-a-real-key",
            b"demo-hub.azure-devices.net%2Fdevices%2Fthermo-01\n1700000060",
            hashlib.sha256,
        ).digest()
    ).decode("ascii")
    assert fields["sig"] == expected


def test_service_token_names_policy():
    connection = ConnectionString.parse(SERVICE_STRING)

    token = connection.sas_token(now=0)

    fields = parse_qs(token.split(" ", 1)[1])
    assert fields["skn"] == ["iothubowner"]
    assert fields["se"] == ["3600"]
