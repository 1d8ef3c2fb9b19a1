"""Hub connection strings and shared-access-signature tokens."""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote_plus, urlencode

DEFAULT_TOKEN_TTL_SECONDS = 3600


class ConnectionStringError(ValueError):
    """Raised when a connection string is missing required fields."""


@dataclass(frozen=True, slots=True)
class ConnectionString:
    host_name: str
    shared_access_key: str
    device_id: Optional[str] = None
    shared_access_key_name: Optional[str] = None
    raw: str = field(default="", repr=False, compare=False)

    @classmethod
    def parse(cls, raw: str) -> "ConnectionString":
        """Parse ``HostName=...;SharedAccessKeyName=...;SharedAccessKey=...``.

        Device strings carry ``DeviceId`` instead of ``SharedAccessKeyName``.
        """

        fields: dict[str, str] = {}
        for part in (raw or "").strip().split(";"):
            if not part:
                continue
            key, separator, value = part.partition("=")
            if not separator:
                raise ConnectionStringError(f"Malformed connection string segment: {key!r}")
            fields[key.strip().lower()] = value.strip()

        host_name = fields.get("hostname")
        key = fields.get("sharedaccesskey")
        if not host_name or not key:
            raise ConnectionStringError(
                "Connection string requires HostName and SharedAccessKey"
            )

        return cls(
            host_name=host_name,
            shared_access_key=key,
            device_id=fields.get("deviceid"),
            shared_access_key_name=fields.get("sharedaccesskeyname"),
            raw=raw.strip(),
        )

    @property
    def hub_name(self) -> str:
        return self.host_name.split(".", 1)[0]

    @property
    def is_device(self) -> bool:
        return bool(self.device_id)

    @property
    def resource_uri(self) -> str:
        if self.device_id:
            return f"{self.host_name}/devices/{self.device_id}"
        return self.host_name

    def sas_token(
        self, *, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS, now: Optional[float] = None
    ) -> str:
        return generate_sas_token(
            self.resource_uri,
            self.shared_access_key,
            policy_name=self.shared_access_key_name,
            ttl_seconds=ttl_seconds,
            now=now,
        )


def generate_sas_token(
    resource_uri: str,
    key: str,
    *,
    policy_name: Optional[str] = None,
    ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    now: Optional[float] = None,
) -> str:
    expiry = int((now if now is not None else time.time()) + ttl_seconds)
    string_to_sign = f"{quote_plus(resource_uri)}\n{expiry}"
    digest = hmac.new(
        base64.b64decode(key), string_to_sign.encode("utf-8"), hashlib.sha256
    ).digest()

    token = {
        "sr": resource_uri,
        "sig": base64.b64encode(digest).decode("ascii"),
        "se": str(expiry),
    }
    if policy_name:
        token["skn"] = policy_name
    return "SharedAccessSignature " + urlencode(token)
