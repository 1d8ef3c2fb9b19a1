"""Domain models for the property protocol and the telemetry relay."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, Optional

from .. import constants


class StatusCode(IntEnum):
    """Acknowledgment codes for desired-property updates."""

    COMPLETED = 200
    PENDING = 202
    INVALID = 400
    NOT_IMPLEMENTED = 404


@dataclass(frozen=True, slots=True)
class AckRecord:
    """One acknowledgment for a desired update of ``component.property``."""

    component: str
    property: str
    value: Any
    version: int
    status: StatusCode = StatusCode.PENDING
    description: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.component, self.property)

    def advance(self, status: StatusCode, description: str = "") -> "AckRecord":
        return replace(self, status=status, description=description)


@dataclass(frozen=True, slots=True)
class TelemetryEnvelope:
    component_name: str
    body: bytes
    content_type: str = constants.JSON_CONTENT_TYPE
    content_encoding: str = constants.UTF8_ENCODING

    @property
    def properties(self) -> Dict[str, str]:
        return {
            constants.COMPONENT_PROPERTY: self.component_name,
            constants.CONTENT_TYPE_PROPERTY: self.content_type,
            constants.CONTENT_ENCODING_PROPERTY: self.content_encoding,
        }


@dataclass(slots=True)
class SourceRecord:
    """A record as delivered by the ingestion log."""

    body: Any
    enqueued_time: Optional[datetime] = None
    device_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RelayRecord:
    payload: Any
    timestamp: str
    origin_id: Optional[str]

    def as_push_message(self) -> Dict[str, Any]:
        """Shape consumed by the browser push channel."""
        return {
            "IotData": self.payload,
            "MessageDate": self.timestamp,
            "DeviceId": self.origin_id,
        }
