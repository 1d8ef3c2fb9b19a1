"""Core primitives for pnplink."""

from .errors import (
    EncodingError,
    InvalidPropertyValue,
    PnPError,
    RegistryError,
    StaleVersion,
    TransportError,
)
from .models import AckRecord, RelayRecord, SourceRecord, StatusCode, TelemetryEnvelope
from .protocols import (
    DesiredPropertyCallback,
    DeviceTransport,
    MethodHandler,
    RecordCallback,
    RecordSource,
    RegistryService,
)

__all__ = [
    "AckRecord",
    "DesiredPropertyCallback",
    "DeviceTransport",
    "EncodingError",
    "InvalidPropertyValue",
    "MethodHandler",
    "PnPError",
    "RecordCallback",
    "RecordSource",
    "RegistryError",
    "RegistryService",
    "RelayRecord",
    "SourceRecord",
    "StaleVersion",
    "StatusCode",
    "TelemetryEnvelope",
    "TransportError",
]
