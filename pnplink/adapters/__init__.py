"""Adapter modules for external integrations."""

from .device import HubDeviceTransport
from .ingest import MQTTRecordSource
from .mqtt import MQTTClient, MQTTConnectionError
from .registry import RegistryClient

__all__ = [
    "HubDeviceTransport",
    "MQTTClient",
    "MQTTConnectionError",
    "MQTTRecordSource",
    "RegistryClient",
]
