"""Constants used across the pnplink package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "pnplink"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".pnplink" / DEFAULT_CONFIG_FILENAME

HUB_API_VERSION = "2021-04-12"
HUB_MQTT_PORT = 8883

DEFAULT_COMPONENT_NAME = "thermostat"
DEFAULT_CONSUMER_GROUP = "$Default"
DEFAULT_INGEST_TOPIC = "telemetry/+"
DEFAULT_INGEST_BROKER_HOST = "localhost"
DEFAULT_INGEST_BROKER_PORT = 1883

DEFAULT_GATEWAY_HOST = "0.0.0.0"
DEFAULT_GATEWAY_PORT = 3000

# Wire markers of the component convention.
COMPONENT_MARKER_KEY = "__t"
COMPONENT_MARKER_VALUE = "c"
COMMAND_SEPARATOR = "*"
COMPONENT_PROPERTY = "$.sub"
CONTENT_TYPE_PROPERTY = "$.ct"
CONTENT_ENCODING_PROPERTY = "$.ce"
JSON_CONTENT_TYPE = "application/json"
UTF8_ENCODING = "utf-8"

ENV_HUB_CONNECTION_STRING = "IOTHUB_CONNECTION_STRING"
ENV_DEVICE_CONNECTION_STRING = "IOTHUB_DEVICE_CONNECTION_STRING"
ENV_CONSUMER_GROUP = "EventHubConsumerGroup"
