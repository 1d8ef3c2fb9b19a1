"""Configuration loader for pnplink."""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from . import constants
from .auth import ConnectionString, ConnectionStringError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class HubConfig:
    connection_string: Optional[str] = None
    api_version: str = constants.HUB_API_VERSION
    request_timeout_seconds: float = 30.0
    method_response_timeout_seconds: float = 30.0


@dataclass(slots=True)
class DeviceConfig:
    connection_string: Optional[str] = None
    component: str = constants.DEFAULT_COMPONENT_NAME
    model_id: Optional[str] = None
    telemetry_interval_seconds: float = 5.0
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class RelayConfig:
    broker_host: str = constants.DEFAULT_INGEST_BROKER_HOST
    broker_port: int = constants.DEFAULT_INGEST_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = False
    topic: str = constants.DEFAULT_INGEST_TOPIC
    consumer_group: str = constants.DEFAULT_CONSUMER_GROUP
    send_timeout_seconds: float = 5.0


@dataclass(slots=True)
class GatewayConfig:
    host: str = constants.DEFAULT_GATEWAY_HOST
    port: int = constants.DEFAULT_GATEWAY_PORT


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class AppConfig:
    hub: HubConfig
    device: DeviceConfig
    relay: RelayConfig
    gateway: GatewayConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


class ConnectionStringStore:
    """Holds the service connection string as an immutable, swappable snapshot.

    Readers take :attr:`current` once per request and keep using that value;
    :meth:`replace` swaps the reference and never mutates a published snapshot.
    """

    def __init__(self, initial: Optional[str] = None) -> None:
        self._current: Optional[ConnectionString] = None
        if initial:
            try:
                self._current = ConnectionString.parse(initial)
            except ConnectionStringError as exc:
                LOGGER.warning("Ignoring configured hub connection string: %s", exc)

    @property
    def current(self) -> Optional[ConnectionString]:
        return self._current

    def replace(self, raw: Optional[str]) -> Optional[ConnectionString]:
        """Swap in a new connection string; empty input clears it.

        Raises ``ConnectionStringError`` for a non-empty malformed value, in
        which case the previous snapshot stays in place.
        """

        snapshot = ConnectionString.parse(raw) if raw and raw.strip() else None
        self._current = snapshot
        if snapshot is None:
            LOGGER.info("Hub connection string cleared")
        else:
            LOGGER.info("Hub connection string set for %s", snapshot.host_name)
        return snapshot


def _optional(parser: ConfigParser, section: str, option: str) -> Optional[str]:
    value = parser.get(section, option, fallback="").strip()
    return value or None


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """Load configuration from disk, applying defaults and environment fallbacks."""

    env = os.environ if environ is None else environ
    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "hub": {
                "connection_string": "",
                "api_version": constants.HUB_API_VERSION,
                "request_timeout_seconds": "30.0",
                "method_response_timeout_seconds": "30.0",
            },
            "device": {
                "connection_string": "",
                "component": constants.DEFAULT_COMPONENT_NAME,
                "model_id": "",
                "telemetry_interval_seconds": "5.0",
                "request_timeout_seconds": "30.0",
            },
            "relay": {
                "broker_host": constants.DEFAULT_INGEST_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_INGEST_BROKER_PORT),
                "use_tls": "false",
                "topic": constants.DEFAULT_INGEST_TOPIC,
                "consumer_group": "",
                "send_timeout_seconds": "5.0",
            },
            "gateway": {
                "host": constants.DEFAULT_GATEWAY_HOST,
                "port": str(constants.DEFAULT_GATEWAY_PORT),
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    hub = HubConfig(
        connection_string=_optional(parser, "hub", "connection_string")
        or env.get(constants.ENV_HUB_CONNECTION_STRING)
        or None,
        api_version=parser.get("hub", "api_version"),
        request_timeout_seconds=max(
            0.1, parser.getfloat("hub", "request_timeout_seconds", fallback=30.0)
        ),
        method_response_timeout_seconds=max(
            1.0,
            parser.getfloat("hub", "method_response_timeout_seconds", fallback=30.0),
        ),
    )

    device = DeviceConfig(
        connection_string=_optional(parser, "device", "connection_string")
        or env.get(constants.ENV_DEVICE_CONNECTION_STRING)
        or None,
        component=parser.get("device", "component")
        or constants.DEFAULT_COMPONENT_NAME,
        model_id=_optional(parser, "device", "model_id"),
        telemetry_interval_seconds=max(
            0.1,
            parser.getfloat("device", "telemetry_interval_seconds", fallback=5.0),
        ),
        request_timeout_seconds=max(
            0.1, parser.getfloat("device", "request_timeout_seconds", fallback=30.0)
        ),
    )

    broker_host_value = parser.get("relay", "broker_host")
    broker_port_value = parser.getint(
        "relay", "broker_port", fallback=constants.DEFAULT_INGEST_BROKER_PORT
    )
    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("relay", "broker_host", host_part)
            parser.set("relay", "broker_port", str(parsed_port))

    relay = RelayConfig(
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=_optional(parser, "relay", "username"),
        password=_optional(parser, "relay", "password"),
        use_tls=parser.getboolean("relay", "use_tls", fallback=False),
        topic=parser.get("relay", "topic") or constants.DEFAULT_INGEST_TOPIC,
        consumer_group=_optional(parser, "relay", "consumer_group")
        or env.get(constants.ENV_CONSUMER_GROUP)
        or constants.DEFAULT_CONSUMER_GROUP,
        send_timeout_seconds=max(
            0.01, parser.getfloat("relay", "send_timeout_seconds", fallback=5.0)
        ),
    )

    gateway = GatewayConfig(
        host=parser.get("gateway", "host"),
        port=parser.getint("gateway", "port", fallback=constants.DEFAULT_GATEWAY_PORT),
    )

    log_path_value = _optional(parser, "logging", "path")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return AppConfig(
        hub=hub,
        device=device,
        relay=relay,
        gateway=gateway,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )

