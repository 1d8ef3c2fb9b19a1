"""Application entry-points for the device and gateway processes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from .adapters import HubDeviceTransport, MQTTRecordSource
from .auth import ConnectionString
from .config import AppConfig, ConnectionStringStore, load_config
from .core import DeviceTransport, RecordSource, RelayRecord
from .gateway import GatewayServer
from .logging import configure_logging
from .relay import TelemetryRelay
from .thermostat import ThermostatComponent

LOGGER = logging.getLogger(__name__)


class _Application:
    """Shared lifecycle: configure logging, run until cancelled, then stop."""

    name = "pnplink"

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self._config = config or load_config()
        self._shutdown_event: Optional[asyncio.Event] = None

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()
        LOGGER.info("%s starting with config: %s", self.name, self._config.path)
        try:
            await self._start_services()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("%s received shutdown signal", self.name)
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _start_services(self) -> None:
        raise NotImplementedError

    async def _stop_services(self) -> None:
        raise NotImplementedError

    @classmethod
    def start(cls, config: Optional[AppConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("%s received shutdown signal", cls.name)


class DeviceApp(_Application):
    """Runs the thermostat component against the hub device endpoint."""

    name = "pnplink-device"

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        transport: Optional[DeviceTransport] = None,
    ) -> None:
        super().__init__(config)
        self._transport = transport
        self._thermostat: Optional[ThermostatComponent] = None
        self._telemetry_task: Optional[asyncio.Task[None]] = None

    @property
    def thermostat(self) -> Optional[ThermostatComponent]:
        return self._thermostat

    def _build_transport(self) -> DeviceTransport:
        device = self._config.device
        if not device.connection_string:
            raise ValueError("No device connection string configured")
        return HubDeviceTransport(
            ConnectionString.parse(device.connection_string),
            model_id=device.model_id,
            request_timeout=device.request_timeout_seconds,
        )

    async def _start_services(self) -> None:
        if self._transport is None:
            self._transport = self._build_transport()

        device = self._config.device
        # Subscriptions are registered before connecting so no desired update is missed.
        self._thermostat = ThermostatComponent(self._transport, device.component)
        await self._transport.connect()
        await self._thermostat.start()

        self._telemetry_task = asyncio.create_task(
            self._thermostat.run(device.telemetry_interval_seconds)
        )
        self._telemetry_task.add_done_callback(self._on_telemetry_done)

    def _on_telemetry_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Telemetry loop stopped", exc_info=exc)
            self.request_shutdown()

    async def _stop_services(self) -> None:
        task, self._telemetry_task = self._telemetry_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._transport is not None and self._transport.is_connected():
            await self._transport.disconnect()


class GatewayApp(_Application):
    """Serves the operator API and relays ingested telemetry to browsers."""

    name = "pnplink-gateway"

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        source: Optional[RecordSource] = None,
    ) -> None:
        super().__init__(config)
        relay_config = self._config.relay
        self.store = ConnectionStringStore(self._config.hub.connection_string)
        if self.store.current is None:
            LOGGER.warning("Hub connection string not configured")
        self.relay = TelemetryRelay(
            source or MQTTRecordSource(relay_config, client_id="pnplink-gateway"),
            consumer_group=relay_config.consumer_group,
            send_timeout=relay_config.send_timeout_seconds,
        )
        self.server = GatewayServer(
            self.store,
            self.relay,
            host=self._config.gateway.host,
            port=self._config.gateway.port,
            hub=self._config.hub,
        )

    async def _on_record(self, record: RelayRecord) -> None:
        await self.relay.publish(record)

    async def _start_services(self) -> None:
        await self.server.start()
        await self.relay.start(self._on_record)

    async def _stop_services(self) -> None:
        await self.relay.stop()
        await self.server.stop()
