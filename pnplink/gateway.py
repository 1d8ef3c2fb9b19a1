"""Operator-facing HTTP API and websocket push channel."""

from __future__ import annotations

import contextlib
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

import aiohttp
from aiohttp import web

from . import constants
from .adapters.registry import RegistryClient
from .auth import ConnectionString, ConnectionStringError
from .config import ConnectionStringStore, HubConfig
from .convention import encode_property, join_command_name
from .core import EncodingError, RegistryError, RegistryService
from .relay import RelaySubscriber, TelemetryRelay

LOGGER = logging.getLogger(__name__)

NOT_CONFIGURED = "not configured"

RegistryFactory = Callable[[ConnectionString], RegistryService]


class GatewayServer:
    """Serves ``/api/*``, ``/healthz`` and the websocket push channel at ``/``."""

    def __init__(
        self,
        store: ConnectionStringStore,
        relay: TelemetryRelay,
        *,
        host: str = constants.DEFAULT_GATEWAY_HOST,
        port: int = constants.DEFAULT_GATEWAY_PORT,
        hub: Optional[HubConfig] = None,
        registry_factory: Optional[RegistryFactory] = None,
    ) -> None:
        self._store = store
        self._relay = relay
        self._host = host
        self._port = port
        self._hub = hub or HubConfig()
        self._registry_factory = registry_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.cleanup_ctx.append(self._client_session)
        app.router.add_get("/", self._handle_push_channel)
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/api/connection-string", self._handle_get_connection)
        app.router.add_post("/api/connection-string", self._handle_set_connection)
        app.router.add_get("/api/getDevices", self._handle_get_devices)
        app.router.add_get("/api/getDeviceTwin", self._handle_get_twin)
        app.router.add_get("/api/getModelId", self._handle_get_model_id)
        app.router.add_post("/api/updateDeviceTwin", self._handle_update_twin)
        app.router.add_post("/api/invokeCommand", self._handle_invoke_command)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Gateway listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _client_session(self, app: web.Application) -> AsyncIterator[None]:
        self._session = aiohttp.ClientSession()
        yield
        await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Registry plumbing
    # ------------------------------------------------------------------
    def _registry(self, connection: ConnectionString) -> RegistryService:
        if self._registry_factory is not None:
            return self._registry_factory(connection)
        return RegistryClient(
            connection,
            session=self._session,
            api_version=self._hub.api_version,
            timeout=self._hub.request_timeout_seconds,
            method_response_timeout=self._hub.method_response_timeout_seconds,
        )

    @staticmethod
    def _registry_error(exc: RegistryError) -> web.Response:
        status = exc.status if exc.status and 400 <= exc.status < 500 else 502
        LOGGER.warning("Registry request failed: %s", exc)
        return web.json_response({"error": str(exc)}, status=status)

    @staticmethod
    def _bad_request(message: str) -> web.Response:
        return web.json_response({"error": message}, status=400)

    @staticmethod
    def _not_configured() -> web.Response:
        return web.json_response({"error": NOT_CONFIGURED}, status=503)

    @staticmethod
    async def _read_body(request: web.Request) -> Dict[str, Any]:
        if request.content_type == constants.JSON_CONTENT_TYPE:
            try:
                data = await request.json()
            except json.JSONDecodeError as exc:
                raise EncodingError("Request body is not valid JSON") from exc
            if not isinstance(data, dict):
                raise EncodingError("Request body must be a JSON object")
            return data
        return dict(await request.post())

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _handle_get_connection(self, request: web.Request) -> web.Response:
        connection = self._store.current
        return web.json_response(connection.host_name if connection else NOT_CONFIGURED)

    async def _handle_set_connection(self, request: web.Request) -> web.Response:
        try:
            body = await self._read_body(request)
            connection = self._store.replace(body.get("connectionstring"))
        except (EncodingError, ConnectionStringError) as exc:
            return self._bad_request(str(exc))
        return web.json_response(connection.host_name if connection else NOT_CONFIGURED)

    async def _handle_get_devices(self, request: web.Request) -> web.Response:
        connection = self._store.current
        if connection is None:
            return web.json_response({})
        try:
            devices = await self._registry(connection).list_devices()
        except RegistryError as exc:
            return self._registry_error(exc)
        return web.json_response(devices)

    async def _handle_get_twin(self, request: web.Request) -> web.Response:
        connection = self._store.current
        if connection is None:
            return self._not_configured()
        device_id = request.query.get("deviceId")
        if not device_id:
            return self._bad_request("deviceId is required")
        try:
            twin = await self._registry(connection).get_twin(device_id)
        except RegistryError as exc:
            return self._registry_error(exc)
        return web.json_response(twin)

    async def _handle_get_model_id(self, request: web.Request) -> web.Response:
        connection = self._store.current
        if connection is None:
            return self._not_configured()
        device_id = request.query.get("deviceId")
        if not device_id:
            return self._bad_request("deviceId is required")
        try:
            model_id = await self._registry(connection).get_model_id(device_id)
        except RegistryError as exc:
            return self._registry_error(exc)
        return web.json_response(model_id)

    async def _handle_update_twin(self, request: web.Request) -> web.Response:
        connection = self._store.current
        if connection is None:
            return self._not_configured()
        try:
            body = await self._read_body(request)
            device_id = body.get("deviceId")
            if not device_id or not body.get("propertyName"):
                return self._bad_request("deviceId and propertyName are required")
            patch = encode_property(
                body.get("componentName"),
                body["propertyName"],
                body.get("propertyValue"),
            )
        except EncodingError as exc:
            return self._bad_request(str(exc))

        try:
            result = await self._registry(connection).patch_twin(device_id, patch)
        except RegistryError as exc:
            return self._registry_error(exc)
        LOGGER.info("Twin updated for %s", device_id)
        return web.json_response(result)

    async def _handle_invoke_command(self, request: web.Request) -> web.Response:
        connection = self._store.current
        if connection is None:
            return self._not_configured()
        try:
            body = await self._read_body(request)
            device_id = body.get("deviceId")
            if not device_id or not body.get("commandName"):
                return self._bad_request("deviceId and commandName are required")
            wire_name = join_command_name(body.get("componentName"), body["commandName"])
        except EncodingError as exc:
            return self._bad_request(str(exc))

        LOGGER.info("Running command %s on %s", wire_name, device_id)
        try:
            result = await self._registry(connection).invoke_method(
                device_id, wire_name, body.get("payload")
            )
        except RegistryError as exc:
            return self._registry_error(exc)
        return web.json_response(result)

    async def _handle_health(self, request: web.Request) -> web.Response:
        relay = self._relay
        last_error = relay.last_error
        healthy = relay.running
        payload = {
            "status": "ok" if healthy else "degraded",
            "hubConfigured": self._store.current is not None,
            "relay": {
                "running": relay.running,
                "subscribers": len(relay.subscribers),
                "recordsRelayed": relay.records_relayed,
                "lastError": repr(last_error) if last_error else None,
            },
        }
        return web.json_response(payload, status=200 if healthy else 503)

    async def _handle_push_channel(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        subscriber = RelaySubscriber(send=ws.send_str, close=ws.close)
        self._relay.subscribers.add(subscriber)
        LOGGER.info("Push subscriber %s connected from %s", subscriber.id, request.remote)

        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.ERROR:
                    LOGGER.debug(
                        "Push subscriber %s errored: %s", subscriber.id, ws.exception()
                    )
        finally:
            self._relay.subscribers.discard(subscriber)
            LOGGER.info("Push subscriber %s disconnected", subscriber.id)
        return ws
