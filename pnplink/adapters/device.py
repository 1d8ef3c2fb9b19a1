"""Hub device session over MQTT.

Topic layout used by the hub's device endpoint::

    devices/<id>/messages/events/<props>          telemetry
    $iothub/twin/GET/?$rid=<n>                     twin document request
    $iothub/twin/PATCH/properties/reported/?$rid=<n>
    $iothub/twin/res/<status>/?$rid=<n>[&$version=<v>]
    $iothub/twin/PATCH/properties/desired/?$version=<v>
    $iothub/methods/POST/<method>/?$rid=<n>
    $iothub/methods/res/<status>/?$rid=<n>
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import parse_qs, quote, urlencode

from .. import constants
from ..auth import ConnectionString
from ..core import DesiredPropertyCallback, MethodHandler, TelemetryEnvelope, TransportError
from ..logging import TRACE
from .mqtt import MQTTClient

LOGGER = logging.getLogger(__name__)

TWIN_RESPONSE_PREFIX = "$iothub/twin/res/"
DESIRED_PATCH_PREFIX = "$iothub/twin/PATCH/properties/desired/"
METHOD_REQUEST_PREFIX = "$iothub/methods/POST/"

ErrorHandler = Callable[[BaseException], None]


@dataclass(slots=True)
class TwinResponse:
    status: int
    body: bytes
    version: Optional[int] = None


def _log_callback_error(exc: BaseException) -> None:
    LOGGER.error("Desired property callback failed", exc_info=exc)


def _split_topic(topic: str) -> tuple[str, Dict[str, str]]:
    path, _, query = topic.partition("?")
    params = {key: values[0] for key, values in parse_qs(query).items() if values}
    return path, params


def _decode_payload(payload: bytes) -> Any:
    if not payload:
        return None
    text = payload.decode(constants.UTF8_ENCODING, errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class HubDeviceTransport:
    """Device session implementing :class:`~pnplink.core.DeviceTransport`."""

    def __init__(
        self,
        connection: ConnectionString,
        *,
        model_id: Optional[str] = None,
        request_timeout: float = 30.0,
        error_handler: Optional[ErrorHandler] = None,
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        if not connection.device_id:
            raise ValueError("A device connection string (with DeviceId) is required")

        self._connection = connection
        self.device_id: str = connection.device_id
        self.model_id = model_id
        self.request_timeout = request_timeout
        self._error_handler = error_handler or _log_callback_error

        username = (
            f"{connection.host_name}/{self.device_id}/"
            f"?api-version={constants.HUB_API_VERSION}"
        )
        if model_id:
            username += f"&model-id={quote(model_id, safe='')}"

        self._client = mqtt_client or MQTTClient(
            connection.host_name,
            constants.HUB_MQTT_PORT,
            client_id=self.device_id,
            username=username,
            use_tls=True,
            publish_timeout=request_timeout,
        )
        self._client.set_message_handler(self._handle_message)
        self._client.register_disconnect_handler(self._handle_disconnect)

        self._rid_counter = itertools.count(1)
        self._requests: Dict[str, asyncio.Future[TwinResponse]] = {}
        self._patch_lock = asyncio.Lock()
        self._desired_callbacks: List[DesiredPropertyCallback] = []
        self._method_handlers: Dict[str, MethodHandler] = {}
        self._desired_queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._desired_worker: Optional[asyncio.Task[None]] = None
        self._method_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        self._client.password = self._connection.sas_token()
        await self._client.connect(timeout=self.request_timeout)

        self._client.subscribe(f"{TWIN_RESPONSE_PREFIX}#")
        self._client.subscribe(f"{DESIRED_PATCH_PREFIX}#")
        self._client.subscribe(f"{METHOD_REQUEST_PREFIX}#")

        if self._desired_worker is None or self._desired_worker.done():
            self._desired_worker = asyncio.create_task(self._desired_loop())
        LOGGER.info("Device %s connected to %s", self.device_id, self._connection.host_name)

    async def disconnect(self) -> None:
        if self._desired_worker is not None:
            self._desired_worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._desired_worker
            self._desired_worker = None
        for task in list(self._method_tasks):
            task.cancel()
        self._fail_requests("Device session closed")
        await self._client.disconnect()

    def is_connected(self) -> bool:
        return self._client.is_connected()

    # ------------------------------------------------------------------
    # DeviceTransport operations
    # ------------------------------------------------------------------
    async def send_event(self, envelope: TelemetryEnvelope) -> int:
        self._ensure_connected()
        topic = (
            f"devices/{self.device_id}/messages/events/"
            f"{urlencode(envelope.properties)}"
        )
        LOGGER.log(TRACE, "Publishing telemetry on %s", topic)
        return await self._client.publish(topic, envelope.body)

    async def get_document(self) -> dict[str, Any]:
        response = await self._request("$iothub/twin/GET/?$rid={rid}", b"")
        if response.status >= 300:
            raise TransportError(
                f"Twin request failed with status {response.status}",
                status=response.status,
            )
        document = _decode_payload(response.body)
        return document if isinstance(document, dict) else {}

    async def patch_reported_properties(self, patch: Mapping[str, Any]) -> int:
        payload = json.dumps(patch).encode(constants.UTF8_ENCODING)
        async with self._patch_lock:
            response = await self._request(
                "$iothub/twin/PATCH/properties/reported/?$rid={rid}", payload
            )
        if response.status >= 300:
            raise TransportError(
                f"Reported property patch failed with status {response.status}",
                status=response.status,
            )
        return response.version if response.version is not None else 0

    def register_command_handler(self, wire_name: str, handler: MethodHandler) -> None:
        if wire_name in self._method_handlers:
            LOGGER.debug("Replacing command handler for %s", wire_name)
        self._method_handlers[wire_name] = handler

    def register_desired_property_callback(
        self, callback: DesiredPropertyCallback
    ) -> None:
        self._desired_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ensure_connected(self) -> None:
        if not self._client.is_connected():
            raise TransportError("Device session is not connected")

    async def _request(self, topic_template: str, payload: bytes) -> TwinResponse:
        self._ensure_connected()
        rid = str(next(self._rid_counter))
        future: asyncio.Future[TwinResponse] = asyncio.get_running_loop().create_future()
        self._requests[rid] = future
        try:
            await self._client.publish(topic_template.format(rid=rid), payload)
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Timed out waiting for twin response {rid}") from exc
        finally:
            self._requests.pop(rid, None)

    def _fail_requests(self, reason: str) -> None:
        pending = list(self._requests.values())
        self._requests.clear()
        for future in pending:
            if not future.done():
                future.set_exception(TransportError(reason))

    def _handle_disconnect(self, rc: int) -> None:
        self._fail_requests(f"Device session lost (rc={rc})")

    def _handle_message(self, topic: str, payload: bytes) -> None:
        path, params = _split_topic(topic)

        if path.startswith(TWIN_RESPONSE_PREFIX):
            self._resolve_twin_response(path, params, payload)
            return

        if path.startswith(DESIRED_PATCH_PREFIX):
            patch = _decode_payload(payload)
            if not isinstance(patch, dict):
                LOGGER.warning("Ignoring malformed desired patch on %s", topic)
                return
            if "$version" not in patch and "$version" in params:
                patch["$version"] = params["$version"]
            self._desired_queue.put_nowait(patch)
            return

        if path.startswith(METHOD_REQUEST_PREFIX):
            name = path[len(METHOD_REQUEST_PREFIX):].strip("/")
            task = asyncio.ensure_future(
                self._invoke_method(name, params.get("$rid", ""), payload)
            )
            self._method_tasks.add(task)
            task.add_done_callback(self._method_tasks.discard)
            return

        LOGGER.debug("Ignoring message on unexpected topic %s", topic)

    def _resolve_twin_response(
        self, path: str, params: Dict[str, str], payload: bytes
    ) -> None:
        rid = params.get("$rid")
        future = self._requests.get(rid or "")
        if future is None or future.done():
            LOGGER.debug("Dropping twin response for unknown request %s", rid)
            return

        try:
            status = int(path[len(TWIN_RESPONSE_PREFIX):].strip("/"))
        except ValueError:
            future.set_exception(TransportError(f"Malformed twin response topic {path}"))
            return

        version: Optional[int] = None
        if "$version" in params:
            with contextlib.suppress(ValueError):
                version = int(params["$version"])
        future.set_result(TwinResponse(status=status, body=payload, version=version))

    async def _desired_loop(self) -> None:
        while True:
            patch = await self._desired_queue.get()
            try:
                for callback in list(self._desired_callbacks):
                    try:
                        result = callback(patch)
                        if inspect.isawaitable(result):
                            await result
                    except asyncio.CancelledError:
                        raise
                    except Exception as exc:
                        self._error_handler(exc)
            finally:
                self._desired_queue.task_done()

    async def _invoke_method(self, name: str, rid: str, payload: bytes) -> None:
        handler = self._method_handlers.get(name)
        if handler is None:
            LOGGER.warning("No handler registered for command %s", name)
            status, response = 404, {"message": f"Command {name} is not implemented"}
        else:
            try:
                result = handler(_decode_payload(payload))
                if inspect.isawaitable(result):
                    result = await result
                status, response = result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception("Command handler %s failed", name)
                status, response = 500, {"message": str(exc)}

        body = json.dumps(response).encode(constants.UTF8_ENCODING)
        try:
            await self._client.publish(
                f"$iothub/methods/res/{status}/?$rid={rid}", body
            )
        except TransportError:
            LOGGER.warning("Could not deliver response for command %s", name)
