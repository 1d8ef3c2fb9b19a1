"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import ssl
import threading
from typing import Awaitable, Callable, Dict, List, Optional, Set

import paho.mqtt.client as mqtt

from ..core import TransportError

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]


class MQTTConnectionError(TransportError):
    """Raised when the MQTT session is unavailable or the broker rejects a request."""


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho invokes its callbacks on its network thread; every callback is handed
    to the event loop before touching asyncio state.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        client_id: str = "",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        keepalive: int = 60,
        publish_timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.keepalive = keepalive
        self.publish_timeout = publish_timeout

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._publish_lock = threading.RLock()
        self._pending_publishes: Dict[int, asyncio.Future[None]] = {}
        self._early_acks: Set[int] = set()

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(LOGGER)

        if self.username:
            client.username_pw_set(self.username, self.password)
        if self.use_tls:
            client.tls_set(cert_reqs=ssl.CERT_REQUIRED, tls_version=ssl.PROTOCOL_TLS_CLIENT)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish

        self._client = client

        LOGGER.info("Connecting to MQTT broker %s:%s", self.host, self.port)

        client.connect_async(self.host, self.port, self.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
            self._connected = False
            self._fail_pending_publishes("MQTT client disconnected")

    async def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> int:
        """Publish ``payload`` and, for QoS > 0, wait for the broker's ack."""

        client = self._require_client()
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()

        with self._publish_lock:
            info = client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
            if qos == 0 or info.mid in self._early_acks:
                self._early_acks.discard(info.mid)
                return info.mid
            self._pending_publishes[info.mid] = future

        try:
            await asyncio.wait_for(future, timeout=self.publish_timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(
                f"Timed out waiting for broker ack of message {info.mid}"
            ) from exc
        finally:
            with self._publish_lock:
                self._pending_publishes.pop(info.mid, None)
        return info.mid

    def subscribe(self, topic: str, qos: int = 1) -> None:
        client = self._require_client()
        result, _ = client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def unsubscribe(self, topic: str) -> None:
        client = self._require_client()
        result, _ = client.unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def _require_client(self) -> mqtt.Client:
        if not self._client or not self._connected:
            raise MQTTConnectionError("MQTT client not connected")
        return self._client

    def _fail_pending_publishes(self, reason: str) -> None:
        with self._publish_lock:
            pending = list(self._pending_publishes.values())
            self._pending_publishes.clear()
            self._early_acks.clear()
        for future in pending:
            if not future.done():
                future.set_exception(MQTTConnectionError(reason))

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._last_connect_rc = 0 if reason_code == 0 else _rc_value(reason_code)
        loop = self._loop
        if reason_code == 0:
            LOGGER.info("Connected to MQTT broker %s:%s", self.host, self.port)
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", reason_code)
            self._connected = False
        if loop and self._connected_event:
            loop.call_soon_threadsafe(self._connected_event.set)

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", reason_code)
        self._connected = False
        loop = self._loop
        if not loop:
            return
        if self._disconnect_event:
            loop.call_soon_threadsafe(self._disconnect_event.set)
        loop.call_soon_threadsafe(
            self._fail_pending_publishes, f"MQTT connection lost (rc={reason_code})"
        )
        for handler in self._disconnect_handlers:
            loop.call_soon_threadsafe(handler, _rc_value(reason_code))

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None) -> None:
        with self._publish_lock:
            future = self._pending_publishes.get(mid)
            if future is None:
                self._early_acks.add(mid)
                return
        loop = self._loop
        if loop:
            loop.call_soon_threadsafe(_resolve, future)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        loop = self._loop
        if not self._message_handler or not loop:
            return
        loop.call_soon_threadsafe(self._dispatch, message.topic, message.payload)

    def _dispatch(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:  # pragma: no cover - logged boundary
            LOGGER.exception("MQTT message handler raised an exception")


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


def _rc_value(reason_code) -> int:
    value = getattr(reason_code, "value", reason_code)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1
