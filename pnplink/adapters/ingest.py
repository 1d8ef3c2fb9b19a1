"""Ingestion-log record source backed by an MQTT shared subscription."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .. import constants
from ..config import RelayConfig
from ..core import RecordCallback, SourceRecord
from ..logging import TRACE
from .mqtt import MQTTClient

LOGGER = logging.getLogger(__name__)


def _decode_body(payload: bytes) -> Any:
    text = payload.decode(constants.UTF8_ENCODING, errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def record_from_message(topic: str, payload: bytes) -> SourceRecord:
    """Build a ``SourceRecord`` from a routed telemetry message.

    Routed messages may be wrapped as ``{"body": ..., "enqueuedTime": ...,
    "deviceId": ...}``; otherwise the whole payload is the body and the device
    id is the last topic segment.
    """

    body = _decode_body(payload)
    device_id: Optional[str] = topic.rsplit("/", 1)[-1] or None
    enqueued: Optional[datetime] = None

    if isinstance(body, dict) and "body" in body:
        device_id = body.get("deviceId") or device_id
        raw_time = body.get("enqueuedTime")
        if isinstance(raw_time, str):
            try:
                enqueued = datetime.fromisoformat(raw_time.replace("Z", "+00:00"))
            except ValueError:
                LOGGER.debug("Ignoring unparseable enqueuedTime %r", raw_time)
        if enqueued is not None and enqueued.tzinfo is None:
            enqueued = enqueued.replace(tzinfo=timezone.utc)
        body = body["body"]

    return SourceRecord(body=body, enqueued_time=enqueued, device_id=device_id)


class MQTTRecordSource:
    """Consumes ``$share/<group>/<topic>`` and yields records in arrival order."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        client_id: str = "",
        mqtt_client: Optional[MQTTClient] = None,
    ) -> None:
        self._config = config
        self._client = mqtt_client or MQTTClient(
            config.broker_host,
            config.broker_port,
            client_id=client_id,
            username=config.username,
            password=config.password,
            use_tls=config.use_tls,
        )
        self._queue: asyncio.Queue[SourceRecord] = asyncio.Queue()
        self._closed = False

    async def subscribe(self, consumer_group: str, on_record: RecordCallback) -> None:
        """Consume until :meth:`close`; a closed source may subscribe again."""

        self._closed = False
        self._queue = asyncio.Queue()
        self._client.set_message_handler(self._handle_message)
        if not self._client.is_connected():
            await self._client.connect()

        topic = f"$share/{consumer_group}/{self._config.topic}"
        self._client.subscribe(topic)
        LOGGER.info("Consuming %s", topic)

        while not self._closed:
            record = await self._queue.get()
            if self._closed:
                break
            await on_record(record)

    async def close(self) -> None:
        self._closed = True
        self._client.set_message_handler(None)
        await self._client.disconnect()

    def _handle_message(self, topic: str, payload: bytes) -> None:
        if self._closed:
            return
        LOGGER.log(TRACE, "Record on %s (%d bytes)", topic, len(payload))
        self._queue.put_nowait(record_from_message(topic, payload))
