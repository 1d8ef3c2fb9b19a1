"""Fan-out of ingested telemetry records to live subscribers.

One consume task reads the ingestion log and hands each normalized record to
the ``on_record`` callback, which usually calls :meth:`TelemetryRelay.publish`.
Delivery to each subscriber is an independent send bounded by a timeout; a
subscriber whose send fails or times out is dropped and closed. A broadcast
completes before the next record is read, so every subscriber sees records in
ingestion order. Subscribers only receive records relayed after they joined.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from . import constants
from .core import RecordSource, RelayRecord, SourceRecord

LOGGER = logging.getLogger(__name__)

SendChannel = Callable[[str], Awaitable[None]]
CloseChannel = Callable[[], Awaitable[None]]
RelayCallback = Callable[[RelayRecord], Awaitable[None] | None]

CLOSE_TIMEOUT_SECONDS = 1.0


@dataclass(eq=False, slots=True)
class RelaySubscriber:
    send: SendChannel
    close: Optional[CloseChannel] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass(slots=True)
class BroadcastResult:
    delivered: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)


class SubscriberSet:
    """Live subscribers, owned by the event loop.

    Broadcasts iterate over a snapshot, so adds and removes during a broadcast
    take effect from the next one.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, RelaySubscriber] = {}

    def add(self, subscriber: RelaySubscriber) -> None:
        self._subscribers[subscriber.id] = subscriber
        LOGGER.debug("Subscriber %s joined (%d live)", subscriber.id, len(self))

    def discard(self, subscriber: RelaySubscriber) -> bool:
        removed = self._subscribers.pop(subscriber.id, None) is not None
        if removed:
            LOGGER.debug("Subscriber %s left (%d live)", subscriber.id, len(self))
        return removed

    def snapshot(self) -> tuple[RelaySubscriber, ...]:
        return tuple(self._subscribers.values())

    def __contains__(self, subscriber: object) -> bool:
        return (
            isinstance(subscriber, RelaySubscriber)
            and self._subscribers.get(subscriber.id) is subscriber
        )

    def __len__(self) -> int:
        return len(self._subscribers)


async def close_subscriber(
    subscriber: RelaySubscriber, *, timeout: float = CLOSE_TIMEOUT_SECONDS
) -> None:
    if subscriber.close is None:
        return
    try:
        async with asyncio.timeout(timeout):
            await subscriber.close()
    except Exception as exc:
        LOGGER.debug("Closing subscriber %s failed: %s", subscriber.id, exc)


async def _deliver(subscriber: RelaySubscriber, message: str, timeout: float) -> None:
    await asyncio.wait_for(subscriber.send(message), timeout=timeout)


async def broadcast(
    subscribers: SubscriberSet, message: str, *, timeout: float = 5.0
) -> BroadcastResult:
    """Send ``message`` to every subscriber in parallel.

    A failing subscriber is removed and closed without retry; it never delays
    delivery to the others beyond ``timeout``.
    """

    result = BroadcastResult()
    targets = subscribers.snapshot()
    if not targets:
        return result

    outcomes = await asyncio.gather(
        *(_deliver(subscriber, message, timeout) for subscriber in targets),
        return_exceptions=True,
    )

    failed: list[RelaySubscriber] = []
    for subscriber, outcome in zip(targets, outcomes):
        if outcome is None:
            result.delivered.append(subscriber.id)
            continue

        reason = (
            "send timed out"
            if isinstance(outcome, asyncio.TimeoutError)
            else repr(outcome)
        )
        LOGGER.warning("Dropping subscriber %s: %s", subscriber.id, reason)
        subscribers.discard(subscriber)
        result.dropped.append(subscriber.id)
        failed.append(subscriber)

    # All closes share one deadline.
    if failed:
        await asyncio.gather(
            *(close_subscriber(s, timeout=timeout) for s in failed)
        )

    return result


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TelemetryRelay:
    """Single consumer of the ingestion log, many subscribers."""

    def __init__(
        self,
        source: RecordSource,
        *,
        consumer_group: str = constants.DEFAULT_CONSUMER_GROUP,
        send_timeout: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._source = source
        self._consumer_group = consumer_group
        self._send_timeout = send_timeout
        self._clock = clock
        self.subscribers = SubscriberSet()
        self._task: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self._records_relayed = 0
        self._last_error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def records_relayed(self) -> int:
        return self._records_relayed

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    async def start(self, on_record: RelayCallback) -> None:
        """Begin consuming; ``on_record`` receives each normalized record."""

        if self.running:
            raise RuntimeError("Telemetry relay already started")

        self._stopping = False
        self._last_error = None
        self._task = asyncio.create_task(self._consume(on_record))
        await asyncio.sleep(0)
        LOGGER.info("Telemetry relay started (consumer group %s)", self._consumer_group)

    async def stop(self) -> None:
        """Stop reading records and release every subscriber."""

        self._stopping = True

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        try:
            await self._source.close()
        except Exception:
            LOGGER.exception("Closing the record source failed")

        subscribers = self.subscribers.snapshot()
        for subscriber in subscribers:
            self.subscribers.discard(subscriber)
        await asyncio.gather(
            *(close_subscriber(s, timeout=self._send_timeout) for s in subscribers)
        )
        LOGGER.info("Telemetry relay stopped after %d records", self._records_relayed)

    def normalize(self, record: SourceRecord) -> RelayRecord:
        timestamp = record.enqueued_time or self._clock()
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return RelayRecord(
            payload=record.body,
            timestamp=timestamp.isoformat(),
            origin_id=record.device_id,
        )

    async def broadcast(self, message: str) -> BroadcastResult:
        return await broadcast(self.subscribers, message, timeout=self._send_timeout)

    async def publish(self, record: RelayRecord) -> BroadcastResult:
        """Broadcast ``record`` in the push-channel message shape."""

        message = json.dumps(record.as_push_message(), default=str)
        return await self.broadcast(message)

    async def _consume(self, on_record: RelayCallback) -> None:
        async def _on_source_record(record: SourceRecord) -> None:
            if self._stopping:
                return
            relay_record = self.normalize(record)
            try:
                result = on_record(relay_record)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(
                    "Error relaying record from %s", relay_record.origin_id
                )
                return
            self._records_relayed += 1

        try:
            await self._source.subscribe(self._consumer_group, _on_source_record)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._last_error = exc
            LOGGER.exception("Telemetry relay source failed")
