"""Tests for the telemetry relay and subscriber fan-out."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from pnplink.core import SourceRecord
from pnplink.relay import RelaySubscriber, SubscriberSet, TelemetryRelay, broadcast


class RecordingChannel:
    def __init__(
        self, *, fail: bool = False, hang: bool = False, hang_on_close: bool = False
    ) -> None:
        self.messages: list[str] = []
        self.closed = False
        self._fail = fail
        self._hang = hang
        self._hang_on_close = hang_on_close

    async def send(self, message: str) -> None:
        if self._fail:
            raise ConnectionResetError("socket gone")
        if self._hang:
            await asyncio.Event().wait()
        self.messages.append(message)

    async def close(self) -> None:
        if self._hang_on_close:
            await asyncio.Event().wait()
        self.closed = True

    def subscriber(self) -> RelaySubscriber:
        return RelaySubscriber(send=self.send, close=self.close)


def _fixed_clock() -> datetime:
    return datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_broadcast_reaches_every_subscriber():
    subscribers = SubscriberSet()
    channels = [RecordingChannel() for _ in range(3)]
    for channel in channels:
        subscribers.add(channel.subscriber())

    result = await broadcast(subscribers, "hello")

    assert len(result.delivered) == 3
    assert result.dropped == []
    assert all(channel.messages == ["hello"] for channel in channels)


@pytest.mark.asyncio
async def test_failing_subscriber_is_dropped_and_closed():
    subscribers = SubscriberSet()
    healthy = RecordingChannel()
    broken = RecordingChannel(fail=True)
    healthy_sub = healthy.subscriber()
    broken_sub = broken.subscriber()
    subscribers.add(healthy_sub)
    subscribers.add(broken_sub)

    result = await broadcast(subscribers, "m1")
    await broadcast(subscribers, "m2")

    assert result.dropped == [broken_sub.id]
    assert broken.closed
    assert broken_sub not in subscribers
    assert healthy_sub in subscribers
    assert healthy.messages == ["m1", "m2"]


@pytest.mark.asyncio
async def test_slow_subscriber_times_out_without_blocking_others():
    subscribers = SubscriberSet()
    fast = RecordingChannel()
    slow = RecordingChannel(hang=True)
    subscribers.add(fast.subscriber())
    slow_sub = slow.subscriber()
    subscribers.add(slow_sub)

    result = await asyncio.wait_for(
        broadcast(subscribers, "tick", timeout=0.05), timeout=1.0
    )

    assert fast.messages == ["tick"]
    assert result.dropped == [slow_sub.id]
    assert len(subscribers) == 1


@pytest.mark.asyncio
async def test_dropped_subscribers_close_concurrently():
    subscribers = SubscriberSet()
    healthy = RecordingChannel()
    subscribers.add(healthy.subscriber())
    broken = [RecordingChannel(fail=True, hang_on_close=True) for _ in range(5)]
    for channel in broken:
        subscribers.add(channel.subscriber())

    loop = asyncio.get_running_loop()
    started = loop.time()
    result = await asyncio.wait_for(
        broadcast(subscribers, "tick", timeout=0.1), timeout=2.0
    )
    elapsed = loop.time() - started

    assert elapsed < 0.4
    assert len(result.dropped) == 5
    assert healthy.messages == ["tick"]
    assert len(subscribers) == 1


@pytest.mark.asyncio
async def test_broadcast_without_subscribers_is_noop():
    result = await broadcast(SubscriberSet(), "nobody")

    assert result.delivered == [] and result.dropped == []


def test_normalize_fills_missing_timestamp(record_source):
    relay = TelemetryRelay(record_source, clock=_fixed_clock)

    record = relay.normalize(SourceRecord(body={"t": 1}, device_id="dev-1"))

    assert record.timestamp == "2024-03-01T08:30:00+00:00"
    assert record.as_push_message() == {
        "IotData": {"t": 1},
        "MessageDate": "2024-03-01T08:30:00+00:00",
        "DeviceId": "dev-1",
    }


def test_normalize_treats_naive_time_as_utc(record_source):
    relay = TelemetryRelay(record_source, clock=_fixed_clock)

    record = relay.normalize(
        SourceRecord(body="x", enqueued_time=datetime(2024, 1, 2, 3, 4, 5))
    )

    assert record.timestamp == "2024-01-02T03:04:05+00:00"
    assert record.origin_id is None


@pytest.mark.asyncio
async def test_relay_publishes_in_ingestion_order(record_source):
    relay = TelemetryRelay(
        record_source, consumer_group="dashboards", clock=_fixed_clock
    )
    channel = RecordingChannel()
    relay.subscribers.add(channel.subscriber())

    await relay.start(relay.publish)
    await asyncio.wait_for(record_source.subscribed.wait(), timeout=1.0)
    for index in range(3):
        await record_source.emit(SourceRecord(body={"seq": index}, device_id="dev"))

    assert record_source.consumer_group == "dashboards"
    assert [json.loads(m)["IotData"]["seq"] for m in channel.messages] == [0, 1, 2]
    assert relay.records_relayed == 3

    await relay.stop()


@pytest.mark.asyncio
async def test_late_subscriber_gets_no_backfill(record_source):
    relay = TelemetryRelay(record_source, clock=_fixed_clock)
    early = RecordingChannel()
    late = RecordingChannel()
    relay.subscribers.add(early.subscriber())

    await relay.start(relay.publish)
    await record_source.emit(SourceRecord(body="first"))
    relay.subscribers.add(late.subscriber())
    await record_source.emit(SourceRecord(body="second"))

    assert [json.loads(m)["IotData"] for m in early.messages] == ["first", "second"]
    assert [json.loads(m)["IotData"] for m in late.messages] == ["second"]

    await relay.stop()


@pytest.mark.asyncio
async def test_callback_error_does_not_stop_relay(record_source):
    relay = TelemetryRelay(record_source, clock=_fixed_clock)
    seen = []

    async def on_record(record):
        if record.payload == "bad":
            raise ValueError("cannot relay")
        seen.append(record.payload)

    await relay.start(on_record)
    await record_source.emit(SourceRecord(body="bad"))
    await record_source.emit(SourceRecord(body="good"))

    assert seen == ["good"]
    assert relay.running
    assert relay.records_relayed == 1

    await relay.stop()


@pytest.mark.asyncio
async def test_stop_closes_source_and_subscribers(record_source):
    relay = TelemetryRelay(record_source)
    channel = RecordingChannel()
    relay.subscribers.add(channel.subscriber())

    await relay.start(relay.publish)
    await relay.stop()

    assert not relay.running
    assert record_source.closed
    assert channel.closed
    assert len(relay.subscribers) == 0


@pytest.mark.asyncio
async def test_no_record_relayed_after_stop(record_source):
    relay = TelemetryRelay(record_source, clock=_fixed_clock)
    seen = []

    async def on_record(record):
        seen.append(record.payload)

    await relay.start(on_record)
    await record_source.emit(SourceRecord(body="before"))

    record_source.queue.put_nowait(SourceRecord(body="queued"))
    await relay.stop()
    record_source.queue.put_nowait(SourceRecord(body="after"))
    await asyncio.sleep(0.01)

    assert seen == ["before"]
    assert relay.records_relayed == 1
    assert not relay.running


@pytest.mark.asyncio
async def test_start_twice_is_rejected(record_source):
    relay = TelemetryRelay(record_source)

    await relay.start(relay.publish)
    with pytest.raises(RuntimeError):
        await relay.start(relay.publish)

    await relay.stop()


@pytest.mark.asyncio
async def test_source_failure_is_recorded():
    class BrokenSource:
        async def subscribe(self, consumer_group, on_record):
            raise ConnectionError("broker unreachable")

        async def close(self):
            pass

    relay = TelemetryRelay(BrokenSource())

    await relay.start(relay.publish)
    await asyncio.sleep(0.01)

    assert not relay.running
    assert isinstance(relay.last_error, ConnectionError)

    await relay.stop()
