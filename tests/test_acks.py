"""Tests for the desired-property acknowledgment state machine."""

import asyncio

import pytest

from pnplink.acks import AckTracker
from pnplink.convention import build_ack_patch
from pnplink.core import AckRecord, StatusCode


class AckSink:
    def __init__(self) -> None:
        self.acks: list[AckRecord] = []

    async def __call__(self, ack: AckRecord) -> None:
        self.acks.append(ack)

    @property
    def statuses(self) -> list[StatusCode]:
        return [ack.status for ack in self.acks]


@pytest.fixture
def sink() -> AckSink:
    return AckSink()


@pytest.mark.asyncio
async def test_completed_sequence_matches_wire_example(sink):
    tracker = AckTracker(sink)
    applied: list[float] = []

    sent = await tracker.process(
        "thermostat", "targetTemperature", 72.5, 3, applied.append
    )

    assert applied == [72.5]
    assert sent == sink.acks
    assert [build_ack_patch(ack) for ack in sent] == [
        {
            "thermostat": {
                "__t": "c",
                "targetTemperature": {
                    "value": 72.5,
                    "ac": 202,
                    "av": 3,
                    "ad": "update in progress",
                },
            }
        },
        {
            "thermostat": {
                "__t": "c",
                "targetTemperature": {
                    "value": 72.5,
                    "ac": 200,
                    "av": 3,
                    "ad": "update complete",
                },
            }
        },
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["", "   ", None])
async def test_empty_value_is_invalid_and_skips_handler(sink, value):
    tracker = AckTracker(sink)
    calls: list[object] = []

    await tracker.process("thermostat", "targetTemperature", value, 5, calls.append)

    assert calls == []
    assert sink.statuses == [StatusCode.PENDING, StatusCode.INVALID]
    assert sink.acks[-1].description == "invalid, empty value"
    assert sink.acks[-1].version == 5


@pytest.mark.asyncio
async def test_coercion_failure_is_invalid(sink):
    tracker = AckTracker(sink)
    calls: list[object] = []

    await tracker.process(
        "thermostat", "targetTemperature", "warm", 2, calls.append, coerce=float
    )

    assert calls == []
    assert sink.statuses == [StatusCode.PENDING, StatusCode.INVALID]
    assert sink.acks[-1].description == "invalid, malformed value"


@pytest.mark.asyncio
async def test_handler_receives_coerced_value(sink):
    tracker = AckTracker(sink)
    calls: list[object] = []

    await tracker.process(
        "thermostat", "targetTemperature", "68.5", 1, calls.append, coerce=float
    )

    assert calls == [68.5]
    assert sink.acks[-1].value == "68.5"


@pytest.mark.asyncio
async def test_async_handler_is_awaited(sink):
    tracker = AckTracker(sink)
    seen: list[object] = []

    async def handler(value):
        await asyncio.sleep(0)
        seen.append(value)

    await tracker.process("fan", "speed", 3, 1, handler)

    assert seen == [3]
    assert sink.statuses == [StatusCode.PENDING, StatusCode.COMPLETED]


@pytest.mark.asyncio
async def test_pending_ack_sent_before_handler_runs(sink):
    tracker = AckTracker(sink)
    observed: list[list[StatusCode]] = []

    def handler(value):
        observed.append(list(sink.statuses))

    await tracker.process("fan", "speed", 3, 1, handler)

    assert observed == [[StatusCode.PENDING]]


@pytest.mark.asyncio
async def test_stale_update_is_dropped(sink):
    tracker = AckTracker(sink)
    calls: list[object] = []

    await tracker.process("thermostat", "targetTemperature", 70, 2, calls.append)
    stale = await tracker.process("thermostat", "targetTemperature", 60, 1, calls.append)

    assert stale == []
    assert calls == [70]
    latest = tracker.latest("thermostat", "targetTemperature")
    assert latest is not None
    assert latest.version == 2
    assert latest.status is StatusCode.COMPLETED


def test_record_keeps_newest_version():
    tracker = AckTracker(AckSink())
    newer = AckRecord("thermostat", "targetTemperature", 70, 2, StatusCode.COMPLETED)
    older = AckRecord("thermostat", "targetTemperature", 60, 1, StatusCode.COMPLETED)

    assert tracker.record(newer) is True
    assert tracker.record(older) is False
    assert tracker.latest("thermostat", "targetTemperature") == newer


@pytest.mark.asyncio
async def test_handler_exception_propagates_after_pending(sink):
    tracker = AckTracker(sink)

    def handler(value):
        raise RuntimeError("actuator jammed")

    with pytest.raises(RuntimeError, match="actuator jammed"):
        await tracker.process("valve", "position", 10, 4, handler)

    assert sink.statuses == [StatusCode.PENDING]
    latest = tracker.latest("valve", "position")
    assert latest is not None and latest.status is StatusCode.PENDING


@pytest.mark.asyncio
async def test_updates_for_same_pair_are_serialized(sink):
    tracker = AckTracker(sink)
    release = asyncio.Event()

    async def slow_handler(value):
        await release.wait()

    first = asyncio.create_task(
        tracker.process("thermostat", "targetTemperature", 70, 1, slow_handler)
    )
    await asyncio.sleep(0.01)
    second = asyncio.create_task(
        tracker.process("thermostat", "targetTemperature", 71, 2, lambda value: None)
    )
    await asyncio.sleep(0.01)

    assert [(a.version, a.status) for a in sink.acks] == [(1, StatusCode.PENDING)]

    release.set()
    await asyncio.gather(first, second)

    assert [(a.version, a.status) for a in sink.acks] == [
        (1, StatusCode.PENDING),
        (1, StatusCode.COMPLETED),
        (2, StatusCode.PENDING),
        (2, StatusCode.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_different_pairs_overlap(sink):
    tracker = AckTracker(sink)
    other_done = asyncio.Event()

    async def waits_for_other(value):
        await other_done.wait()

    async def sets_other(value):
        other_done.set()

    await asyncio.wait_for(
        asyncio.gather(
            tracker.process("thermostat", "targetTemperature", 70, 1, waits_for_other),
            tracker.process("thermostat", "mode", "heat", 1, sets_other),
        ),
        timeout=1.0,
    )

    assert sink.statuses.count(StatusCode.COMPLETED) == 2


@pytest.mark.asyncio
async def test_reset_forgets_version(sink):
    tracker = AckTracker(sink)

    await tracker.process("thermostat", "targetTemperature", 70, 5, lambda v: None)
    tracker.reset("thermostat", "targetTemperature")
    sent = await tracker.process("thermostat", "targetTemperature", 65, 1, lambda v: None)

    assert [ack.status for ack in sent] == [StatusCode.PENDING, StatusCode.COMPLETED]
    assert tracker.latest_version("thermostat", "targetTemperature") == 1


@pytest.mark.asyncio
async def test_unversioned_update_is_never_stale(sink):
    tracker = AckTracker(sink)

    await tracker.process("thermostat", "targetTemperature", 70, 4, lambda v: None)
    sent = await tracker.process("thermostat", "targetTemperature", 71, None, lambda v: None)

    assert [ack.version for ack in sent] == [4, 4]


@pytest.mark.asyncio
async def test_not_implemented_ack(sink):
    tracker = AckTracker(sink)

    sent = await tracker.not_implemented("thermostat", "unknown", 1, 3)

    assert [(a.status, a.description) for a in sent] == [
        (StatusCode.NOT_IMPLEMENTED, "not implemented")
    ]
