"""Shared fakes and fixtures for the test suite."""

import asyncio
import copy
import inspect
from typing import Any, Optional

import pytest

from pnplink.core import SourceRecord, TelemetryEnvelope, TransportError


class FakeTransport:
    """In-memory device transport recording everything sent to the hub."""

    def __init__(self, document: Optional[dict] = None, *, connected: bool = True) -> None:
        self.connected = connected
        self.document = document or {"desired": {}, "reported": {}}
        self.events: list[TelemetryEnvelope] = []
        self.patches: list[dict[str, Any]] = []
        self.command_handlers: dict[str, Any] = {}
        self.desired_callbacks: list[Any] = []
        self.document_reads = 0
        self._version = 0

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    async def send_event(self, envelope: TelemetryEnvelope) -> int:
        if not self.connected:
            raise TransportError("not connected")
        self.events.append(envelope)
        return len(self.events)

    async def get_document(self) -> dict[str, Any]:
        if not self.connected:
            raise TransportError("not connected")
        self.document_reads += 1
        return copy.deepcopy(self.document)

    async def patch_reported_properties(self, patch) -> int:
        if not self.connected:
            raise TransportError("not connected")
        self.patches.append(copy.deepcopy(dict(patch)))
        self._version += 1
        return self._version

    def register_command_handler(self, wire_name: str, handler) -> None:
        self.command_handlers[wire_name] = handler

    def register_desired_property_callback(self, callback) -> None:
        self.desired_callbacks.append(callback)

    async def push_desired(self, patch: dict[str, Any]) -> None:
        for callback in self.desired_callbacks:
            result = callback(patch)
            if inspect.isawaitable(result):
                await result

    async def invoke(self, wire_name: str, payload: Any = None):
        return await self.command_handlers[wire_name](payload)


class FakeRecordSource:
    """Record source fed from the test through :meth:`emit`."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[SourceRecord] = asyncio.Queue()
        self.consumer_group: Optional[str] = None
        self.closed = False
        self.subscribed = asyncio.Event()

    async def subscribe(self, consumer_group: str, on_record) -> None:
        self.consumer_group = consumer_group
        self.subscribed.set()
        while True:
            record = await self.queue.get()
            await on_record(record)
            self.queue.task_done()

    async def close(self) -> None:
        self.closed = True

    async def emit(self, record: SourceRecord) -> None:
        self.queue.put_nowait(record)
        await self.queue.join()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def record_source() -> FakeRecordSource:
    return FakeRecordSource()
