"""Protocol definitions for the external collaborators."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from .models import SourceRecord, TelemetryEnvelope


DesiredPropertyCallback = Callable[[dict[str, Any]], Awaitable[None] | None]
MethodHandler = Callable[[Any], Awaitable[tuple[int, Any]] | tuple[int, Any]]
RecordCallback = Callable[[SourceRecord], Awaitable[None]]


class DeviceTransport(Protocol):
    """Device-side session with the hub."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    async def send_event(self, envelope: TelemetryEnvelope) -> int:
        """Send one telemetry message and return its message id."""
        ...

    async def get_document(self) -> dict[str, Any]:
        """Fetch the full twin document (``desired`` and ``reported``)."""
        ...

    async def patch_reported_properties(self, patch: Mapping[str, Any]) -> int:
        """Apply a reported-property patch and return the new reported version."""
        ...

    def register_command_handler(self, wire_name: str, handler: MethodHandler) -> None: ...

    def register_desired_property_callback(
        self, callback: DesiredPropertyCallback
    ) -> None: ...


class RegistryService(Protocol):
    """Service-side view of the hub registry."""

    async def list_devices(self) -> list[dict[str, Any]]: ...

    async def get_twin(self, device_id: str) -> dict[str, Any]: ...

    async def get_model_id(self, device_id: str) -> str: ...

    async def patch_twin(
        self, device_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]: ...

    async def invoke_method(
        self,
        device_id: str,
        method_name: str,
        payload: Any = None,
        *,
        response_timeout: Optional[float] = None,
    ) -> dict[str, Any]: ...


class RecordSource(Protocol):
    """Partitioned ingestion log the relay consumes."""

    async def subscribe(self, consumer_group: str, on_record: RecordCallback) -> None:
        """Deliver records to ``on_record`` until cancelled or closed."""
        ...

    async def close(self) -> None: ...
