"""Per-component facade over the device transport."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from . import constants
from .acks import AckTracker, Coercer, PropertyHandler, coerce_value
from .convention import (
    ABSENT,
    build_ack_patch,
    component_properties,
    decode_property,
    desired_version,
    encode_property,
    join_command_name,
)
from .core import AckRecord, DeviceTransport, TelemetryEnvelope
from .logging import TRACE

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResponse:
    status: int = 200
    payload: Any = None


CommandHandler = Callable[[Any], Awaitable[Any] | Any]


@dataclass(slots=True)
class _Subscription:
    handler: PropertyHandler
    coerce: Optional[Coercer] = None


def serialize_body(body: Any) -> bytes:
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode(constants.UTF8_ENCODING)
    return json.dumps(body).encode(constants.UTF8_ENCODING)


class Component:
    """A named sub-device: telemetry, reported/desired properties and commands.

    The component holds no state beyond its subscriptions; the ack sequence of
    each desired property is driven by its :class:`AckTracker`.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        name: str,
        *,
        tracker: Optional[AckTracker] = None,
    ) -> None:
        if not name or constants.COMMAND_SEPARATOR in name:
            raise ValueError(f"Invalid component name: {name!r}")

        self.name = name
        self._transport = transport
        self._tracker = tracker or AckTracker(self._send_ack)
        self._subscriptions: Dict[str, _Subscription] = {}
        self._desired_registered = False
        LOGGER.info("New component %s", name)

    @property
    def tracker(self) -> AckTracker:
        return self._tracker

    async def send_telemetry(
        self, body: Any, content_type: str = constants.JSON_CONTENT_TYPE
    ) -> int:
        envelope = TelemetryEnvelope(
            component_name=self.name,
            body=serialize_body(body),
            content_type=content_type,
        )
        LOGGER.log(TRACE, "Sending telemetry [%s]", envelope.body)
        return await self._transport.send_event(envelope)

    async def report_property(self, name: str, value: Any) -> int:
        patch = encode_property(self.name, name, value)
        LOGGER.log(TRACE, "Reporting %s.%s", self.name, name)
        return await self._transport.patch_reported_properties(patch)

    def register_command(self, name: str, handler: CommandHandler) -> str:
        wire_name = join_command_name(self.name, name)

        async def _invoke(payload: Any) -> tuple[int, Any]:
            result = handler(payload)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, CommandResponse):
                return result.status, result.payload
            return 200, result

        LOGGER.log(TRACE, "Set command handler for %s", wire_name)
        self._transport.register_command_handler(wire_name, _invoke)
        return wire_name

    def subscribe_desired_property(
        self,
        name: str,
        handler: PropertyHandler,
        *,
        coerce: Optional[Coercer] = None,
    ) -> None:
        LOGGER.log(TRACE, "Set desired handler for %s.%s", self.name, name)
        self._subscriptions[name] = _Subscription(handler=handler, coerce=coerce)
        self._tracker.reset(self.name, name)

        if not self._desired_registered:
            self._transport.register_desired_property_callback(self.handle_desired_patch)
            self._desired_registered = True

    async def read_desired_property(
        self, name: str, *, coerce: Optional[Coercer] = None
    ) -> Any:
        """Point-in-time read of a desired property; never acknowledges."""

        document = await self._transport.get_document()
        desired = document.get("desired", {})
        value = decode_property(desired, self.name, name)
        LOGGER.log(TRACE, "Read desired %s.%s returned %r", self.name, name, value)
        if value is ABSENT or coerce is None:
            return value
        return coerce_value(value, coerce)

    async def handle_desired_patch(self, patch: dict[str, Any]) -> None:
        """Acknowledge every property of this component found in ``patch``."""

        properties = component_properties(patch, self.name)
        if not properties:
            return

        version = desired_version(patch)
        LOGGER.log(
            TRACE, "Received desired update for %s v%s: %s", self.name, version, patch
        )

        steps = []
        for prop, value in properties.items():
            subscription = self._subscriptions.get(prop)
            if subscription is None:
                steps.append(
                    self._tracker.not_implemented(self.name, prop, value, version)
                )
                continue
            steps.append(
                self._tracker.process(
                    self.name,
                    prop,
                    value,
                    version,
                    subscription.handler,
                    coerce=subscription.coerce,
                )
            )
        await asyncio.gather(*steps)

    async def _send_ack(self, ack: AckRecord) -> None:
        await self._transport.patch_reported_properties(build_ack_patch(ack))
        LOGGER.log(
            TRACE,
            "Reported writable property [%s] %s=%r (%s)",
            ack.component,
            ack.property,
            ack.value,
            ack.status.name,
        )
