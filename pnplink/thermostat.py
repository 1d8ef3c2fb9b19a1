"""Simulated thermostat component used by ``pnplink device``."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Optional

from .component import Component, CommandResponse
from .convention import ABSENT
from .core import DeviceTransport, InvalidPropertyValue

LOGGER = logging.getLogger(__name__)

TARGET_TEMPERATURE = "targetTemperature"
CURRENT_TEMPERATURE = "currentTemperature"
MAX_MIN_REPORT_COMMAND = "getMaxMinReport"
MAX_READINGS = 1000


@dataclass(slots=True)
class Reading:
    temperature: float
    taken_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_since(payload: Any) -> Optional[datetime]:
    if not isinstance(payload, str) or not payload:
        return None
    try:
        since = datetime.fromisoformat(payload.replace("Z", "+00:00"))
    except ValueError:
        return None
    return since if since.tzinfo else since.replace(tzinfo=timezone.utc)


class ThermostatComponent:
    """Reports a temperature that drifts toward the desired target.

    ``targetTemperature`` is a writable property acknowledged through the
    component's ack tracker; ``getMaxMinReport`` summarizes readings since
    an optional ISO-8601 timestamp. Only the latest ``max_readings`` readings
    are kept.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        name: str = "thermostat",
        *,
        initial_temperature: float = 21.0,
        step: float = 0.5,
        clock: Callable[[], datetime] = _utcnow,
        max_readings: int = MAX_READINGS,
    ) -> None:
        self.component = Component(transport, name)
        self.current_temperature = initial_temperature
        self.target_temperature: Optional[float] = None
        self.step = step
        self._clock = clock
        self._readings: Deque[Reading] = deque(maxlen=max_readings)

        self.component.subscribe_desired_property(
            TARGET_TEMPERATURE, self._on_target_temperature, coerce=float
        )
        self.component.register_command(MAX_MIN_REPORT_COMMAND, self.max_min_report)

    async def start(self) -> None:
        """Apply the desired target already stored in the twin, if any."""

        try:
            initial = await self.component.read_desired_property(
                TARGET_TEMPERATURE, coerce=float
            )
        except InvalidPropertyValue as exc:
            LOGGER.warning("Ignoring stored %s: %s", TARGET_TEMPERATURE, exc)
            return
        if initial is not ABSENT:
            self._on_target_temperature(initial)

    def _on_target_temperature(self, value: float) -> None:
        LOGGER.info("Target temperature set to %.1f", value)
        self.target_temperature = value

    def advance(self) -> float:
        target = self.target_temperature
        if target is not None:
            delta = target - self.current_temperature
            if abs(delta) <= self.step:
                self.current_temperature = target
            else:
                self.current_temperature += self.step if delta > 0 else -self.step
        self._readings.append(Reading(self.current_temperature, self._clock()))
        return self.current_temperature

    async def send_reading(self) -> float:
        temperature = self.advance()
        await self.component.send_telemetry({"temperature": temperature})
        await self.component.report_property(CURRENT_TEMPERATURE, temperature)
        return temperature

    async def run(self, interval: float) -> None:
        while True:
            await self.send_reading()
            await asyncio.sleep(interval)

    def max_min_report(self, payload: Any) -> CommandResponse:
        since = _parse_since(payload)
        readings = [r for r in self._readings if since is None or r.taken_at >= since]
        if not readings:
            return CommandResponse(status=404, payload={"message": "no readings"})

        temperatures = [r.temperature for r in readings]
        return CommandResponse(
            payload={
                "maxTemp": max(temperatures),
                "minTemp": min(temperatures),
                "avgTemp": sum(temperatures) / len(temperatures),
                "startTime": readings[0].taken_at.isoformat(),
                "endTime": readings[-1].taken_at.isoformat(),
            }
        )
