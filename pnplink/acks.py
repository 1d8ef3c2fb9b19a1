"""Acknowledgment state machine for desired-property updates.

Every desired update of a ``(component, property)`` pair is driven through::

    PENDING -> COMPLETED        value present, handler returned
    PENDING -> INVALID          value empty or rejected by coercion
    NOT_IMPLEMENTED             nobody subscribed to the property

Each transition is reported back to the hub as an ack before the next step
runs, so the ``PENDING`` ack is always observable before the handler applies
the value. Updates for the same pair are serialized; a version lower than the
latest seen for the pair is dropped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .convention import ABSENT
from .core import AckRecord, InvalidPropertyValue, StaleVersion, StatusCode
from .logging import TRACE

LOGGER = logging.getLogger(__name__)

AckSender = Callable[[AckRecord], Awaitable[Any]]
PropertyHandler = Callable[[Any], Awaitable[None] | None]
Coercer = Callable[[Any], Any]

UPDATE_IN_PROGRESS = "update in progress"
UPDATE_COMPLETE = "update complete"
INVALID_EMPTY_VALUE = "invalid, empty value"
INVALID_MALFORMED_VALUE = "invalid, malformed value"
NOT_IMPLEMENTED = "not implemented"


def is_empty_value(value: Any) -> bool:
    if value is None or value is ABSENT:
        return True
    return isinstance(value, str) and not value.strip()


def coerce_value(value: Any, coerce: Optional[Coercer] = None) -> Any:
    """Apply the subscription's coercion, raising ``InvalidPropertyValue``."""

    if is_empty_value(value):
        raise InvalidPropertyValue(INVALID_EMPTY_VALUE)
    if coerce is None:
        return value
    try:
        return coerce(value)
    except (TypeError, ValueError) as exc:
        raise InvalidPropertyValue(INVALID_MALFORMED_VALUE) from exc


class AckTracker:
    """Tracks the active ack per ``(component, property)`` and emits transitions."""

    def __init__(self, send_ack: AckSender) -> None:
        self._send_ack = send_ack
        self._records: Dict[tuple[str, str], AckRecord] = {}
        self._versions: Dict[tuple[str, str], int] = {}
        self._locks: Dict[tuple[str, str], asyncio.Lock] = {}

    def latest(self, component: str, prop: str) -> Optional[AckRecord]:
        return self._records.get((component, prop))

    def latest_version(self, component: str, prop: str) -> Optional[int]:
        return self._versions.get((component, prop))

    def reset(self, component: str, prop: str) -> None:
        """Forget the ack state of a pair, e.g. when its handler is replaced."""

        key = (component, prop)
        self._records.pop(key, None)
        self._versions.pop(key, None)

    def record(self, ack: AckRecord) -> bool:
        """Store ``ack`` as the active record unless a newer version is recorded."""

        current = self._records.get(ack.key)
        if current is not None and ack.version < current.version:
            LOGGER.log(
                TRACE,
                "Dropping ack %s for %s.%s: version %s already recorded",
                ack.status.name,
                ack.component,
                ack.property,
                current.version,
            )
            return False
        self._records[ack.key] = ack
        return True

    async def process(
        self,
        component: str,
        prop: str,
        value: Any,
        version: Optional[int],
        handler: PropertyHandler,
        *,
        coerce: Optional[Coercer] = None,
    ) -> list[AckRecord]:
        """Run one desired update through the state machine.

        Returns the acks that were sent, in order. Exceptions raised by
        ``handler`` propagate after the ``PENDING`` ack has been sent.
        """

        key = (component, prop)
        async with self._lock_for(key):
            try:
                resolved = self._admit(key, version)
            except StaleVersion as exc:
                LOGGER.log(TRACE, "Ignoring stale desired update: %s", exc)
                return []

            sent: list[AckRecord] = []
            pending = AckRecord(
                component=component,
                property=prop,
                value=value,
                version=resolved,
                status=StatusCode.PENDING,
                description=UPDATE_IN_PROGRESS,
            )
            await self._emit(pending, sent)

            try:
                coerced = coerce_value(value, coerce)
            except InvalidPropertyValue as exc:
                LOGGER.warning(
                    "Desired %s.%s v%s rejected: %s", component, prop, resolved, exc
                )
                await self._emit(pending.advance(StatusCode.INVALID, str(exc)), sent)
                return sent

            result = handler(coerced)
            if inspect.isawaitable(result):
                await result

            await self._emit(
                pending.advance(StatusCode.COMPLETED, UPDATE_COMPLETE), sent
            )
            LOGGER.debug("Desired %s.%s v%s applied", component, prop, resolved)
            return sent

    async def not_implemented(
        self, component: str, prop: str, value: Any, version: Optional[int]
    ) -> list[AckRecord]:
        key = (component, prop)
        async with self._lock_for(key):
            try:
                resolved = self._admit(key, version)
            except StaleVersion as exc:
                LOGGER.log(TRACE, "Ignoring stale desired update: %s", exc)
                return []

            sent: list[AckRecord] = []
            await self._emit(
                AckRecord(
                    component=component,
                    property=prop,
                    value=value,
                    version=resolved,
                    status=StatusCode.NOT_IMPLEMENTED,
                    description=NOT_IMPLEMENTED,
                ),
                sent,
            )
            return sent

    def _lock_for(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _admit(self, key: tuple[str, str], version: Optional[int]) -> int:
        latest = self._versions.get(key)
        if version is None:
            # Unversioned updates never go stale.
            return latest if latest is not None else 0
        if latest is not None and version < latest:
            raise StaleVersion(key, version, latest)
        self._versions[key] = version
        return version

    async def _emit(self, ack: AckRecord, sent: list[AckRecord]) -> None:
        if not self.record(ack):
            return
        await self._send_ack(ack)
        sent.append(ack)
